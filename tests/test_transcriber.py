import json

import httpx
import pytest

from chunksub.exceptions import (
    AuthenticationMissing,
    BackendRejected,
    BackendUnavailable,
    ConfigurationError,
    ResultUnparseable,
)
from chunksub.models import SubtitleCue, TranscriptionOptions
from chunksub.transcriber import (
    FasterWhisperCLIBackend,
    HTTPTranscriptionBackend,
    create_backend,
    cues_from_segments,
    normalize_model_name,
    parse_progress_line,
    parse_transcription_body,
    resolve_output_file,
)

SRT_BODY = "1\n00:00:00,500 --> 00:00:02,000\nGood morning.\n"


@pytest.fixture
def wav(tmp_path):
    path = tmp_path / "chunk_0000.wav"
    path.write_bytes(b"RIFF....WAVE")
    return str(path)


def http_backend(handler, api_key="sk-test"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HTTPTranscriptionBackend("https://asr.example.test/", api_key=api_key, name="openai", client=client)


class TestHTTPTranscriptionBackend:
    def test_uploads_audio_and_parses_srt(self, wav):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["content_type"] = request.headers["Content-Type"]
            seen["body"] = request.read()
            return httpx.Response(200, text=SRT_BODY)

        progress = []
        cues = http_backend(handler).transcribe(
            wav, TranscriptionOptions(language="en", prompt="Physics lecture"),
            progress=lambda percent, message: progress.append(percent))

        assert cues == [SubtitleCue(1, 500, 2_000, "Good morning.")]
        assert seen["url"] == "https://asr.example.test/v1/audio/transcriptions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["content_type"].startswith("multipart/form-data")
        assert b'name="model"' in seen["body"] and b"whisper-1" in seen["body"]
        assert b'name="language"' in seen["body"]
        assert b'filename="chunk_0000.wav"' in seen["body"]
        assert progress[-1] == 100.0

    def test_json_segments_response(self, wav):
        body = {"segments": [{"start": 0.0, "end": 1.25, "text": " Hi "}, {"start": 1.5, "end": 2.0, "text": ""}]}
        backend = http_backend(lambda request: httpx.Response(200, text=json.dumps(body)))
        assert backend.transcribe(wav, TranscriptionOptions()) == [SubtitleCue(1, 0, 1_250, "Hi")]

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_transient_statuses(self, wav, status):
        backend = http_backend(lambda request: httpx.Response(status, text="busy"))
        with pytest.raises(BackendUnavailable) as excinfo:
            backend.transcribe(wav, TranscriptionOptions())
        assert excinfo.value.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 413])
    def test_rejected_statuses(self, wav, status):
        backend = http_backend(lambda request: httpx.Response(status, text="no"))
        with pytest.raises(BackendRejected):
            backend.transcribe(wav, TranscriptionOptions())

    def test_timeout_is_transient(self, wav):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(BackendUnavailable):
            http_backend(handler).transcribe(wav, TranscriptionOptions())

    def test_unparseable_body(self, wav):
        backend = http_backend(lambda request: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(ResultUnparseable):
            backend.transcribe(wav, TranscriptionOptions())

    def test_missing_key(self, wav):
        backend = http_backend(lambda request: httpx.Response(200, text=SRT_BODY), api_key=None)
        with pytest.raises(AuthenticationMissing):
            backend.transcribe(wav, TranscriptionOptions())

    def test_empty_base_url(self):
        with pytest.raises(ConfigurationError):
            HTTPTranscriptionBackend("")


class TestFasterWhisperCLIBackend:
    def test_build_command(self):
        backend = FasterWhisperCLIBackend("/opt/fw/faster-whisper-xxl", "faster-whisper-large-v3",
                                          model_dir="/models", device="cuda")
        options = TranscriptionOptions(language="de", vad_threshold=0.5, prompt="Names: Ada")

        cmd = backend.build_command("/tmp/chunk.wav", "/tmp/out", options)

        assert cmd[:3] == ["/opt/fw/faster-whisper-xxl", "--model", "large-v3"]
        assert cmd[cmd.index("--model_dir") + 1] == "/models"
        assert cmd[cmd.index("--device") + 1] == "cuda"
        assert cmd[cmd.index("--language") + 1] == "de"
        assert cmd[cmd.index("--output_dir") + 1] == "/tmp/out"
        assert cmd[cmd.index("--vad_threshold") + 1] == "0.50"
        assert cmd[cmd.index("--initial_prompt") + 1] == "Names: Ada"
        assert cmd[cmd.index("--word_timestamps") + 1] == "false"
        assert cmd[-1] == "/tmp/chunk.wav"

    def test_without_vad_or_language(self):
        backend = FasterWhisperCLIBackend("fw", "medium")
        cmd = backend.build_command("a.wav", "out", TranscriptionOptions(vad_filter=False, word_timestamps=True))
        assert "--language" not in cmd
        assert "--vad_threshold" not in cmd
        assert cmd[cmd.index("--one_word") + 1] == "1"

    def test_invalid_device(self):
        with pytest.raises(ConfigurationError):
            FasterWhisperCLIBackend("fw", "medium", device="tpu")

    def test_progress_lines(self):
        assert parse_progress_line("  42% |#####     | 42/100") == 42
        assert parse_progress_line("Loading model") is None
        assert parse_progress_line("150%") == 100

    def test_model_names(self):
        assert normalize_model_name("faster-whisper-large-v2") == "large-v2"
        assert normalize_model_name("medium") == "medium"

    def test_resolve_output_file(self, tmp_path):
        (tmp_path / "other.srt").write_text("x")
        assert resolve_output_file(str(tmp_path), "/a/chunk_0003.wav") == str(tmp_path / "other.srt")
        (tmp_path / "chunk_0003.srt").write_text("x")
        assert resolve_output_file(str(tmp_path), "/a/chunk_0003.wav") == str(tmp_path / "chunk_0003.srt")
        assert resolve_output_file(str(tmp_path / "missing"), "/a/b.wav") is None


class TestCreateBackend:
    def test_http_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("MY_ASR_KEY", "sk-env")
        backend = create_backend("cloud", {"type": "http", "base_url": "https://asr.example.test",
                                           "api_key_env": "MY_ASR_KEY", "model": "whisper-large"})
        try:
            assert isinstance(backend, HTTPTranscriptionBackend)
            assert backend.api_key == "sk-env"
            assert backend.name == "cloud"
            assert backend.model == "whisper-large"
        finally:
            backend.close()

    def test_faster_whisper_requires_program(self):
        with pytest.raises(ConfigurationError):
            create_backend("fw", {"type": "faster_whisper", "model": "medium"})

    def test_faster_whisper(self):
        backend = create_backend("fw", {"type": "faster_whisper", "program_path": "fw", "model": "small"})
        assert isinstance(backend, FasterWhisperCLIBackend)
        assert backend.identity == "faster-whisper:fw:cpu"

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError):
            create_backend("x", {"type": "telepathy"})


def test_cues_from_segments_skips_incomplete():
    cues = cues_from_segments([{"start": 1.0, "end": 2.0, "text": "a"}, {"start": 3.0, "text": "b"}])
    assert cues == [SubtitleCue(1, 1_000, 2_000, "a")]


def test_empty_body_yields_no_cues():
    assert parse_transcription_body("   ") == []
    with pytest.raises(ResultUnparseable):
        parse_transcription_body('{"text": "no segments"}')
