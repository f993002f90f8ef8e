"""Transcription backends: the capability interface and its concrete variants."""

import glob
import json
import logging
import os
import re
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import httpx

from .models import SubtitleCue, TranscriptionOptions
from .exceptions import (
    AuthenticationMissing,
    BackendRejected,
    BackendUnavailable,
    ConfigurationError,
    ResultUnparseable,
    TranscriptionError,
)
from .subtitle_formatter import parse_srt
from .utils import CancellationToken, seconds_to_ms

logger = logging.getLogger(__name__)

BackendProgress = Callable[[float, str], None]

_PERCENT_RE = re.compile(r"(\d{1,3})%")


class TranscriptionBackend(ABC):
    """
    Abstract base class for transcription services.

    A backend turns one audio file into cues whose times are relative to the
    start of that file. It knows nothing about chunking, merging or caching.
    """

    name: str = "backend"
    model: str = ""

    @property
    def identity(self) -> str:
        """Stable identifier used in cache keys. Changing backend or model invalidates the cache."""
        return f"{type(self).__name__}:{self.name}"

    @abstractmethod
    def transcribe(
        self,
        audio_path: str,
        options: TranscriptionOptions,
        progress: Optional[BackendProgress] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[SubtitleCue]:
        """
        Transcribes the given audio file.

        Args:
            audio_path: Path to a mono 16 kHz WAV file.
            options: Language hint, VAD, word timestamps and prompt.
            progress: Receives ``(percent 0-100, message)`` for this file.
            cancel_token: Cooperative cancellation; a call already in flight
                          is allowed to finish.

        Returns:
            Cues relative to the start of the file.

        Raises:
            AuthenticationMissing: Credentials are not configured.
            BackendUnavailable: Timeout, HTTP 429 or 5xx. Retryable.
            BackendRejected: Any other HTTP 4xx. Not retryable.
            ResultUnparseable: The output could not be read as subtitles.
            TranscriptionError: Any other failure of the backend.
            FileNotFoundError: If the audio file doesn't exist.
        """
        pass

    def close(self) -> None:
        """Releases resources held by the backend."""
        pass


def cues_from_segments(segments: List[Dict[str, Any]]) -> List[SubtitleCue]:
    """Builds cues from Whisper-style ``{"start", "end", "text"}`` segments (seconds)."""
    cues = []
    for seg_data in segments:
        if 'start' in seg_data and 'end' in seg_data and 'text' in seg_data:
            text = str(seg_data['text']).strip()
            if not text:
                continue
            start_ms = seconds_to_ms(float(seg_data['start']))
            end_ms = max(start_ms, seconds_to_ms(float(seg_data['end'])))
            cues.append(SubtitleCue(index=len(cues) + 1, start_ms=start_ms, end_ms=end_ms, text=text))
        else:
            logger.warning(f"Skipping incomplete segment data: {seg_data}")
    return cues


def parse_transcription_body(body: str) -> List[SubtitleCue]:
    """
    Reads a transcription response: SRT text, or JSON carrying ``segments``.

    Raises:
        ResultUnparseable: If neither form yields any cue.
    """
    stripped = (body or "").strip()
    if not stripped:
        return []
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except ValueError as e:
            raise ResultUnparseable(f"Response looked like JSON but could not be decoded: {e}") from e
        segments = data.get("segments") if isinstance(data, dict) else None
        if not isinstance(segments, list):
            raise ResultUnparseable("JSON response carries no timed segments")
        return cues_from_segments(segments)
    return parse_srt(stripped, strict=True)


class HTTPTranscriptionBackend(TranscriptionBackend):
    """
    Generic multipart HTTP endpoint in the style of ``/v1/audio/transcriptions``.

    The audio file is posted as ``file`` together with ``model`` and
    ``response_format``; the response is SRT text or verbose JSON.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "whisper-1",
        endpoint_path: str = "/v1/audio/transcriptions",
        response_format: str = "srt",
        name: str = "http",
        timeout: float = 300.0,
        client: Optional[httpx.Client] = None,
    ):
        if not base_url or not base_url.strip():
            raise ConfigurationError("Base URL of the transcription endpoint cannot be empty.")
        self.base_url = base_url.rstrip("/")
        path = endpoint_path or "/v1/audio/transcriptions"
        self.endpoint_path = path if path.startswith("/") else "/" + path
        self.api_key = api_key
        self.model = model or "whisper-1"
        self.response_format = response_format or "srt"
        self.name = name
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=30.0))

    @property
    def identity(self) -> str:
        return f"http:{self.name}:{self.base_url}{self.endpoint_path}"

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint_path}"

    def _form_fields(self, options: TranscriptionOptions) -> Dict[str, str]:
        fields = {"model": self.model, "response_format": self.response_format}
        if options.language:
            fields["language"] = options.language
        if options.prompt:
            fields["prompt"] = options.prompt
        if options.word_timestamps:
            fields["timestamp_granularities[]"] = "word"
        return fields

    def transcribe(self, audio_path, options, progress=None, cancel_token=None):
        if not self.api_key:
            raise AuthenticationMissing(f"No API key configured for backend '{self.name}'")
        if not os.path.exists(audio_path):
            raise FileNotFoundError(f"Audio file not found: {audio_path}")
        if cancel_token is not None:
            cancel_token.raise_if_cancelled(f"Transcription of {os.path.basename(audio_path)}")

        if progress:
            progress(5.0, "Uploading audio")
        logger.info(f"POST {self.url} ({os.path.basename(audio_path)}, model={self.model})")
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            with open(audio_path, "rb") as audio_file:
                files = {"file": (os.path.basename(audio_path), audio_file, "audio/wav")}
                response = self._client.post(self.url, headers=headers, data=self._form_fields(options), files=files)
        except httpx.TimeoutException as e:
            raise BackendUnavailable(f"{self.name}: request timed out: {e}") from e
        except httpx.TransportError as e:
            raise BackendUnavailable(f"{self.name}: network error: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise BackendUnavailable(f"{self.name} API call failed ({status}): {response.text[:300]}",
                                     status_code=status)
        if status >= 400:
            raise BackendRejected(f"{self.name} API call failed ({status}): {response.text[:300]}",
                                  status_code=status)

        if progress:
            progress(90.0, "Parsing result")
        cues = parse_transcription_body(response.text)
        if progress:
            progress(100.0, f"{len(cues)} cues received")
        return cues

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class FasterWhisperCLIBackend(TranscriptionBackend):
    """Runs a local Faster-Whisper executable and reads back the SRT it writes."""

    def __init__(
        self,
        program_path: str,
        model: str,
        model_dir: Optional[str] = None,
        device: str = "cpu",
        name: str = "faster-whisper",
        extra_args: Optional[List[str]] = None,
    ):
        if not model:
            raise ConfigurationError("A Faster-Whisper model name must be given.")
        if device not in ("cpu", "cuda"):
            raise ConfigurationError(f"Invalid device specified: {device}. Choose 'cuda' or 'cpu'.")
        self.program_path = program_path
        self.model = normalize_model_name(model)
        self.model_dir = model_dir
        self.device = device
        self.name = name
        self.extra_args = list(extra_args or [])

    @property
    def identity(self) -> str:
        return f"faster-whisper:{self.name}:{self.device}"

    def build_command(self, audio_path: str, output_dir: str, options: TranscriptionOptions) -> List[str]:
        cmd = [self.program_path, "--model", self.model]
        if self.model_dir:
            cmd += ["--model_dir", self.model_dir]
        cmd += ["--device", self.device]
        if options.language:
            cmd += ["--language", options.language]
        cmd += ["--output_format", "srt", "--output_dir", output_dir]
        if options.vad_filter:
            cmd += ["--vad_filter", "true", "--vad_threshold", f"{options.vad_threshold:.2f}"]
        else:
            cmd += ["--vad_filter", "false"]
        if options.word_timestamps:
            cmd += ["--word_timestamps", "true", "--one_word", "1"]
        else:
            cmd += ["--word_timestamps", "false", "--one_word", "0"]
        if options.prompt:
            cmd += ["--initial_prompt", options.prompt]
        cmd += ["--print_progress", "--beep_off"]
        cmd += self.extra_args
        cmd.append(audio_path)
        return cmd

    def transcribe(self, audio_path, options, progress=None, cancel_token=None):
        if not os.path.exists(audio_path):
            raise FileNotFoundError(f"Audio file not found: {audio_path}")
        if shutil.which(self.program_path) is None and not os.path.isfile(self.program_path):
            raise ConfigurationError(f"Faster-Whisper program not found: {self.program_path}")
        if cancel_token is not None:
            cancel_token.raise_if_cancelled(f"Transcription of {os.path.basename(audio_path)}")

        output_dir = tempfile.mkdtemp(prefix="chunksub_fw_")
        try:
            cmd = self.build_command(audio_path, output_dir, options)
            logger.info(f"Running Faster-Whisper: {' '.join(cmd)}")
            if progress:
                progress(5.0, "Starting Faster-Whisper")
            output_tail = []
            try:
                process = subprocess.Popen(
                    cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                    text=True, encoding="utf-8", errors="replace",
                )
            except OSError as e:
                raise TranscriptionError(f"Could not start Faster-Whisper: {e}") from e
            with process:
                for line in process.stdout:
                    line = line.rstrip()
                    output_tail = (output_tail + [line])[-50:]
                    percent = parse_progress_line(line)
                    if percent is not None and progress:
                        progress(5.0 + percent * 0.9, f"Transcribing: {percent}%")
                return_code = process.wait()
            if return_code != 0:
                raise TranscriptionError(
                    f"Faster-Whisper exited with code {return_code}: {' | '.join(output_tail[-10:])}")

            srt_path = resolve_output_file(output_dir, audio_path)
            if srt_path is None:
                raise ResultUnparseable(f"Faster-Whisper produced no SRT file in {output_dir}")
            with open(srt_path, "r", encoding="utf-8") as f:
                cues = parse_srt(f.read(), strict=True)
            if progress:
                progress(100.0, "Transcription finished")
            return cues
        finally:
            shutil.rmtree(output_dir, ignore_errors=True)


def normalize_model_name(folder_name: str) -> str:
    """Turns a model folder name such as ``faster-whisper-large-v3`` into the model argument ``large-v3``."""
    normalized = folder_name.strip()
    for prefix in ("faster-whisper-", "faster_whisper_", "fw-"):
        if normalized.lower().startswith(prefix):
            normalized = normalized[len(prefix):]
            break
    return normalized.strip("-").strip()


def parse_progress_line(line: str) -> Optional[int]:
    match = _PERCENT_RE.search(line)
    if not match:
        return None
    return min(int(match.group(1)), 100)


def resolve_output_file(output_dir: str, audio_path: str) -> Optional[str]:
    """Finds the SRT written for ``audio_path``; falls back to the newest SRT in the directory."""
    expected = os.path.join(output_dir, os.path.splitext(os.path.basename(audio_path))[0] + ".srt")
    if os.path.isfile(expected):
        return expected
    candidates = glob.glob(os.path.join(output_dir, "*.srt"))
    if not candidates:
        return None
    return max(candidates, key=os.path.getmtime)


def create_backend(name: str, settings: Dict[str, Any]) -> TranscriptionBackend:
    """
    Instantiates a backend from its configuration block.

    ``settings["type"]`` selects the variant: ``http``, ``faster_whisper`` or
    ``whisper``. API keys may be given inline or through ``api_key_env``.

    Raises:
        ConfigurationError: For unknown types or missing required settings.
    """
    backend_type = str(settings.get("type", "")).lower()
    if backend_type == "http":
        api_key = settings.get("api_key")
        if not api_key and settings.get("api_key_env"):
            api_key = os.environ.get(settings["api_key_env"])
        if not api_key:
            api_key = os.environ.get("CHUNKSUB_API_KEY")
        return HTTPTranscriptionBackend(
            base_url=settings.get("base_url", ""),
            api_key=api_key,
            model=settings.get("model", "whisper-1"),
            endpoint_path=settings.get("endpoint_path", "/v1/audio/transcriptions"),
            response_format=settings.get("response_format", "srt"),
            name=name,
            timeout=float(settings.get("timeout_seconds", 300)),
        )
    if backend_type in ("faster_whisper", "faster-whisper"):
        if not settings.get("program_path"):
            raise ConfigurationError(f"Backend '{name}' needs 'program_path'")
        return FasterWhisperCLIBackend(
            program_path=settings["program_path"],
            model=settings.get("model", ""),
            model_dir=settings.get("model_dir"),
            device=settings.get("device", "cpu"),
            name=name,
            extra_args=settings.get("extra_args"),
        )
    if backend_type == "whisper":
        # Imported here so that torch is only required when this backend is configured.
        from .whisper_transcriber import WhisperBackend
        return WhisperBackend(
            model_name=settings.get("model", "medium"),
            device=settings.get("device", "cuda"),
            fp16=bool(settings.get("fp16", True)),
            name=name,
        )
    raise ConfigurationError(f"Unknown backend type '{backend_type}' for backend '{name}'")
