import os

import pytest

from chunksub.config_loader import (
    ConfigLoader,
    build_backend,
    build_correction_backend,
    build_generation_options,
    default_backend_name,
)
from chunksub.exceptions import ConfigurationError
from chunksub.transcriber import FasterWhisperCLIBackend, HTTPTranscriptionBackend

REPO_CONFIG = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.yaml")


@pytest.fixture
def loader():
    return ConfigLoader()


def test_load_config(loader, tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("temp_dir: /tmp/x\nchunking:\n  chunk_length_seconds: 300\n", encoding="utf-8")
    assert loader.load_config(str(path)) == {"temp_dir": "/tmp/x", "chunking": {"chunk_length_seconds": 300}}


def test_missing_file(loader, tmp_path):
    with pytest.raises(FileNotFoundError):
        loader.load_config(str(tmp_path / "nope.yaml"))


def test_directory_is_rejected(loader, tmp_path):
    with pytest.raises(ConfigurationError):
        loader.load_config(str(tmp_path))


def test_invalid_yaml(loader, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("chunking: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        loader.load_config(str(path))


def test_root_must_be_mapping(loader, tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        loader.load_config(str(path))


def test_shipped_config_is_valid(loader):
    config = loader.load_config(REPO_CONFIG)
    options = build_generation_options(config)
    assert options.chunk_length_ms == 600_000
    assert options.overlap_ms == 10_000
    assert default_backend_name(config) == "openai"


class TestGenerationOptions:
    def test_defaults(self):
        options = build_generation_options({})
        assert options.enable_chunking
        assert options.chunk_length_ms == 600_000
        assert options.overlap_ms == 10_000
        assert options.max_workers is None
        assert options.cache_ttl_seconds == 24 * 3600
        assert options.max_attempts == 3
        assert options.transcription.language is None

    def test_values_are_converted(self):
        options = build_generation_options({
            "chunking": {"enabled": False, "chunk_length_seconds": 120.5, "overlap_seconds": 5, "max_workers": 2},
            "cache": {"enabled": False, "ttl_hours": 2},
            "retry": {"max_attempts": 5, "base_delay_seconds": 1},
            "optimization": {"enabled": True, "prompt": "Glossary: FFT"},
            "transcription": {"language": "fr", "vad_filter": False, "prompt": "Cours"},
        })
        assert not options.enable_chunking
        assert options.chunk_length_ms == 120_500
        assert options.overlap_ms == 5_000
        assert options.max_workers == 2
        assert not options.enable_cache
        assert options.cache_ttl_seconds == 7200
        assert options.max_attempts == 5
        assert options.enable_optimization
        assert options.optimization_prompt == "Glossary: FFT"
        assert options.transcription.language == "fr"
        assert not options.transcription.vad_filter

    def test_null_values_take_the_defaults(self):
        options = build_generation_options({
            "chunking": {"chunk_length_seconds": None, "overlap_seconds": None, "max_workers": None},
            "retry": {"max_attempts": None},
            "transcription": {"vad_threshold": None},
        })
        assert options.chunk_length_ms == 600_000
        assert options.overlap_ms == 10_000
        assert options.max_workers is None
        assert options.max_attempts == 3
        assert options.transcription.vad_threshold == 0.4

    @pytest.mark.parametrize("config", [
        {"chunking": {"chunk_length_seconds": 10, "overlap_seconds": 10}},
        {"chunking": {"chunk_length_seconds": "long"}},
        {"retry": {"max_attempts": 0}},
        {"chunking": "yes"},
    ])
    def test_invalid_values(self, config):
        with pytest.raises(ConfigurationError):
            build_generation_options(config)


class TestBackends:
    CONFIG = {
        "backends": {
            "cloud": {"type": "http", "base_url": "https://asr.example.test", "api_key": "sk-inline"},
            "local": {"type": "faster_whisper", "program_path": "fw", "model": "small"},
        }
    }

    def test_build_backend(self):
        backend = build_backend(self.CONFIG, "cloud")
        try:
            assert isinstance(backend, HTTPTranscriptionBackend)
            assert backend.api_key == "sk-inline"
        finally:
            backend.close()
        assert isinstance(build_backend(self.CONFIG, "local"), FasterWhisperCLIBackend)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError) as excinfo:
            build_backend(self.CONFIG, "missing")
        assert "missing" in excinfo.value.user_message

    def test_default_backend_must_be_chosen(self):
        with pytest.raises(ConfigurationError):
            default_backend_name(self.CONFIG)
        assert default_backend_name(dict(self.CONFIG, default_backend="local")) == "local"
        with pytest.raises(ConfigurationError):
            default_backend_name(dict(self.CONFIG, default_backend="other"))

    def test_single_backend_is_the_default(self):
        assert default_backend_name({"backends": {"only": {"type": "http"}}}) == "only"


class TestCorrectionBackend:
    def test_not_configured(self):
        assert build_correction_backend({}) is None

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("CHUNKSUB_API_KEY", "sk-env")
        backend = build_correction_backend({"optimization": {"base_url": "https://llm.example.test/v1"}})
        try:
            assert backend.api_key == "sk-env"
            assert backend.url == "https://llm.example.test/v1/chat/completions"
        finally:
            backend.close()
