"""Handles loading configuration from YAML files."""

import yaml
import os
import logging
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError
from .models import GenerationOptions, TranscriptionOptions
from .optimizer import CorrectionBackend, OpenAICompatibleCorrectionBackend
from .transcriber import TranscriptionBackend, create_backend

logger = logging.getLogger(__name__)

API_KEY_ENV = "CHUNKSUB_API_KEY"


class ConfigLoader:
    """Loads configuration settings from a YAML file."""

    def load_config(self, config_path: str) -> dict:
        """
        Loads configuration from the specified YAML file path.

        Args:
            config_path: The path to the YAML configuration file.

        Returns:
            A dictionary containing the loaded configuration settings.

        Raises:
            FileNotFoundError: If the configuration file does not exist.
            ConfigurationError: If the file cannot be parsed as YAML or
                              if there are other reading errors.
        """
        logger.info(f"Attempting to load configuration from: {config_path}")
        if not os.path.exists(config_path):
            logger.error(f"Configuration file not found at path: {config_path}")
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        if not os.path.isfile(config_path):
            logger.error(f"Configuration path is not a file: {config_path}")
            raise ConfigurationError(f"Configuration path is not a file: {config_path}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file {config_path}: {e}", exc_info=True)
            raise ConfigurationError(f"Invalid YAML format in {config_path}: {e}") from e
        except IOError as e:
            logger.error(f"Error reading configuration file {config_path}: {e}", exc_info=True)
            raise ConfigurationError(f"Could not read configuration file {config_path}: {e}") from e

        if not isinstance(config, dict):
            logger.error(f"Configuration file {config_path} did not load as a dictionary (root object).")
            raise ConfigurationError(f"Invalid YAML structure in {config_path}. Root must be a mapping (dictionary).")
        logger.info(f"Configuration loaded successfully from {config_path}")
        return config


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{name}' must be a mapping")
    return section


def _number(section: Dict[str, Any], key: str, default, minimum=None, cast=float, where: str = ""):
    value = section.get(key)
    if value is None:
        # An explicit null means the default
        value = default
    if value is None:
        return None
    try:
        value = cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"'{where}{key}' must be a number, got {value!r}") from e
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"'{where}{key}' must be at least {minimum}, got {value}")
    return value


def build_generation_options(config: Dict[str, Any]) -> GenerationOptions:
    """
    Converts the ``chunking``, ``cache``, ``retry``, ``optimization`` and
    ``transcription`` sections into GenerationOptions. Missing keys take
    the defaults.

    Raises:
        ConfigurationError: For malformed or out-of-range values.
    """
    defaults = GenerationOptions()
    chunking = _section(config, "chunking")
    cache = _section(config, "cache")
    retry = _section(config, "retry")
    optimization = _section(config, "optimization")
    transcription = _section(config, "transcription")

    chunk_length = _number(chunking, "chunk_length_seconds", defaults.chunk_length_ms / 1000, 1, where="chunking.")
    overlap = _number(chunking, "overlap_seconds", defaults.overlap_ms / 1000, 0, where="chunking.")
    if overlap >= chunk_length:
        raise ConfigurationError(
            f"'chunking.overlap_seconds' ({overlap}) must be smaller than 'chunking.chunk_length_seconds' ({chunk_length})")

    ttl_hours = _number(cache, "ttl_hours", defaults.cache_ttl_seconds / 3600, 0, where="cache.")

    return GenerationOptions(
        enable_chunking=bool(chunking.get("enabled", defaults.enable_chunking)),
        chunk_length_ms=int(round(chunk_length * 1000)),
        overlap_ms=int(round(overlap * 1000)),
        max_workers=_number(chunking, "max_workers", None, 1, cast=int, where="chunking."),
        enable_cache=bool(cache.get("enabled", defaults.enable_cache)),
        cache_ttl_seconds=ttl_hours * 3600,
        enable_optimization=bool(optimization.get("enabled", defaults.enable_optimization)),
        optimization_prompt=optimization.get("prompt") or None,
        max_attempts=_number(retry, "max_attempts", defaults.max_attempts, 1, cast=int, where="retry."),
        base_delay_seconds=_number(retry, "base_delay_seconds", defaults.base_delay_seconds, 0, where="retry."),
        transcription=TranscriptionOptions(
            language=transcription.get("language") or None,
            word_timestamps=bool(transcription.get("word_timestamps", False)),
            vad_filter=bool(transcription.get("vad_filter", True)),
            vad_threshold=_number(transcription, "vad_threshold", 0.4, 0, where="transcription."),
            prompt=transcription.get("prompt") or None,
        ),
    )


def backend_names(config: Dict[str, Any]) -> list:
    return list(_section(config, "backends").keys())


def default_backend_name(config: Dict[str, Any]) -> str:
    """The ``default_backend`` key, or the only configured backend."""
    name = config.get("default_backend")
    names = backend_names(config)
    if name:
        if name not in names:
            raise ConfigurationError(f"Default backend '{name}' is not defined under 'backends'")
        return name
    if len(names) == 1:
        return names[0]
    raise ConfigurationError("Set 'default_backend' or pass --backend; several backends are configured")


def build_backend(config: Dict[str, Any], name: str) -> TranscriptionBackend:
    """
    Creates the backend called ``name`` from the ``backends`` section.

    Raises:
        ConfigurationError: If the backend is not defined or is misconfigured.
    """
    backends = _section(config, "backends")
    settings = backends.get(name)
    if settings is None:
        raise ConfigurationError(f"Backend '{name}' is not defined in the configuration",
                                 user_message=f"Unknown transcription backend '{name}'.")
    if not isinstance(settings, dict):
        raise ConfigurationError(f"Settings of backend '{name}' must be a mapping")
    logger.info(f"Creating transcription backend '{name}' ({settings.get('type', '?')})")
    return create_backend(name, settings)


def build_correction_backend(config: Dict[str, Any]) -> Optional[CorrectionBackend]:
    """Creates the LLM correction backend, or None when ``optimization.base_url`` is not set."""
    optimization = _section(config, "optimization")
    base_url = optimization.get("base_url")
    if not base_url:
        return None
    api_key = optimization.get("api_key")
    if not api_key and optimization.get("api_key_env"):
        api_key = os.environ.get(optimization["api_key_env"])
    if not api_key:
        api_key = os.environ.get(API_KEY_ENV)
    return OpenAICompatibleCorrectionBackend(
        base_url=base_url,
        api_key=api_key,
        model=optimization.get("model", "gpt-4o-mini"),
        temperature=_number(optimization, "temperature", 0.3, 0, where="optimization."),
        timeout=_number(optimization, "timeout_seconds", 120, 1, where="optimization."),
    )
