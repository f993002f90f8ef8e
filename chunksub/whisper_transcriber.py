"""In-process transcription backend using OpenAI's Whisper model."""

import whisper
import logging
import os
import threading
import torch

from .models import TranscriptionOptions
from .exceptions import TranscriptionError
from .transcriber import TranscriptionBackend, cues_from_segments

logger = logging.getLogger(__name__)


class WhisperBackend(TranscriptionBackend):
    """Implements transcription using a locally loaded Whisper model."""

    def __init__(self, model_name: str = "medium", device: str = "cuda", fp16: bool = True, name: str = "whisper"):
        """
        Initializes the WhisperBackend.

        Args:
            model_name: The name of the Whisper model to use (e.g., "base", "medium.en").
            device: The device to run the model on ("cuda" or "cpu").
            fp16: Whether to use float16 precision (faster on compatible GPUs).
            name: Backend name as configured.

        Raises:
            ValueError: If the specified device is invalid.
            TranscriptionError: If the model fails to load.
        """
        self.model = model_name
        self.device = device
        self.fp16 = fp16
        self.name = name
        # One model instance is shared by all chunk workers; inference is serialized.
        self._lock = threading.Lock()

        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA device requested but not available. Falling back to CPU.")
            self.device = "cpu"
        elif self.device not in ["cuda", "cpu"]:
            raise ValueError(f"Invalid device specified: {self.device}. Choose 'cuda' or 'cpu'.")

        logger.info(f"Initializing WhisperBackend with model '{self.model}' on device '{self.device}' (FP16: {self.fp16})")
        try:
            self._whisper_model = whisper.load_model(self.model, device=self.device)
            logger.info(f"Whisper model '{self.model}' loaded successfully.")
        except Exception as e:
            logger.error(f"Failed to load Whisper model '{self.model}': {e}", exc_info=True)
            raise TranscriptionError(f"Failed to load Whisper model '{self.model}': {e}") from e

    @property
    def identity(self) -> str:
        return f"whisper:{self.name}"

    def transcribe(self, audio_path, options: TranscriptionOptions, progress=None, cancel_token=None):
        logger.info(f"Starting transcription for: {audio_path}")
        if not os.path.exists(audio_path):
            raise FileNotFoundError(f"Audio file not found: {audio_path}")
        if cancel_token is not None:
            cancel_token.raise_if_cancelled(f"Transcription of {os.path.basename(audio_path)}")

        if progress:
            progress(5.0, "Waiting for the Whisper model")
        try:
            with self._lock:
                if progress:
                    progress(10.0, "Transcribing with Whisper")
                result = self._whisper_model.transcribe(
                    audio_path,
                    language=options.language,  # None lets Whisper detect the language
                    initial_prompt=options.prompt,
                    word_timestamps=options.word_timestamps,
                    fp16=self.fp16 if self.device == "cuda" else False,  # FP16 only works on CUDA
                    verbose=False,
                )
        except Exception as e:
            logger.error(f"Error during Whisper transcription process for {audio_path}: {e}", exc_info=True)
            raise TranscriptionError(f"Whisper transcription failed for {audio_path}: {e}") from e

        logger.info(f"Transcription completed. Detected language: {result.get('language', 'N/A')}")
        segments = result.get('segments')
        if segments is None:
            logger.warning("Transcription result did not contain 'segments'.")
            segments = []
        cues = cues_from_segments(segments)
        logger.info(f"Processed {len(cues)} segments from transcription.")
        if progress:
            progress(100.0, "Transcription finished")
        return cues
