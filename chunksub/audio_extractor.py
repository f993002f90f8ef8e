"""Handles audio extraction and cutting using ffmpeg."""

import ffmpeg
import os
import re
import logging
import subprocess
import uuid
from abc import ABC, abstractmethod
from typing import Optional

from .exceptions import AudioExtractionError, ChunkExtractionFailed, DurationUnavailable
from .utils import ensure_dir_exists, remove_file_quietly, seconds_to_ms

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)", re.IGNORECASE)

# ASR backends expect mono 16 kHz 16-bit PCM WAV.
PCM_OUTPUT_ARGS = {"acodec": "pcm_s16le", "ar": 16000, "ac": 1}


class AudioExtractor(ABC):
    """Abstract capability for producing ASR-ready WAV audio."""

    @abstractmethod
    def extract_whole(self, media_path: str) -> str:
        """Extracts the full audio track into a new temporary WAV file and returns its path."""
        pass

    @abstractmethod
    def extract_range(self, media_path: str, start_ms: int, end_ms: int) -> str:
        """Extracts ``[start_ms, end_ms)`` of the media's audio into a new temporary WAV file."""
        pass

    @abstractmethod
    def extract_segment(self, audio_path: str, start_ms: int, end_ms: int, output_path: str) -> str:
        """Cuts ``[start_ms, end_ms)`` of an already extracted WAV file into ``output_path``."""
        pass

    @abstractmethod
    def probe_duration(self, audio_path: str) -> int:
        """Returns the duration of the audio in milliseconds."""
        pass


class FFmpegAudioExtractor(AudioExtractor):
    """Extracts and cuts audio with the ffmpeg/ffprobe executables."""

    def __init__(self, temp_dir: str, ffmpeg_path: Optional[str] = None, ffprobe_path: Optional[str] = None):
        """
        Initializes the FFmpegAudioExtractor.

        Args:
            temp_dir: Directory receiving the extracted temporary WAV files.
            ffmpeg_path: Optional path to the ffmpeg executable.
                         If None, assumes ffmpeg is in the system PATH.
            ffprobe_path: Optional path to ffprobe. Derived from ffmpeg_path if omitted.
        """
        self.temp_dir = temp_dir
        self.ffmpeg_cmd = ffmpeg_path or 'ffmpeg'
        if ffprobe_path:
            self.ffprobe_cmd = ffprobe_path
        else:
            directory, name = os.path.split(self.ffmpeg_cmd)
            self.ffprobe_cmd = os.path.join(directory, name.replace("ffmpeg", "ffprobe"))
        logger.info(f"Using ffmpeg command: {self.ffmpeg_cmd} (ffprobe: {self.ffprobe_cmd})")

    def _temp_wav_path(self, media_path: str, tag: str) -> str:
        ensure_dir_exists(self.temp_dir)
        base_name = os.path.splitext(os.path.basename(media_path))[0]
        return os.path.join(self.temp_dir, f"{base_name}_{tag}_{uuid.uuid4().hex[:12]}.wav")

    def _run(self, stream, output_path: str, error_cls, description: str) -> str:
        try:
            stream.overwrite_output().run(cmd=self.ffmpeg_cmd, capture_stdout=True, capture_stderr=True)
        except ffmpeg.Error as e:
            stderr_output = e.stderr.decode('utf-8', errors='replace') if e.stderr else "No stderr output"
            logger.error(f"ffmpeg failed during {description}: {stderr_output[-2000:]}")
            remove_file_quietly(output_path)
            raise error_cls(f"ffmpeg failed during {description}: {stderr_output[-500:]}") from e
        except OSError as e:
            # Executable missing or not runnable
            remove_file_quietly(output_path)
            raise error_cls(f"Could not run ffmpeg ({self.ffmpeg_cmd}): {e}") from e
        if not os.path.isfile(output_path):
            raise error_cls(f"ffmpeg reported success but produced no file during {description}: {output_path}")
        return output_path

    def extract_whole(self, media_path: str) -> str:
        logger.info(f"Starting audio extraction for: {media_path}")
        if not os.path.exists(media_path):
            raise FileNotFoundError(f"Input media file not found: {media_path}")
        output_path = self._temp_wav_path(media_path, "audio")
        stream = ffmpeg.input(media_path).output(output_path, vn=None, **PCM_OUTPUT_ARGS)
        self._run(stream, output_path, AudioExtractionError, f"audio extraction of {media_path}")
        logger.info(f"Successfully extracted audio to: {output_path}")
        return output_path

    def extract_range(self, media_path: str, start_ms: int, end_ms: int) -> str:
        logger.info(f"Extracting audio {start_ms}ms-{end_ms}ms from: {media_path}")
        if not os.path.exists(media_path):
            raise FileNotFoundError(f"Input media file not found: {media_path}")
        if end_ms <= start_ms:
            raise AudioExtractionError(f"Empty extraction range {start_ms}..{end_ms}")
        output_path = self._temp_wav_path(media_path, "clip")
        stream = ffmpeg.input(media_path, ss=f"{start_ms / 1000:.3f}", t=f"{(end_ms - start_ms) / 1000:.3f}")
        stream = stream.output(output_path, vn=None, **PCM_OUTPUT_ARGS)
        self._run(stream, output_path, AudioExtractionError, f"clip extraction of {media_path}")
        return output_path

    def extract_segment(self, audio_path: str, start_ms: int, end_ms: int, output_path: str) -> str:
        logger.debug(f"Cutting {audio_path} {start_ms}ms-{end_ms}ms -> {output_path}")
        stream = ffmpeg.input(audio_path, ss=f"{start_ms / 1000:.3f}", t=f"{(end_ms - start_ms) / 1000:.3f}")
        stream = stream.output(output_path, **PCM_OUTPUT_ARGS)
        return self._run(stream, output_path, ChunkExtractionFailed, f"chunk cut of {audio_path}")

    def probe_duration(self, audio_path: str) -> int:
        """
        Returns the audio duration in milliseconds.

        Tries ffprobe first and falls back to parsing the ``Duration:`` line
        that ``ffmpeg -i`` prints on stderr.

        Raises:
            DurationUnavailable: If neither method yields a positive duration.
        """
        try:
            info = ffmpeg.probe(audio_path, cmd=self.ffprobe_cmd)
            duration = float(info.get("format", {}).get("duration", 0) or 0)
            if duration > 0:
                return seconds_to_ms(duration)
            logger.debug(f"ffprobe returned no duration for {audio_path}")
        except (ffmpeg.Error, OSError, ValueError, TypeError) as e:
            logger.debug(f"ffprobe could not read duration of {audio_path}: {e}")

        try:
            result = subprocess.run(
                [self.ffmpeg_cmd, "-hide_banner", "-i", audio_path],
                capture_output=True, text=True, encoding="utf-8", errors="replace",
            )
            duration_ms = parse_ffmpeg_duration(result.stderr)
            if duration_ms is not None and duration_ms > 0:
                return duration_ms
        except OSError as e:
            raise DurationUnavailable(f"Could not run ffmpeg to probe {audio_path}: {e}") from e

        raise DurationUnavailable(f"Could not determine the duration of {audio_path}")


def parse_ffmpeg_duration(stderr_output: str) -> Optional[int]:
    """Extracts ``Duration: HH:MM:SS.xx`` from ffmpeg's banner output, in milliseconds."""
    match = _DURATION_RE.search(stderr_output or "")
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return seconds_to_ms(int(hours) * 3600 + int(minutes) * 60 + float(seconds))
