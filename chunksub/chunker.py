"""Splits long audio into overlapping chunks that can be transcribed independently."""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .audio_extractor import AudioExtractor
from .exceptions import ChunkExtractionFailed, ConfigurationError, OperationCancelled
from .models import AudioChunk
from .utils import CancellationToken, ProgressCallback, null_progress, remove_dir_quietly

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_LENGTH_MS = 600_000  # 10 minutes
DEFAULT_OVERLAP_MS = 10_000  # 10 seconds
CHUNK_DIR_PREFIX = "chunksub_chunks_"


def compute_windows(total_ms: int, chunk_length_ms: int, overlap_ms: int) -> List[Tuple[int, int]]:
    """
    Computes the ``(start, end)`` windows covering ``[0, total_ms]``.

    Consecutive windows overlap by exactly ``overlap_ms`` and the last one
    ends exactly at ``total_ms``. Audio no longer than one chunk yields a
    single window.
    """
    if chunk_length_ms <= 0:
        raise ConfigurationError(f"Chunk length must be positive, got {chunk_length_ms}ms")
    if overlap_ms < 0 or overlap_ms >= chunk_length_ms:
        raise ConfigurationError(
            f"Overlap ({overlap_ms}ms) must be non-negative and shorter than the chunk length ({chunk_length_ms}ms)")
    if total_ms <= 0:
        raise ValueError(f"Total duration must be positive, got {total_ms}ms")

    if total_ms <= chunk_length_ms:
        return [(0, total_ms)]

    windows = []
    start = 0
    while True:
        end = min(start + chunk_length_ms, total_ms)
        windows.append((start, end))
        if end >= total_ms:
            break
        start = end - overlap_ms
    return windows


@dataclass
class ChunkPlan:
    """The chunks of one pipeline invocation and the temp directory that holds them."""
    chunks: List[AudioChunk]
    overlap_ms: int
    total_ms: Optional[int]  # None when the duration was not probed
    temp_dir: Optional[str] = None  # None when the source file is reused as the only chunk
    _cleaned: bool = field(default=False, repr=False)

    @property
    def is_single(self) -> bool:
        return len(self.chunks) == 1

    def cleanup(self) -> None:
        """Deletes the chunk files. The source audio is never touched."""
        if self._cleaned:
            return
        self._cleaned = True
        remove_dir_quietly(self.temp_dir)


class AudioChunkPlanner:
    """Plans and materializes overlapping chunks using an AudioExtractor."""

    def __init__(self, extractor: AudioExtractor, temp_root: Optional[str] = None):
        """
        Args:
            extractor: Used to probe the duration and to cut each chunk.
            temp_root: Parent directory for the per-invocation chunk directory.
                       Defaults to the system temp directory.
        """
        self.extractor = extractor
        self.temp_root = temp_root

    def plan(
        self,
        audio_path: str,
        chunk_length_ms: int = DEFAULT_CHUNK_LENGTH_MS,
        overlap_ms: int = DEFAULT_OVERLAP_MS,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ChunkPlan:
        """
        Splits ``audio_path`` into chunks.

        Args:
            audio_path: Mono 16 kHz WAV produced by the extractor.
            chunk_length_ms: Maximum length of a chunk.
            overlap_ms: Overlap between consecutive chunks.
            progress: Receives ``(fraction 0..1, message)`` as chunks are cut.
            cancel_token: Checked before each chunk is cut.

        Returns:
            A ChunkPlan. The caller must call ``cleanup()`` once done with it.

        Raises:
            DurationUnavailable: If the duration cannot be probed.
            ChunkExtractionFailed: If any chunk cannot be cut. Partial files are removed.
            OperationCancelled: If cancelled while cutting. Partial files are removed.
        """
        report = progress or null_progress
        total_ms = self.extractor.probe_duration(audio_path)
        windows = compute_windows(total_ms, chunk_length_ms, overlap_ms)
        logger.info(f"Audio duration {total_ms / 1000:.3f}s -> {len(windows)} chunk(s) "
                    f"(length {chunk_length_ms / 1000:.0f}s, overlap {overlap_ms / 1000:.0f}s)")

        if len(windows) == 1:
            report(1.0, "Audio does not need to be split")
            chunk = AudioChunk(file_path=audio_path, start_ms=0, end_ms=total_ms, index=0, is_source=True)
            return ChunkPlan(chunks=[chunk], overlap_ms=overlap_ms, total_ms=total_ms)

        if self.temp_root:
            os.makedirs(self.temp_root, exist_ok=True)
        chunk_dir = tempfile.mkdtemp(prefix=CHUNK_DIR_PREFIX, dir=self.temp_root)
        chunks: List[AudioChunk] = []
        try:
            for index, (start_ms, end_ms) in enumerate(windows):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled("Chunk planning")
                report(index / len(windows),
                       f"Cutting chunk {index + 1}/{len(windows)} ({_clock(start_ms)} - {_clock(end_ms)})")
                chunk_path = os.path.join(chunk_dir, f"chunk_{index:04d}.wav")
                try:
                    self.extractor.extract_segment(audio_path, start_ms, end_ms, chunk_path)
                except ChunkExtractionFailed as e:
                    e.chunk_index = index
                    raise
                except OperationCancelled:
                    raise
                except Exception as e:
                    raise ChunkExtractionFailed(f"Cutting chunk {index} failed: {e}", chunk_index=index) from e
                if not os.path.isfile(chunk_path):
                    raise ChunkExtractionFailed(f"Chunk file was not created: {chunk_path}", chunk_index=index)
                chunks.append(AudioChunk(file_path=chunk_path, start_ms=start_ms, end_ms=end_ms, index=index))
        except BaseException:
            logger.warning(f"Chunk planning aborted; removing {chunk_dir}")
            remove_dir_quietly(chunk_dir)
            raise

        report(1.0, f"Audio split into {len(chunks)} chunks")
        return ChunkPlan(chunks=chunks, overlap_ms=overlap_ms, total_ms=total_ms, temp_dir=chunk_dir)


def _clock(ms: int) -> str:
    total_seconds = ms // 1000
    return f"{total_seconds // 60:02d}:{total_seconds % 60:02d}"
