"""
Chunk Result Merger: reassembles per-chunk cues into one subtitle track.

Each chunk's cues come back from the backend with times relative to the
chunk. They are shifted onto the source timeline, then every chunk except the
last drops any cue that touches its trailing overlap window, because that
stretch of audio is transcribed again at the head of the next chunk. Cues are
dropped whole, never truncated; a long cue that straddles the window is lost
together with the clean speech it also covers.
"""

import logging
from typing import List, Sequence, Tuple

from .models import AudioChunk, SubtitleCue, renumber

logger = logging.getLogger(__name__)

ChunkResult = Tuple[AudioChunk, Sequence[SubtitleCue]]


def intersects(cue: SubtitleCue, window_start_ms: int, window_end_ms: int) -> bool:
    return cue.end_ms > window_start_ms and cue.start_ms < window_end_ms


class ChunkResultMerger:
    """Merges ordered ``(chunk, cues)`` pairs into one sorted, renumbered cue list."""

    def __init__(self, overlap_ms: int):
        if overlap_ms < 0:
            raise ValueError("overlap_ms cannot be negative")
        self.overlap_ms = overlap_ms

    def merge(self, results: Sequence[ChunkResult]) -> List[SubtitleCue]:
        """
        Args:
            results: ``(chunk, chunk-relative cues)`` pairs in chunk order.

        Returns:
            Cues on the source timeline, sorted by start time, indexed 1..N.
            A single chunk's cues are returned as given.
        """
        if not results:
            return []
        if len(results) == 1:
            return list(results[0][1])

        ordered = sorted(results, key=lambda item: item[0].start_ms)
        survivors: List[SubtitleCue] = []
        last = len(ordered) - 1
        for position, (chunk, cues) in enumerate(ordered):
            shifted = [cue.shifted(chunk.start_ms) for cue in cues]
            if position < last:
                window_end = chunk.end_ms
                window_start = window_end - self.overlap_ms
                kept = [cue for cue in shifted if not intersects(cue, window_start, window_end)]
                dropped = len(shifted) - len(kept)
                if dropped:
                    logger.debug(f"Chunk {chunk.index}: dropped {dropped} cue(s) touching "
                                 f"overlap window [{window_start}ms, {window_end}ms]")
                shifted = kept
            survivors.extend(shifted)

        merged = renumber(survivors)
        logger.info(f"Merged {len(ordered)} chunks into {len(merged)} cues")
        return merged
