"""Data models for ChunkSub.

All times are integer milliseconds so that repeated additions across many
chunks never drift.
"""

import enum
import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple


@dataclass
class SubtitleCue:
    """Represents a single timed subtitle entry."""
    index: int
    start_ms: int
    end_ms: int
    text: str

    def __post_init__(self):
        if self.end_ms < self.start_ms:
            raise ValueError(f"Cue {self.index} ends before it starts ({self.start_ms} > {self.end_ms})")

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def shifted(self, offset_ms: int) -> "SubtitleCue":
        return SubtitleCue(self.index, self.start_ms + offset_ms, self.end_ms + offset_ms, self.text)

    def with_text(self, text: str) -> "SubtitleCue":
        return SubtitleCue(self.index, self.start_ms, self.end_ms, text)


def renumber(cues: Iterable[SubtitleCue]) -> List[SubtitleCue]:
    """Sorts cues by start time (stable) and reassigns indices 1..N."""
    ordered = sorted(cues, key=lambda cue: cue.start_ms)
    return [SubtitleCue(i, cue.start_ms, cue.end_ms, cue.text) for i, cue in enumerate(ordered, start=1)]


@dataclass
class AudioChunk:
    """A time window of the source audio, materialized as a WAV file."""
    file_path: str
    start_ms: int
    end_ms: Optional[int]  # None only for a source chunk of unprobed length
    index: int
    is_source: bool = False  # True when the chunk is the original audio file itself

    def __post_init__(self):
        if self.end_ms is None and self.is_source:
            return
        if self.end_ms is None or self.end_ms <= self.start_ms:
            raise ValueError(f"Chunk {self.index} has an empty window ({self.start_ms}..{self.end_ms})")

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_ms is None:
            return None
        return self.end_ms - self.start_ms


@dataclass
class CacheEntry:
    """Persisted cache record. Timestamps are epoch seconds (UTC)."""
    content: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


@dataclass
class RetryContext:
    """Bookkeeping for one retried operation; never persisted."""
    attempt: int = 0
    last_error: Optional[BaseException] = None
    next_delay: float = 0.0


@dataclass(frozen=True)
class ClipRange:
    """A time range of a source file, e.g. a clip cut in the editor."""
    start_ms: int
    end_ms: int
    label: Optional[str] = None

    def __post_init__(self):
        if self.start_ms < 0 or self.end_ms <= self.start_ms:
            raise ValueError(f"Invalid clip range {self.start_ms}..{self.end_ms}")


class JobStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SubtitleJob:
    """One entry of the batch queue. Mutated only by the BatchCoordinator."""
    source_path: str
    backend_name: str
    clip: Optional[ClipRange] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    message: str = ""
    output_path: Optional[str] = None
    error_message: Optional[str] = None  # human-readable
    error_detail: Optional[str] = None  # technical cause, for logs and tooltips
    failed_chunk_index: Optional[int] = None

    @property
    def dedup_key(self) -> Tuple[str, Optional[int], Optional[int], str]:
        clip_start = self.clip.start_ms if self.clip else None
        clip_end = self.clip.end_ms if self.clip else None
        return (self.source_path, clip_start, clip_end, self.backend_name)


@dataclass
class TranscriptionOptions:
    """Per-request options handed to a transcription backend."""
    language: Optional[str] = None
    word_timestamps: bool = False
    vad_filter: bool = True
    vad_threshold: float = 0.4
    prompt: Optional[str] = None


@dataclass
class GenerationOptions:
    """Settings for one run of the generation pipeline."""
    enable_chunking: bool = True
    chunk_length_ms: int = 600_000
    overlap_ms: int = 10_000
    max_workers: Optional[int] = None
    enable_cache: bool = True
    cache_ttl_seconds: float = 24 * 3600
    enable_optimization: bool = False
    optimization_prompt: Optional[str] = None
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    transcription: TranscriptionOptions = field(default_factory=TranscriptionOptions)


@dataclass
class BatchSummary:
    """Aggregate counters, always recomputed from the job list."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def overall_progress(self) -> float:
        if self.total == 0:
            return 0.0
        return self.completed * 100.0 / self.total
