"""Progress reporting for the generation pipeline."""

import logging
import threading
from typing import Optional, Sequence, Tuple

from .utils import ProgressCallback, null_progress

logger = logging.getLogger(__name__)

# (stage name, weight in percent). The weights add up to 100.
PIPELINE_STAGES: Tuple[Tuple[str, float], ...] = (
    ("extract", 15.0),
    ("plan", 10.0),
    ("transcribe", 55.0),
    ("merge", 5.0),
    ("optimize", 10.0),
    ("finish", 5.0),
)


class ProgressSink:
    """
    Turns ``(stage, local_fraction)`` reports into one 0-100 percentage.

    Each stage owns the slice of the range given by its weight, so callers
    only ever say how far along *their* stage is. Reports may arrive from
    several worker threads at once.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None,
                 stages: Sequence[Tuple[str, float]] = PIPELINE_STAGES):
        self._callback = callback or null_progress
        self._ranges = {}
        start = 0.0
        for name, weight in stages:
            self._ranges[name] = (start, weight)
            start += weight
        self._lock = threading.Lock()
        self.last_percent = 0.0

    def stage_range(self, stage: str) -> Tuple[float, float]:
        start, weight = self._ranges[stage]
        return start, start + weight

    def report(self, stage: str, fraction: float, message: str = "") -> float:
        start, weight = self._ranges[stage]
        fraction = min(max(fraction, 0.0), 1.0)
        percent = start + weight * fraction
        with self._lock:
            self.last_percent = percent
            try:
                self._callback(percent, message)
            except Exception as e:
                # Callback errors are logged, never propagated.
                logger.warning(f"Progress callback raised: {e}", exc_info=True)
        return percent

    def report_part(self, stage: str, part: int, parts: int, fraction: float, message: str = "") -> float:
        """Reports progress of one of ``parts`` equal sub-ranges of a stage."""
        fraction = min(max(fraction, 0.0), 1.0)
        return self.report(stage, (part + fraction) / parts, message)

    def complete(self, message: str = "Done") -> None:
        with self._lock:
            self.last_percent = 100.0
            try:
                self._callback(100.0, message)
            except Exception as e:
                logger.warning(f"Progress callback raised: {e}", exc_info=True)
