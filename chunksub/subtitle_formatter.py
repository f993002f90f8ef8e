"""Reading and writing subtitle text in the SRT (SubRip Text) format."""

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import List, Sequence

from .models import SubtitleCue
from .exceptions import FormattingError, ResultUnparseable
from .utils import format_timestamp, parse_timestamp, ensure_dir_exists

logger = logging.getLogger(__name__)

_BLOCK_SPLIT_RE = re.compile(r"\n\s*\n")
_TIMING_RE = re.compile(r"^\s*(\S+)\s*-->\s*(\S+)")


def parse_srt(content: str, strict: bool = False) -> List[SubtitleCue]:
    """
    Parses SRT text into cues.

    Blocks that do not look like ``index / timing / text`` are skipped. With
    ``strict=True`` a non-empty input that yields no cue at all raises
    ResultUnparseable instead of returning an empty list.
    """
    if content is None:
        content = ""
    normalized = content.replace("\r\n", "\n").replace("\r", "\n").lstrip("\ufeff")
    cues: List[SubtitleCue] = []

    for block in _BLOCK_SPLIT_RE.split(normalized.strip()):
        lines = block.split("\n")
        if len(lines) < 3:
            if block.strip():
                logger.debug(f"Skipping short SRT block: {block[:60]!r}")
            continue
        try:
            index = int(lines[0].strip())
        except ValueError:
            logger.debug(f"Skipping SRT block with non-numeric index: {lines[0][:30]!r}")
            continue
        timing = _TIMING_RE.match(lines[1])
        if not timing:
            logger.debug(f"Skipping SRT block {index} with malformed timing line: {lines[1]!r}")
            continue
        try:
            start_ms = parse_timestamp(timing.group(1))
            end_ms = parse_timestamp(timing.group(2))
        except ValueError as e:
            logger.debug(f"Skipping SRT block {index}: {e}")
            continue
        text = "\n".join(lines[2:]).strip()
        if not text:
            continue
        if end_ms < start_ms:
            logger.debug(f"SRT block {index} ends before it starts; clamping end to start.")
            end_ms = start_ms
        cues.append(SubtitleCue(index=index, start_ms=start_ms, end_ms=end_ms, text=text))

    if strict and not cues and normalized.strip():
        raise ResultUnparseable(f"No subtitle cues could be parsed from result: {normalized[:200]!r}")
    return cues


def compose_srt(cues: Sequence[SubtitleCue]) -> str:
    """Renders cues as SRT text, numbering them in the order given."""
    parts = []
    for number, cue in enumerate(cues, start=1):
        parts.append(
            f"{number}\n"
            f"{format_timestamp(cue.start_ms)} --> {format_timestamp(cue.end_ms)}\n"
            f"{cue.text}\n"
        )
    return "\n".join(parts)


class SubtitleFormatter(ABC):
    """Abstract base class for subtitle writers."""

    extension = ""

    @abstractmethod
    def write(self, cues: Sequence[SubtitleCue], output_path: str) -> str:
        """
        Writes the cues to a subtitle file.

        Args:
            cues: Ordered subtitle cues.
            output_path: The path to save the subtitle file.

        Returns:
            The path written.

        Raises:
            FormattingError: If formatting or writing fails.
            FileSystemError: If the output directory cannot be created.
        """
        pass


class SRTFormatter(SubtitleFormatter):
    """Writes cues to a UTF-8 SRT file."""

    extension = "srt"

    def write(self, cues: Sequence[SubtitleCue], output_path: str) -> str:
        return self.write_text(compose_srt(cues), output_path)

    def write_text(self, content: str, output_path: str) -> str:
        logger.info(f"Writing subtitles to SRT: {output_path}")
        output_dir = os.path.dirname(os.path.abspath(output_path))
        ensure_dir_exists(output_dir)
        try:
            with open(output_path, 'w', encoding='utf-8') as f:
                f.write(content)
            logger.info(f"Successfully wrote subtitle file {output_path}")
            return output_path
        except IOError as e:
            logger.error(f"Failed to write SRT file to {output_path}: {e}", exc_info=True)
            raise FormattingError(f"Could not write SRT file: {e}") from e
