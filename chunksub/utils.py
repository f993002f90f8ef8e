"""Utility functions for ChunkSub."""

import os
import re
import logging
import shutil
import threading
from typing import Callable, Optional

from .exceptions import FileSystemError, OperationCancelled

logger = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(r"^\s*(\d{1,3}):(\d{2}):(\d{2})[,.](\d{1,3})\s*$")
_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def ensure_dir_exists(dir_path: str) -> None:
    """
    Ensures that a directory exists. Creates it if it doesn't.

    Args:
        dir_path: The path to the directory.

    Raises:
        FileSystemError: If the directory cannot be created due to permissions
                         or if the path exists but is not a directory.
    """
    if not dir_path:
        raise ValueError("Directory path cannot be empty.")
    try:
        if not os.path.exists(dir_path):
            os.makedirs(dir_path, exist_ok=True)
            logger.info(f"Created directory: {dir_path}")
        elif not os.path.isdir(dir_path):
            raise FileSystemError(f"Path exists but is not a directory: {dir_path}")
    except OSError as e:
        logger.error(f"Error creating or accessing directory {dir_path}: {e}", exc_info=True)
        raise FileSystemError(f"Could not create or access directory {dir_path}: {e}") from e


def remove_file_quietly(file_path: Optional[str]) -> None:
    """Deletes a temporary file, logging instead of raising on failure."""
    if file_path and os.path.exists(file_path):
        try:
            os.remove(file_path)
            logger.debug(f"Cleaned up temporary file: {file_path}")
        except OSError as e:
            logger.warning(f"Could not remove temporary file {file_path}: {e}")


def remove_dir_quietly(dir_path: Optional[str]) -> None:
    """Deletes a temporary directory tree, logging instead of raising on failure."""
    if dir_path and os.path.isdir(dir_path):
        try:
            shutil.rmtree(dir_path)
            logger.debug(f"Cleaned up temporary directory: {dir_path}")
        except OSError as e:
            logger.warning(f"Could not remove temporary directory {dir_path}: {e}")


def format_timestamp(milliseconds: int) -> str:
    """
    Formats milliseconds into SRT time format HH:MM:SS,mmm.

    Args:
        milliseconds: Time in milliseconds.

    Returns:
        Formatted time string.
    """
    if milliseconds < 0:
        milliseconds = 0  # Ensure non-negative time
    hrs = milliseconds // 3600000
    milliseconds %= 3600000
    mins = milliseconds // 60000
    milliseconds %= 60000
    secs = milliseconds // 1000
    milliseconds %= 1000
    return f"{hrs:02d}:{mins:02d}:{secs:02d},{milliseconds:03d}"


def parse_timestamp(value: str) -> int:
    """Parses ``HH:MM:SS,mmm`` (or with a dot) into milliseconds."""
    match = _TIMESTAMP_RE.match(value)
    if not match:
        raise ValueError(f"Invalid timestamp: {value!r}")
    hrs, mins, secs, frac = match.groups()
    millis = int(frac.ljust(3, "0"))
    return ((int(hrs) * 60 + int(mins)) * 60 + int(secs)) * 1000 + millis


def seconds_to_ms(seconds: float) -> int:
    return int(round(seconds * 1000))


def safe_filename(name: str) -> str:
    """Replaces characters that are not allowed in file names with '_'."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name).strip().strip(".")
    return cleaned or "clip"


class CancellationToken:
    """
    Cooperative cancellation flag shared by every layer of a job.

    ``wait`` doubles as an interruptible sleep: it returns early (True) as
    soon as cancellation is requested.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self, what: str = "Operation") -> None:
        if self.cancelled:
            raise OperationCancelled(f"{what} cancelled")

    def wait(self, timeout: float) -> bool:
        if self._parent is None:
            return self._event.wait(timeout)
        # Poll so that a cancelled parent is noticed promptly.
        remaining = timeout
        while remaining > 0:
            step = min(remaining, 0.1)
            if self._event.wait(step) or self._parent.cancelled:
                return True
            remaining -= step
        return self.cancelled


ProgressCallback = Callable[[float, str], None]


def null_progress(_percent: float, _message: str) -> None:
    """Default no-op progress callback."""
    pass
