"""Logging configuration for the ChunkSub entry points."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional

from .exceptions import FileSystemError
from .utils import ensure_dir_exists

DEFAULT_LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(name)s:%(lineno)d] - %(message)s'
DEFAULT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Third-party loggers that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3")


def _reset_root(root: logging.Logger) -> None:
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


def _rotating_file_handler(log_dir: str, log_file: str, max_bytes: int, backup_count: int) -> RotatingFileHandler:
    ensure_dir_exists(log_dir)
    return RotatingFileHandler(
        os.path.join(log_dir, log_file),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8',
    )


def setup_logging(
    log_level: int = logging.INFO,
    log_dir: str = "logs",
    log_file: str = "chunksub.log",
    log_format: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    console: bool = True,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> Optional[str]:
    """
    Configures the root logger for a command-line run.

    Library modules only call ``logging.getLogger(__name__)``; handlers are
    installed here, by the scripts. Calling this again replaces the previous
    handlers, which the scripts do once the config file names the real log
    location.

    Args:
        log_level: The minimum logging level (e.g., logging.INFO, logging.DEBUG).
        log_dir: The directory to store log files.
        log_file: The name of the log file.
        log_format: The format string for log messages.
        date_format: The format string for timestamps in logs.
        max_bytes: Maximum size of a log file before rotation.
        backup_count: Number of backup log files to keep.
        console: Also log to stdout. The batch script turns this off while
                 its progress bar is drawn.
        quiet_loggers: Loggers capped at WARNING.

    Returns:
        Path of the log file, or None if file logging could not be set up.
    """
    root = logging.getLogger()
    _reset_root(root)
    root.setLevel(log_level)
    formatter = logging.Formatter(log_format, datefmt=date_format)

    if console:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        root.addHandler(stream_handler)

    log_path = None
    try:
        file_handler = _rotating_file_handler(log_dir, log_file, max_bytes, backup_count)
    except (FileSystemError, ValueError, OSError) as e:
        # Falls back to whatever console handler is installed
        root.error(f"Failed to set up file logging handler at {log_dir}/{log_file}: {e}")
    else:
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        log_path = file_handler.baseFilename
        root.info(f"Logging initialized. Log file: {log_path}")

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_path
