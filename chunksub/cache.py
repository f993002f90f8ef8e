"""Content-addressed cache of finished subtitle text."""

import glob
import hashlib
import json
import logging
import os
import tempfile
import time
from typing import Callable, Optional

from .exceptions import CacheIOError, FileSystemError
from .models import CacheEntry, ClipRange
from .utils import ensure_dir_exists

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600


class ResultCache:
    """
    Stores one JSON file per key under ``cache_dir``:
    ``{"content": ..., "createdAt": ..., "expiresAt": ...}``.

    Every failure to read or write is logged and reported as a miss, so the
    pipeline behaves the same with a broken or missing cache directory.
    Entries are replaced whole (write to a temp file, then ``os.replace``),
    so concurrent readers never observe a half-written entry.
    """

    def __init__(self, cache_dir: str, clock: Callable[[], float] = time.time):
        self.cache_dir = cache_dir
        self._clock = clock
        try:
            ensure_dir_exists(cache_dir)
        except (FileSystemError, ValueError) as e:
            logger.warning(f"Cache directory {cache_dir} is unusable, caching will miss: {e}")

    @staticmethod
    def make_key(
        source_path: str,
        backend_id: str,
        model: Optional[str] = None,
        clip: Optional[ClipRange] = None,
    ) -> str:
        """
        Derives a stable key from the source file identity and the backend identity.

        Any change to the file size, modification time, backend or model
        produces a different key.

        Raises:
            CacheIOError: If the source file cannot be stat'ed.
        """
        try:
            stat = os.stat(source_path)
        except OSError as e:
            raise CacheIOError(f"Cannot stat {source_path} for cache key: {e}") from e
        parts = [
            os.path.abspath(source_path),
            str(stat.st_size),
            str(stat.st_mtime_ns),
            backend_id,
            model or "",
        ]
        if clip is not None:
            parts.append(f"{clip.start_ms}-{clip.end_ms}")
        key_data = "|".join(parts)
        return hashlib.sha256(key_data.encode("utf-8")).hexdigest()

    def _path_for(self, key: str) -> str:
        return os.path.join(self.cache_dir, f"{key}.json")

    def _read_entry(self, path: str) -> CacheEntry:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return CacheEntry(
                content=data["content"],
                created_at=float(data["createdAt"]),
                expires_at=float(data["expiresAt"]),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CacheIOError(f"Unreadable cache entry {path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        """Returns the cached content, or None on a miss, an expired entry, or any I/O problem."""
        path = self._path_for(key)
        if not os.path.exists(path):
            return None
        try:
            entry = self._read_entry(path)
        except CacheIOError as e:
            logger.warning(f"Ignoring cache entry: {e}")
            return None
        if entry.is_expired(self._clock()):
            logger.debug(f"Cache entry {key[:12]} expired; deleting it.")
            self._delete(path)
            return None
        logger.info(f"Cache hit for key {key[:12]}")
        return entry.content

    def put(self, key: str, content: str, ttl: float = DEFAULT_TTL_SECONDS) -> bool:
        """Stores content under key. Returns False (after logging) if it could not be written."""
        now = self._clock()
        payload = {"content": content, "createdAt": now, "expiresAt": now + ttl}
        tmp_path = None
        try:
            ensure_dir_exists(self.cache_dir)
            fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=self.cache_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
            os.replace(tmp_path, self._path_for(key))
            tmp_path = None
            logger.debug(f"Cached result under key {key[:12]} (ttl {ttl:.0f}s)")
            return True
        except (OSError, FileSystemError, ValueError, TypeError) as e:
            logger.warning(f"Could not write cache entry {key[:12]}: {e}")
            return False
        finally:
            if tmp_path is not None:
                self._delete(tmp_path)

    def sweep_expired(self) -> int:
        """Deletes expired and unreadable entries. Returns the number of files removed."""
        removed = 0
        now = self._clock()
        for path in glob.glob(os.path.join(self.cache_dir, "*.json")):
            try:
                entry = self._read_entry(path)
                stale = entry.is_expired(now)
            except CacheIOError as e:
                logger.debug(f"Sweeping corrupt cache entry: {e}")
                stale = True
            if stale and self._delete(path):
                removed += 1
        if removed:
            logger.info(f"Removed {removed} expired cache entr{'y' if removed == 1 else 'ies'}")
        return removed

    def clear(self) -> int:
        """Deletes every entry. Returns the number of files removed."""
        removed = 0
        for path in glob.glob(os.path.join(self.cache_dir, "*.json")):
            if self._delete(path):
                removed += 1
        logger.info(f"Cleared {removed} cache entries from {self.cache_dir}")
        return removed

    @staticmethod
    def _delete(path: str) -> bool:
        try:
            os.remove(path)
            return True
        except OSError as e:
            logger.debug(f"Could not delete cache file {path}: {e}")
            return False
