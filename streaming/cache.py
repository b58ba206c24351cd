"""
Local on-disk cache of remote video files.

Files are stored under CACHE_DIR as ``<sha256(server_id:remote_path)><ext>``.
An in-memory index tracks size, creation and last access per entry and is
rebuilt from the directory at startup. Downloads land in a hidden temp file
and are renamed into place, so a visible cache file is always complete.

At most one download per key runs at a time; concurrent requests for the same
file wait for it and then share the result. Eviction (oldest access first,
plus expiry by age) runs in the background after each download.

Deleting a cache file never interrupts a response already reading it: open
file handles keep the data alive after unlink.
"""

import asyncio
import hashlib
import logging
import os
import posixpath
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Set, Tuple

import aiofiles

from api.errors import CacheWriteError
from api.metrics import (
    CACHE_DOWNLOAD_DURATION_SECONDS,
    CACHE_EVICTIONS_TOTAL,
    CACHE_HITS_TOTAL,
    CACHE_MISSES_TOTAL,
    CACHE_SIZE_BYTES,
)
from config import (
    CACHE_DIR,
    CACHE_ENABLED,
    CACHE_MAX_AGE,
    CACHE_MAX_FILE_SIZE,
    CACHE_MAX_SIZE,
    SUPPORTED_VIDEO_EXTENSIONS,
)
from streaming.transport import RemoteExecutor

logger = logging.getLogger(__name__)

TEMP_PREFIX = ".part-"


@dataclass
class CacheEntry:
    key: str
    filename: str
    size: int
    created_at: float
    last_accessed: float
    remote_path: Optional[str] = None

    def age(self, now: float) -> float:
        return now - self.created_at


def cache_key(server_id: int, remote_path: str) -> str:
    """Collision-resistant key for a file on a given server."""
    return hashlib.sha256(f"{server_id}:{remote_path}".encode("utf-8")).hexdigest()


def cache_filename(key: str, remote_path: str) -> str:
    extension = posixpath.splitext(remote_path)[1].lower()
    if extension not in SUPPORTED_VIDEO_EXTENSIONS:
        extension = ""
    return f"{key}{extension}"


class LocalCacheManager:
    """Bounded cache of downloaded video files."""

    def __init__(
        self,
        executor: RemoteExecutor,
        cache_dir: Path = CACHE_DIR,
        max_size: int = CACHE_MAX_SIZE,
        max_file_size: int = CACHE_MAX_FILE_SIZE,
        max_age: int = CACHE_MAX_AGE,
        enabled: bool = CACHE_ENABLED,
    ):
        self.executor = executor
        self.cache_dir = Path(cache_dir)
        self.max_size = max_size
        self.max_file_size = max_file_size
        self.max_age = max_age
        self.enabled = enabled
        self._entries: Dict[str, CacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._background_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def rebuild_index(self) -> int:
        """
        Load entries for files already in the cache directory.

        Leftover temp files from interrupted downloads are removed. Blocking;
        call from a thread at startup.
        """
        self._entries.clear()
        if not self.cache_dir.exists():
            return 0

        for path in self.cache_dir.iterdir():
            if not path.is_file():
                continue
            if path.name.startswith(TEMP_PREFIX):
                logger.info(f"Removing incomplete cache download {path.name}")
                path.unlink(missing_ok=True)
                continue
            key = path.name.split(".", 1)[0]
            st = path.stat()
            self._entries[key] = CacheEntry(
                key=key,
                filename=path.name,
                size=st.st_size,
                created_at=st.st_mtime,
                last_accessed=max(st.st_atime, st.st_mtime),
            )

        self._update_size_gauge()
        logger.info(f"Cache index rebuilt: {len(self._entries)} file(s), {self.total_size} bytes")
        return len(self._entries)

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self._entries.values())

    def _update_size_gauge(self) -> None:
        CACHE_SIZE_BYTES.set(self.total_size)

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.age(time.time()) > self.max_age or not (self.cache_dir / entry.filename).exists():
            self._entries.pop(key, None)
            return None
        return entry

    def is_cacheable(self, size: int) -> bool:
        """Whether a file of this size should be served through the cache."""
        return self.enabled and 0 < size <= self.max_file_size

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def ensure(self, server_id: int, remote_path: str, expected_size: Optional[int] = None) -> Path:
        """
        Return the local path of a complete copy of remote_path.

        Downloads the file when it is not cached, expired, or its size no
        longer matches expected_size.

        Raises:
            RemoteTransportError: if the download failed on the remote side.
            CacheWriteError: if the file could not be written locally.
        """
        key = cache_key(server_id, remote_path)

        entry = self._lookup(key)
        if entry is not None and (expected_size is None or entry.size == expected_size):
            entry.last_accessed = time.time()
            CACHE_HITS_TOTAL.inc()
            return self.cache_dir / entry.filename

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                # Another request may have finished the download while we waited
                entry = self._lookup(key)
                if entry is not None and (expected_size is None or entry.size == expected_size):
                    entry.last_accessed = time.time()
                    CACHE_HITS_TOTAL.inc()
                    return self.cache_dir / entry.filename

                CACHE_MISSES_TOTAL.inc()
                entry = await self._download(server_id, remote_path, key)
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                self._locks.pop(key, None)

        self._schedule_eviction()
        return self.cache_dir / entry.filename

    async def _download(self, server_id: int, remote_path: str, key: str) -> CacheEntry:
        filename = cache_filename(key, remote_path)
        final_path = self.cache_dir / filename
        temp_path = self.cache_dir / f"{TEMP_PREFIX}{key}-{uuid.uuid4().hex}"

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheWriteError(details=str(e)) from e

        logger.info(f"Caching {remote_path} from server {server_id}")
        start = time.monotonic()
        try:
            size = await self.executor.download(server_id, remote_path, temp_path)
            os.replace(temp_path, final_path)
        except OSError as e:
            raise CacheWriteError(details=str(e)) from e
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

        elapsed = time.monotonic() - start
        CACHE_DOWNLOAD_DURATION_SECONDS.observe(elapsed)
        logger.info(f"Cached {remote_path} ({size} bytes) in {elapsed:.2f}s")

        now = time.time()
        entry = CacheEntry(
            key=key,
            filename=filename,
            size=size,
            created_at=now,
            last_accessed=now,
            remote_path=remote_path,
        )
        self._entries[key] = entry
        self._update_size_gauge()
        return entry

    async def open(self, server_id: int, remote_path: str, expected_size: Optional[int] = None) -> Tuple[object, int]:
        """
        Ensure the file is cached and open it for reading.

        Returns an aiofiles handle and the cached size. If the file is evicted
        between ensure() and open(), it is fetched once more.
        """
        for attempt in range(2):
            path = await self.ensure(server_id, remote_path, expected_size)
            try:
                handle = await aiofiles.open(path, "rb")
            except FileNotFoundError:
                self._entries.pop(cache_key(server_id, remote_path), None)
                logger.debug(f"Cached copy of {remote_path} vanished before open (attempt {attempt + 1})")
                continue
            size = os.fstat(handle.fileno()).st_size
            return handle, size
        raise CacheWriteError("Cached file disappeared before it could be served")

    # ------------------------------------------------------------------
    # Eviction and maintenance
    # ------------------------------------------------------------------

    def _schedule_eviction(self) -> None:
        task = asyncio.create_task(self.evict())
        self._background_tasks.add(task)
        task.add_done_callback(self._eviction_done)

    def _eviction_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Cache eviction failed: {task.exception()}")

    async def wait_idle(self) -> None:
        """Wait for scheduled eviction runs to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        path = self.cache_dir / entry.filename
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove cache file {entry.filename}: {e}")
            return False
        return True

    def _busy(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def evict(self) -> int:
        """
        Remove expired entries, then least recently accessed ones until the
        cache is within max_size. Returns the number of files removed.
        """
        removed = 0
        now = time.time()

        for key, entry in list(self._entries.items()):
            if entry.age(now) > self.max_age and not self._busy(key):
                if await self._remove(key):
                    removed += 1
                    CACHE_EVICTIONS_TOTAL.labels(reason="age").inc()

        total = self.total_size
        if total > self.max_size:
            for entry in sorted(self._entries.values(), key=lambda e: e.last_accessed):
                if total <= self.max_size:
                    break
                if self._busy(entry.key):
                    continue
                if await self._remove(entry.key):
                    total -= entry.size
                    removed += 1
                    CACHE_EVICTIONS_TOTAL.labels(reason="size").inc()

        if removed:
            logger.info(f"Evicted {removed} cached file(s), {self.total_size} bytes remain")
        self._update_size_gauge()
        return removed

    async def invalidate(self, server_id: int, remote_path: str) -> bool:
        """Drop the cached copy of a file, if any."""
        removed = await self._remove(cache_key(server_id, remote_path))
        if removed:
            self._update_size_gauge()
        return removed

    async def clear(self) -> int:
        """Remove every cached file not currently being downloaded."""
        removed = 0
        for key in list(self._entries):
            if self._busy(key):
                continue
            if await self._remove(key):
                removed += 1
        self._update_size_gauge()
        logger.info(f"Cache cleared: {removed} file(s) removed")
        return removed

    def status(self) -> dict:
        now = time.time()
        total_size = self.total_size
        files = [
            {
                "filename": entry.filename,
                "size": entry.size,
                "age_seconds": round(entry.age(now), 1),
                "last_accessed_seconds_ago": round(now - entry.last_accessed, 1),
            }
            for entry in sorted(self._entries.values(), key=lambda e: e.last_accessed, reverse=True)
        ]
        return {
            "enabled": self.enabled,
            "total_files": len(files),
            "total_size": total_size,
            "max_size": self.max_size,
            "usage_percentage": round(total_size / self.max_size * 100, 2) if self.max_size else 0.0,
            "files": files,
        }

    async def close(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        self._background_tasks.clear()
