"""mtime-validated file content cache with frequency-based eviction."""

from __future__ import annotations

import heapq
import itertools
import logging
import os
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class FileCacheEntry:
    """Cached content of one file.

    Attributes:
        path: Absolute path of the file.
        content: Decoded file content.
        mtime_ns: Modification time observed when the content was read.
        size: File size observed when the content was read.
        checked_at: Clock reading of the last read from disk.
        last_access: Clock reading of the last lookup.
        access_count: Number of lookups served, including the initial read.
    """

    path: str
    content: str
    mtime_ns: int
    size: int
    checked_at: float
    last_access: float
    access_count: int = 1

    @property
    def validator(self) -> tuple[int, int]:
        return (self.mtime_ns, self.size)


@dataclass
class FileCacheStats:
    hits: int = 0
    misses: int = 0
    reloads: int = 0
    evictions: int = 0
    disk_reads: int = 0


class FileCache:
    """Caches file contents for stages that read the same files repeatedly.

    Every lookup stats the file. Cached content is returned only if the
    file's (mtime, size) still matches and the entry is younger than
    ``ttl``; otherwise the file is read again. When the cache is full the
    entry with the fewest accesses is evicted, the least recently used one
    among ties.

    Example:
        cache = FileCache(ttl=5.0, max_entries=200)
        text = cache.get("src/app.py")
    """

    def __init__(
        self,
        ttl: float = 5.0,
        max_entries: int = 100,
        encoding: str = "utf-8",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            ttl: Seconds a cached read stays trusted before a forced re-read.
            max_entries: Capacity before eviction kicks in.
            encoding: Text encoding used to decode files.
            clock: Monotonic time source in seconds.
        """
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl = ttl
        self._max_entries = max_entries
        self._encoding = encoding
        self._clock = clock
        self._entries: dict[str, FileCacheEntry] = {}
        # Lazily invalidated: stale heap items are skipped when popped.
        self._heap: list[tuple[int, float, int, str]] = []
        self._sequence = itertools.count()
        self._lock = threading.RLock()
        self.stats = FileCacheStats()

    def get(self, path: str | os.PathLike[str]) -> str | None:
        """Return fresh content of the file, or None if missing or unreadable."""
        key = self._key(path)
        with self._lock:
            try:
                st = os.stat(key)
            except OSError:
                self._drop(key)
                self.stats.misses += 1
                return None

            now = self._clock()
            entry = self._entries.get(key)
            if (
                entry is not None
                and entry.validator == (st.st_mtime_ns, st.st_size)
                and now - entry.checked_at < self._ttl
            ):
                self.stats.hits += 1
                self._touch(entry, now)
                return entry.content

            try:
                content = self._read_file(key)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Failed to read '{key}': {e}")
                self._drop(key)
                self.stats.misses += 1
                return None

            if entry is not None:
                self.stats.reloads += 1
                entry.content = content
                entry.mtime_ns = st.st_mtime_ns
                entry.size = st.st_size
                entry.checked_at = now
                self._touch(entry, now)
                logger.debug(f"Reloaded '{key}'")
                return content

            self.stats.misses += 1
            if len(self._entries) >= self._max_entries:
                self._evict_one()
            entry = FileCacheEntry(
                path=key,
                content=content,
                mtime_ns=st.st_mtime_ns,
                size=st.st_size,
                checked_at=now,
                last_access=now,
            )
            self._entries[key] = entry
            self._push(entry)
            return content

    def load_multiple(self, paths: Iterable[str | os.PathLike[str]]) -> dict[str, str]:
        """Read several files with the same freshness rules as ``get``.

        Returns:
            Mapping of each given path (as passed, stringified) to its content.
            Missing or unreadable files are left out.
        """
        results: dict[str, str] = {}
        for path in paths:
            content = self.get(path)
            if content is not None:
                results[str(path)] = content
        return results

    def invalidate(self, path: str | os.PathLike[str]) -> bool:
        """Drop the cached entry for path. Returns whether one existed."""
        with self._lock:
            return self._drop(self._key(path))

    def cleanup(self) -> int:
        """Drop every entry older than ttl. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._entries.items()
                if now - entry.checked_at >= self._ttl
            ]
            for key in expired:
                del self._entries[key]
            self._compact()
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._heap.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, os.PathLike)):
            return False
        with self._lock:
            return self._key(path) in self._entries

    def get_stats(self) -> dict[str, int]:
        """Entry counts by freshness plus lookup counters."""
        with self._lock:
            now = self._clock()
            expired = sum(
                1 for entry in self._entries.values()
                if now - entry.checked_at >= self._ttl
            )
            return {
                "total": len(self._entries),
                "valid": len(self._entries) - expired,
                "expired": expired,
                "hits": self.stats.hits,
                "misses": self.stats.misses,
                "reloads": self.stats.reloads,
                "evictions": self.stats.evictions,
                "disk_reads": self.stats.disk_reads,
            }

    def _read_file(self, path: str) -> str:
        self.stats.disk_reads += 1
        return Path(path).read_text(encoding=self._encoding)

    @staticmethod
    def _key(path: str | os.PathLike[str]) -> str:
        return os.path.abspath(os.fspath(path))

    def _touch(self, entry: FileCacheEntry, now: float) -> None:
        entry.access_count += 1
        entry.last_access = now
        self._push(entry)

    def _push(self, entry: FileCacheEntry) -> None:
        heapq.heappush(
            self._heap,
            (entry.access_count, entry.last_access, next(self._sequence), entry.path),
        )
        if len(self._heap) > 4 * self._max_entries:
            self._compact()

    def _compact(self) -> None:
        """Rebuild the heap from live entries, discarding stale items."""
        self._heap = [
            (entry.access_count, entry.last_access, next(self._sequence), entry.path)
            for entry in self._entries.values()
        ]
        heapq.heapify(self._heap)

    def _evict_one(self) -> None:
        while self._heap:
            access_count, last_access, _, key = heapq.heappop(self._heap)
            entry = self._entries.get(key)
            if (
                entry is None
                or entry.access_count != access_count
                or entry.last_access != last_access
            ):
                continue
            del self._entries[key]
            self.stats.evictions += 1
            logger.debug(f"Evicted '{key}' (accesses={access_count})")
            return

    def _drop(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None
