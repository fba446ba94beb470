"""Namespaced, TTL-scoped key/value store for sharing stage outputs."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stagecore.context.sanitizer import DataSanitizer

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = ":"


@dataclass
class ContextEntry:
    """A stored value plus the bookkeeping needed for expiry and provenance.

    Attributes:
        key: Full key, e.g. ``"task:42"``.
        value: Opaque payload.
        created_at: Clock reading when the entry was written.
        ttl: Lifetime in seconds, or None for entries that never expire.
        source: Name of the agent that produced the value.
    """

    key: str
    value: Any
    created_at: float
    ttl: float | None
    source: str

    @property
    def namespace(self) -> str:
        return split_key(self.key)[0]

    @property
    def expires_at(self) -> float | None:
        if self.ttl is None:
            return None
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        """Check whether the entry is past its lifetime at ``now``."""
        return self.ttl is not None and now - self.created_at >= self.ttl


def split_key(key: str) -> tuple[str, str]:
    """Split a key into (namespace, remainder) at the first separator.

    Keys without a separator have an empty namespace.
    """
    namespace, sep, remainder = key.partition(NAMESPACE_SEPARATOR)
    if not sep:
        return "", key
    return namespace, remainder


class ContextStore:
    """Shared store used to pass results between concurrent and sequential stages.

    Entries expire lazily on read and are reclaimed in bulk by ``cleanup()``.
    Writers never merge: the last ``set`` for a key wins. All operations take
    an internal lock, so the store is safe to share between threads as well
    as between coroutines.

    Example:
        store = ContextStore()
        store.set("task:1", {"status": "success"}, "implementer", ttl=60)
        store.get_namespace("task")  # {"1": {"status": "success"}}
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sanitizer: DataSanitizer | None = None,
        default_ttl: float | None = None,
    ):
        """Initialize the store.

        Args:
            clock: Monotonic time source in seconds.
            sanitizer: When set, values are redacted before being stored.
            default_ttl: Lifetime applied when ``set`` is called without one.
        """
        self._clock = clock
        self._sanitizer = sanitizer
        self._default_ttl = default_ttl
        self._entries: dict[str, ContextEntry] = {}
        self._lock = threading.RLock()

    def set(self, key: str, value: Any, source: str, ttl: float | None = None) -> None:
        """Insert or overwrite an entry.

        Args:
            key: Entry key, conventionally ``"<namespace>:<id>"``.
            value: Payload to store.
            source: Agent producing the value.
            ttl: Lifetime in seconds; falls back to the store default.
        """
        if ttl is None:
            ttl = self._default_ttl
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be > 0")

        value = self._sanitize(key, value)
        with self._lock:
            self._entries[key] = ContextEntry(
                key=key,
                value=value,
                created_at=self._clock(),
                ttl=ttl,
                source=source,
            )
        logger.debug(f"Stored context '{key}' from {source}")

    def get(self, key: str) -> Any | None:
        """Return the value for key, or None if absent or expired."""
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def get_entry(self, key: str) -> ContextEntry | None:
        """Return the live entry for key, deleting it if it has expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                logger.debug(f"Context '{key}' expired")
                return None
            return entry

    def has(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def update(self, key: str, value: Any, source: str) -> bool:
        """Replace the value of an existing, unexpired entry.

        The entry keeps its ttl; its lifetime restarts from now as with any
        overwrite.

        Returns:
            True if the entry existed and was updated, False otherwise.
        """
        value = self._sanitize(key, value)
        with self._lock:
            entry = self.get_entry(key)
            if entry is None:
                return False
            self._entries[key] = ContextEntry(
                key=key,
                value=value,
                created_at=self._clock(),
                ttl=entry.ttl,
                source=source,
            )
        logger.debug(f"Updated context '{key}' from {source}")
        return True

    def delete(self, key: str) -> bool:
        """Remove an entry regardless of expiry. Returns whether it existed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def get_namespace(self, namespace: str) -> dict[str, Any]:
        """Return live entries under ``namespace``, keyed by the key remainder."""
        prefix = namespace + NAMESPACE_SEPARATOR
        with self._lock:
            now = self._clock()
            return {
                key[len(prefix):]: entry.value
                for key, entry in self._entries.items()
                if key.startswith(prefix) and not entry.is_expired(now)
            }

    def get_by_source(self, source: str) -> dict[str, Any]:
        """Return live entries produced by ``source``, keyed by full key."""
        with self._lock:
            now = self._clock()
            return {
                key: entry.value
                for key, entry in self._entries.items()
                if entry.source == source and not entry.is_expired(now)
            }

    def clear_namespace(self, namespace: str) -> int:
        """Delete every entry under ``namespace``, expired or not.

        Returns:
            Number of entries removed.
        """
        prefix = namespace + NAMESPACE_SEPARATOR
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug(f"Cleared {len(doomed)} context entries in namespace '{namespace}'")
        return len(doomed)

    def cleanup(self) -> int:
        """Delete every entry whose ttl has elapsed.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired context entries")
        return len(expired)

    def size(self) -> int:
        """Number of stored entries, including expired ones not yet swept."""
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def keys(self) -> list[str]:
        """Keys of live entries."""
        with self._lock:
            now = self._clock()
            return [key for key, entry in self._entries.items() if not entry.is_expired(now)]

    def snapshot(self) -> dict[str, Any]:
        """Copy of all live entries as key -> value."""
        with self._lock:
            now = self._clock()
            return {
                key: entry.value
                for key, entry in self._entries.items()
                if not entry.is_expired(now)
            }

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            now = self._clock()
            expired = sum(1 for entry in self._entries.values() if entry.is_expired(now))
            return {
                "total": len(self._entries),
                "valid": len(self._entries) - expired,
                "expired": expired,
            }

    def _sanitize(self, key: str, value: Any) -> Any:
        if self._sanitizer is None:
            return value
        result = self._sanitizer.sanitize(value)
        if result.redacted:
            logger.info(f"Redacted {len(result.redacted)} item(s) before storing '{key}'")
        return result.sanitized
