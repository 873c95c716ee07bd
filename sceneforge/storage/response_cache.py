# sceneforge/storage/response_cache.py
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from sceneforge.storage.rwlock import ReadWriteLock

log = logging.getLogger("sceneforge.cache")

DEFAULT_TTL_SEC = 30 * 60
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_EVICT_BATCH = 100


@dataclass
class CacheEntry:
    payload: bytes
    created_at: float


class ResponseCache:
    """In-memory key -> bytes store with lazy TTL expiry and batch eviction.

    ``get`` treats entries older than ``ttl`` as misses but leaves them in
    place; they disappear when overwritten or when a ``put`` pushes the map
    over ``max_entries`` and the ``evict_batch`` oldest entries are dropped.
    Memory is only bounded at those eviction points.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SEC,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        evict_batch: int = DEFAULT_EVICT_BATCH,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if evict_batch < 1:
            raise ValueError("evict_batch must be >= 1")
        self.ttl = float(ttl)
        self.max_entries = int(max_entries)
        self.evict_batch = int(evict_batch)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._guard = ReadWriteLock()
        # counters only; never consulted for cache decisions
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @classmethod
    def from_settings(cls, settings: Any) -> "ResponseCache":
        return cls(
            ttl=settings.cache_ttl_sec,
            max_entries=settings.cache_max_entries,
            evict_batch=settings.cache_evict_batch,
        )

    def get(self, key: str) -> Tuple[Optional[bytes], bool]:
        with self._guard.read_locked():
            entry = self._entries.get(key)
            fresh = entry is not None and self._clock() - entry.created_at <= self.ttl
        with self._stats_lock:
            if fresh:
                self._hits += 1
            else:
                self._misses += 1
        if not fresh:
            return None, False
        return entry.payload, True  # type: ignore[union-attr]

    def put(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError(f"cache payload must be bytes, got {type(value)!r}")
        payload = bytes(value)
        with self._guard.write_locked():
            self._entries[key] = CacheEntry(payload=payload, created_at=self._clock())
            removed = 0
            if len(self._entries) > self.max_entries:
                removed = self._evict_oldest(self.evict_batch)
        if removed:
            with self._stats_lock:
                self._evictions += removed
            log.info({"event": "cache.evict", "removed": removed, "remaining": len(self)})

    def _evict_oldest(self, count: int) -> int:
        # caller holds the write lock
        oldest = sorted(self._entries.items(), key=lambda kv: kv[1].created_at)[:count]
        for key, _ in oldest:
            del self._entries[key]
        return len(oldest)

    # JSON helpers: the cache itself only ever stores bytes
    def get_json(self, key: str) -> Tuple[Any, bool]:
        payload, found = self.get(key)
        if not found:
            return None, False
        try:
            return json.loads(payload), True  # type: ignore[arg-type]
        except ValueError:
            log.warning({"event": "cache.corrupt", "cache_key_prefix": key[:8]})
            return None, False

    def put_json(self, key: str, value: Any) -> None:
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        self.put(key, json.dumps(value, ensure_ascii=False).encode("utf-8"))

    def clear(self) -> None:
        with self._guard.write_locked():
            self._entries.clear()

    def __len__(self) -> int:
        with self._guard.read_locked():
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        # physical presence, regardless of age
        with self._guard.read_locked():
            return key in self._entries

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            hits, misses, evictions = self._hits, self._misses, self._evictions
        return {
            "entries": len(self),
            "max_entries": self.max_entries,
            "ttl_sec": self.ttl,
            "hits": hits,
            "misses": misses,
            "evictions": evictions,
        }
