# sceneforge/storage/scene_locks.py
from __future__ import annotations

import inspect
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from sceneforge.storage.rwlock import ReadWriteLock
from sceneforge.utils.periodic import PeriodicJob

log = logging.getLogger("sceneforge.locks")

T = TypeVar("T")

DEFAULT_IDLE_TIMEOUT_SEC = 30 * 60
DEFAULT_MAX_ENTRIES = 200
DEFAULT_SWEEP_INTERVAL_SEC = 5 * 60


def _require_sync(fn: Callable[..., Any]) -> None:
    if inspect.iscoroutinefunction(fn):
        raise TypeError(f"{fn!r} is a coroutine function; scene locks only guard synchronous callables")


def _checked(result: T) -> T:
    if inspect.iscoroutine(result):
        result.close()
        raise TypeError("callable returned a coroutine; scene locks only guard synchronous callables")
    return result


@dataclass
class LockEntry:
    key: str
    lock: ReadWriteLock
    last_used: float
    # handles currently holding or waiting on ``lock``
    refs: int = 0


class LockHandle:
    """A held scene lock. Releasing it (or leaving ``with``) gives it back.

    The handle pins its registry entry until released, so an idle sweep can
    never drop a lock somebody is using or waiting for.
    """

    def __init__(self, registry: "SceneLockRegistry", entry: LockEntry, exclusive: bool) -> None:
        self._registry = registry
        self._entry = entry
        self.exclusive = exclusive
        self._held = False
        self._released = False

    @property
    def key(self) -> str:
        return self._entry.key

    @property
    def lock(self) -> ReadWriteLock:
        return self._entry.lock

    @property
    def held(self) -> bool:
        return self._held

    def _acquire(self) -> None:
        try:
            if self.exclusive:
                self._entry.lock.acquire_write()
            else:
                self._entry.lock.acquire_read()
        except BaseException:
            self._released = True
            self._registry._unpin(self._entry)
            raise
        self._held = True

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            if self._held:
                self._held = False
                if self.exclusive:
                    self._entry.lock.release_write()
                else:
                    self._entry.lock.release_read()
        finally:
            self._registry._unpin(self._entry)

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        mode = "exclusive" if self.exclusive else "shared"
        return f"<LockHandle key={self.key!r} mode={mode} held={self._held}>"


class SceneLockRegistry:
    """Per-scene readers/writer locks, created lazily and swept when idle.

    One lock object exists per key while its entry is alive. Lookups of known
    keys only take the map's shared lock; creating a key takes it exclusively
    and re-checks before inserting. The map lock is never held while waiting
    on or running under a scene lock, so unrelated scenes do not block each
    other.

    Cleanup is capacity triggered: every ``sweep_interval`` seconds, and only
    while there are more than ``max_entries`` entries, unpinned entries idle
    for longer than ``idle_timeout`` are removed.
    """

    def __init__(
        self,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT_SEC,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
        autostart: bool = True,
    ) -> None:
        self.idle_timeout = float(idle_timeout)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._entries: Dict[str, LockEntry] = {}
        self._guard = ReadWriteLock()
        self._ref_lock = threading.Lock()
        self._sweeps = 0
        self._removed = 0
        self._sweeper = PeriodicJob(sweep_interval, self.sweep, name="scene-lock-sweeper")
        if autostart:
            self.start()

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "SceneLockRegistry":
        return cls(
            idle_timeout=settings.lock_idle_timeout_sec,
            max_entries=settings.lock_max_entries,
            sweep_interval=settings.lock_sweep_interval_sec,
            **kwargs,
        )

    # lifecycle
    def start(self) -> None:
        self._sweeper.start()

    def close(self) -> None:
        self._sweeper.stop()

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper.running

    def __enter__(self) -> "SceneLockRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # lookup
    def _pin(self, entry: LockEntry) -> None:
        with self._ref_lock:
            entry.refs += 1
            entry.last_used = self._clock()

    def _unpin(self, entry: LockEntry) -> None:
        with self._ref_lock:
            entry.refs -= 1
            entry.last_used = self._clock()

    def _lookup(self, key: str) -> LockEntry:
        with self._guard.read_locked():
            entry = self._entries.get(key)
            if entry is not None:
                self._pin(entry)
                return entry

        with self._guard.write_locked():
            entry = self._entries.get(key)
            if entry is None:
                entry = LockEntry(key=key, lock=ReadWriteLock(), last_used=self._clock())
                self._entries[key] = entry
                log.debug({"event": "locks.create", "key": key})
            self._pin(entry)
            return entry

    def acquire_exclusive(self, key: str) -> LockHandle:
        handle = LockHandle(self, self._lookup(key), exclusive=True)
        handle._acquire()
        return handle

    def acquire_shared(self, key: str) -> LockHandle:
        handle = LockHandle(self, self._lookup(key), exclusive=False)
        handle._acquire()
        return handle

    def execute_exclusive(self, key: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` while holding the exclusive lock for ``key``.

        ``fn`` must be synchronous: a coroutine would only run after the lock
        is released, so coroutine functions are rejected with ``TypeError``.
        """
        _require_sync(fn)
        with self.acquire_exclusive(key):
            return _checked(fn(*args, **kwargs))

    def execute_shared(self, key: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        _require_sync(fn)
        with self.acquire_shared(key):
            return _checked(fn(*args, **kwargs))

    # cleanup
    def sweep(self) -> int:
        """Run one capacity-triggered idle sweep; returns the number of removed entries."""
        removed = 0
        with self._guard.write_locked():
            total = len(self._entries)
            if total > self.max_entries:
                now = self._clock()
                with self._ref_lock:
                    stale = [
                        key
                        for key, entry in self._entries.items()
                        if entry.refs == 0 and now - entry.last_used > self.idle_timeout
                    ]
                for key in stale:
                    del self._entries[key]
                removed = len(stale)
            remaining = len(self._entries)
            self._sweeps += 1
            self._removed += removed

        event = {"event": "locks.sweep", "removed": removed, "remaining": remaining}
        if removed:
            log.info(event)
        else:
            log.debug(event)
        return removed

    def __len__(self) -> int:
        with self._guard.read_locked():
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._guard.read_locked():
            return key in self._entries

    def refs(self, key: str) -> Optional[int]:
        with self._guard.read_locked():
            entry = self._entries.get(key)
            if entry is None:
                return None
            with self._ref_lock:
                return entry.refs

    def stats(self) -> Dict[str, Any]:
        with self._guard.read_locked():
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "idle_timeout_sec": self.idle_timeout,
                "sweeps": self._sweeps,
                "removed": self._removed,
            }
