# sceneforge/utils/periodic.py
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

log = logging.getLogger("sceneforge.periodic")


class PeriodicJob:
    """Run ``fn`` every ``interval`` seconds on a daemon thread until stopped.

    Every ``start()`` gets its own stop event, so a thread that outlived a
    timed-out ``stop()`` still exits instead of ticking beside the new one.
    """

    def __init__(self, interval: float, fn: Callable[[], object], name: str = "periodic-job") -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = float(interval)
        self.name = name
        self._fn = fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.running and not self._stop.is_set():
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(self._stop,), name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        if thread is not None and not thread.is_alive():
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval):
            try:
                self._fn()
            except Exception:  # noqa: BLE001
                # keep the job alive; the next tick retries
                log.exception({"event": "periodic.error", "job": self.name})
