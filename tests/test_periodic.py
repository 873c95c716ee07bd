# tests/test_periodic.py
from __future__ import annotations

import threading

import pytest

from sceneforge.utils.periodic import PeriodicJob


def test_job_ticks_until_stopped() -> None:
    ticks = threading.Semaphore(0)
    job = PeriodicJob(0.01, ticks.release, name="test-job")
    job.start()
    try:
        assert ticks.acquire(timeout=2)
        assert ticks.acquire(timeout=2)
    finally:
        job.stop(timeout=2)
    assert not job.running


def test_failing_tick_keeps_job_alive() -> None:
    calls = []
    second = threading.Event()

    def flaky() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first tick fails")
        second.set()

    job = PeriodicJob(0.01, flaky)
    job.start()
    try:
        assert second.wait(2)
    finally:
        job.stop(timeout=2)


def test_invalid_interval() -> None:
    with pytest.raises(ValueError):
        PeriodicJob(0, lambda: None)


def test_restart_after_timed_out_stop_leaves_one_ticker() -> None:
    gate = threading.Event()
    entered = threading.Event()
    seen = []

    def slow_tick() -> None:
        seen.append(threading.current_thread())
        entered.set()
        gate.wait(2)

    job = PeriodicJob(0.01, slow_tick, name="slow-job")
    job.start()
    try:
        assert entered.wait(2)
        old = seen[0]

        job.stop(timeout=0.05)
        # the old thread is stuck in its tick, so the join timed out
        assert job.running

        job.start()
        gate.set()

        old.join(2)
        assert not old.is_alive()
        assert job.running
    finally:
        gate.set()
        job.stop(timeout=2)
    assert not job.running
