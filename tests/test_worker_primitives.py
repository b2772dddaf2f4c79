"""Tests for the worker's building blocks: recent set, ticker, pool."""

from __future__ import annotations

import threading
import time

import allure
import pytest

from folder_proxy.broker.pool import ExecutionPool
from folder_proxy.broker.recent import RecentSet
from folder_proxy.broker.ticker import Ticker

pytestmark = [
    allure.epic("Folder Broker"),
    allure.feature("Worker Primitives"),
]


class TestRecentSet:
    def test_unseen_keeps_input_order(self):
        recent = RecentSet(10)
        recent.add("b")

        assert recent.unseen(["a", "b", "c"]) == ["a", "c"]

    def test_oldest_entries_are_evicted_past_capacity(self):
        recent = RecentSet(3)
        for item in ["a", "b", "c", "d"]:
            recent.add(item)

        assert len(recent) == 3
        assert "a" not in recent
        assert "d" in recent

    def test_re_adding_does_not_refresh_position(self):
        recent = RecentSet(2)
        recent.add("a")
        recent.add("b")
        recent.add("a")
        recent.add("c")

        assert "a" not in recent
        assert "b" in recent

    def test_discard_forgets_entry(self):
        recent = RecentSet(2)
        recent.add("a")

        recent.discard("a")
        recent.discard("missing")

        assert recent.unseen(["a"]) == ["a"]

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            RecentSet(0)


class TestTicker:
    def test_iteration_ends_after_stop(self):
        ticker = Ticker(0.001)
        ticks: list[int] = []

        for tick in ticker:
            ticks.append(tick)
            if tick == 3:
                ticker.stop()

        assert ticks == [0, 1, 2, 3]

    def test_stop_wakes_a_sleeping_ticker(self):
        ticker = Ticker(60)
        timer = threading.Timer(0.05, ticker.stop)
        timer.start()
        started = time.monotonic()

        ticks = list(ticker)

        timer.join()
        assert ticks == [0]
        assert time.monotonic() - started < 5

    def test_sleep_reports_stop(self):
        ticker = Ticker(1)
        assert ticker.sleep(0) is True

        ticker.stop()

        assert ticker.sleep(10) is False
        assert ticker.stopped


class TestExecutionPool:
    def test_in_flight_never_exceeds_limit(self):
        pool = ExecutionPool(3)
        running = 0
        peak = 0
        counter_lock = threading.Lock()

        def _job() -> None:
            nonlocal running, peak
            with counter_lock:
                running += 1
                peak = max(peak, running)
            time.sleep(0.02)
            with counter_lock:
                running -= 1

        futures = [pool.submit(_job) for _ in range(12)]
        assert pool.wait_idle(timeout=10)
        pool.shutdown()

        assert all(future is not None for future in futures)
        assert peak <= 3
        assert pool.in_flight == 0

    def test_saturated_pool_rejects_after_admission_timeout(self):
        pool = ExecutionPool(1)
        release = threading.Event()
        first = pool.submit(release.wait, 5)

        second = pool.submit(lambda: None, admission_timeout=0.05)

        release.set()
        assert first is not None
        assert second is None
        assert pool.wait_idle(timeout=5)
        pool.shutdown()

    def test_failing_job_gives_its_slot_back(self):
        pool = ExecutionPool(1)

        def _boom() -> None:
            raise RuntimeError("boom")

        failed = pool.submit(_boom)
        assert failed is not None
        with pytest.raises(RuntimeError, match="boom"):
            failed.result(timeout=5)

        follow_up = pool.submit(lambda: "ok", admission_timeout=5)
        assert follow_up is not None
        assert follow_up.result(timeout=5) == "ok"
        pool.shutdown()
