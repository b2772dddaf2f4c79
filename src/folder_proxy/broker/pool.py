"""Thread pool with a counting admission gate."""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import TypeVar

T = TypeVar("T")


class ExecutionPool:
    """Caps how many submitted jobs run at once.

    A slot is taken before a job is handed to the executor and given back when
    the job finishes, whether it returned or raised.
    """

    def __init__(self, max_concurrent: int, *, thread_name_prefix: str = "folder-proxy") -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1.")
        self.max_concurrent = max_concurrent
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent,
            thread_name_prefix=thread_name_prefix,
        )
        self._lock = threading.Lock()
        self._in_flight: set[Future[object]] = set()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def submit(
        self,
        fn: Callable[..., T],
        *args: object,
        admission_timeout: float | None = None,
    ) -> Future[T] | None:
        """Run ``fn(*args)`` once a slot is free.

        Returns None when no slot frees up within ``admission_timeout``.
        """

        acquired = (
            self._slots.acquire()
            if admission_timeout is None
            else self._slots.acquire(timeout=admission_timeout)
        )
        if not acquired:
            return None
        try:
            future = self._executor.submit(fn, *args)
        except BaseException:
            self._slots.release()
            raise
        with self._lock:
            self._in_flight.add(future)
        future.add_done_callback(self._on_done)
        return future

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every admitted job finished; False on timeout."""

        with self._lock:
            pending = list(self._in_flight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait_for_jobs: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_jobs)

    def _on_done(self, future: Future[object]) -> None:
        with self._lock:
            self._in_flight.discard(future)
        self._slots.release()
