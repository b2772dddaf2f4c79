"""Back-side discovery loop that claims request records and executes them."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from folder_proxy.broker.errors import RecordFormatError, StoreError, TargetTransportError
from folder_proxy.broker.locking import FileLock
from folder_proxy.broker.models import (
    RequestRecord,
    RequestStatus,
    ResponseRecord,
    error_response,
)
from folder_proxy.broker.pool import ExecutionPool
from folder_proxy.broker.recent import RecentSet
from folder_proxy.broker.store import RecordStore
from folder_proxy.broker.sweeper import OrphanSweeper
from folder_proxy.broker.target import TargetCaller
from folder_proxy.broker.ticker import Ticker


class ProcessOutcome(str, Enum):
    """Result of one claim attempt on one request record."""

    COMPLETED = "completed"
    FAILED = "failed"
    MALFORMED = "malformed"
    LOCKED = "locked"
    NOT_PENDING = "not_pending"
    GONE = "gone"
    STORE_ERROR = "store_error"


# Outcomes after which the record should be looked at again on a later tick.
_RETRY_LATER = frozenset({ProcessOutcome.LOCKED, ProcessOutcome.STORE_ERROR})


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    discovered: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    malformed: int = 0
    skipped: int = 0
    store_errors: int = 0
    idle_polls: int = 0

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed + self.malformed

    def merge(self, other: WorkerRunSummary) -> None:
        self.discovered += other.discovered
        self.dispatched += other.dispatched
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.malformed += other.malformed
        self.skipped += other.skipped
        self.store_errors += other.store_errors
        self.idle_polls += other.idle_polls

    def count(self, outcome: ProcessOutcome) -> None:
        if outcome is ProcessOutcome.COMPLETED:
            self.succeeded += 1
        elif outcome is ProcessOutcome.FAILED:
            self.failed += 1
        elif outcome is ProcessOutcome.MALFORMED:
            self.malformed += 1
        elif outcome is ProcessOutcome.STORE_ERROR:
            self.store_errors += 1
        else:
            self.skipped += 1


class BrokerWorker:
    """Polls the request namespace and executes new requests in a bounded pool.

    Each tick lists request records, drops names dispatched recently, and
    hands the rest to the pool in batches.  A pool job claims its record by
    creating the record's lock marker, re-checks that the record is still
    pending, calls the target, writes the response and then its completion
    marker, records the terminal status and finally releases the lock.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: RecordStore,
        target: TargetCaller,
        max_concurrent: int = 40,
        poll_interval_seconds: float = 0.05,
        batch_size: int = 20,
        seen_capacity: int = 1000,
        sweeper: OrphanSweeper | None = None,
        sweep_interval_seconds: float = 60.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1.")
        self.store = store
        self.target = target
        self.pool = ExecutionPool(max_concurrent, thread_name_prefix="folder-proxy-exec")
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self.seen = RecentSet(seen_capacity)
        self.sweeper = sweeper
        self.sweep_interval_seconds = sweep_interval_seconds
        self.log = logger or logging.getLogger(__name__)
        self._ticker = Ticker(poll_interval_seconds)
        self._seen_lock = threading.Lock()
        self._totals_lock = threading.Lock()
        self._totals = WorkerRunSummary()
        self._last_sweep_at: float | None = None
        self._stop_signal_name: str | None = None

    # -- loop ------------------------------------------------------------------

    def tick(self) -> tuple[WorkerRunSummary, list[Future[ProcessOutcome]]]:
        """Discover new request records and dispatch them without waiting."""

        summary = WorkerRunSummary()
        futures: list[Future[ProcessOutcome]] = []
        self._maybe_sweep()
        if not self.store.is_available():
            self.log.warning("Store directories not accessible: %s", self.store.root)
            summary.idle_polls = 1
            return summary, futures
        try:
            record_ids = self.store.list_request_ids()
        except StoreError as error:
            self.log.warning("Could not list requests: %s", error)
            summary.idle_polls = 1
            return summary, futures

        with self._seen_lock:
            candidates = self.seen.unseen(record_ids)
            # One batch per tick; the rest stay unseen until a later tick.
            batch = candidates[: self.batch_size]
            for record_id in batch:
                self.seen.add(record_id)
        if not candidates:
            summary.idle_polls = 1
            return summary, futures

        summary.discovered = len(batch)
        self.log.info(
            "Found new requests: count=%d batch=%d",
            len(candidates),
            len(batch),
        )
        for offset, record_id in enumerate(batch):
            if self._ticker.stopped:
                self._forget(batch[offset:])
                break
            future = self.pool.submit(
                self._process_and_count,
                record_id,
                admission_timeout=self.poll_interval_seconds,
            )
            if future is None:
                # Pool saturated; leave the rest for a later tick.
                self._forget(batch[offset:])
                break
            summary.dispatched += 1
            futures.append(future)
        return summary, futures

    def run_once(self, *, timeout: float | None = None) -> WorkerRunSummary:
        """Run one tick and wait for the requests it dispatched."""

        summary, futures = self.tick()
        for future in futures:
            summary.count(future.result(timeout=timeout))
        return summary

    def run_loop(self, *, max_ticks: int | None = None) -> WorkerRunSummary:
        """Tick until stopped (signal or ``request_stop``) or ``max_ticks``."""

        aggregate = WorkerRunSummary()
        with self._signal_handlers():
            for tick_no in self._ticker:
                if max_ticks is not None and tick_no >= max_ticks:
                    break
                summary, _ = self.tick()
                aggregate.merge(summary)
            self.pool.wait_idle()
        with self._totals_lock:
            aggregate.succeeded = self._totals.succeeded
            aggregate.failed = self._totals.failed
            aggregate.malformed = self._totals.malformed
            aggregate.skipped = self._totals.skipped
            aggregate.store_errors = self._totals.store_errors
        return aggregate

    def request_stop(self, signal_name: str | None = None) -> None:
        if signal_name is not None:
            self._stop_signal_name = signal_name
            self.log.info("Stop requested by %s", signal_name)
        self._ticker.stop()

    def close(self) -> None:
        self.request_stop()
        self.pool.shutdown()

    # -- per request -----------------------------------------------------------

    def process(self, record_id: str) -> ProcessOutcome:
        """Claim, execute and resolve one request record."""

        lock = self.store.request_lock(record_id)
        try:
            if not lock.try_acquire():
                self.log.debug("Request %s is locked; skipping this tick", record_id)
                return ProcessOutcome.LOCKED
        except StoreError as error:
            self.log.warning("Could not lock request %s: %s", record_id, error)
            return ProcessOutcome.STORE_ERROR
        try:
            return self._process_locked(record_id, lock)
        except StoreError as error:
            self.log.warning("Store error while processing %s: %s", record_id, error)
            return ProcessOutcome.STORE_ERROR
        finally:
            try:
                lock.release()
            except StoreError as error:
                self.log.warning("Could not release lock for %s: %s", record_id, error)

    def _process_locked(self, record_id: str, lock: FileLock) -> ProcessOutcome:
        try:
            record = self.store.read_request(record_id)
        except FileNotFoundError:
            return ProcessOutcome.GONE
        except RecordFormatError as error:
            self._resolve_malformed(record_id, error)
            return ProcessOutcome.MALFORMED

        if record.status is RequestStatus.CLAIMED and self.store.response_exists(record_id):
            return self._resume_commit(record, lock)
        if record.status is not RequestStatus.PENDING:
            self.log.debug("Request %s already %s", record_id, record.status.value)
            return ProcessOutcome.NOT_PENDING
        if self.store.response_exists(record_id):
            self.log.warning("Response already exists for pending request %s", record_id)
            return ProcessOutcome.NOT_PENDING

        record.status = RequestStatus.CLAIMED
        self.store.save_request(record, lock=lock)
        self.log.info(
            "Processing request: id=%s method=%s path=%s",
            record.id,
            record.method,
            record.path,
        )

        response, final_status = self._execute(record)
        self.store.write_response(response)
        self.log.info("Response written: id=%s status=%s", record.id, response.status_code)

        record.status = final_status
        self.store.save_request(record, lock=lock)
        if final_status is RequestStatus.COMPLETED:
            return ProcessOutcome.COMPLETED
        return ProcessOutcome.FAILED

    def _resume_commit(self, record: RequestRecord, lock: FileLock) -> ProcessOutcome:
        # An earlier claim wrote the response but stopped before the marker or
        # the terminal status; finish that commit without calling the target.
        if not self.store.has_completion_marker(record.id):
            self.store.mark_complete(record.id)
        record.status = RequestStatus.COMPLETED
        self.store.save_request(record, lock=lock)
        self.log.info("Resumed interrupted commit: id=%s", record.id)
        return ProcessOutcome.COMPLETED

    def _execute(self, record: RequestRecord) -> tuple[ResponseRecord, RequestStatus]:
        try:
            return self.target.call(record), RequestStatus.COMPLETED
        except TargetTransportError as error:
            self.log.error(
                "Target unreachable: id=%s attempts=%d error=%s",
                record.id,
                error.attempts,
                error,
            )
            message = str(error)
        except Exception as error:  # noqa: BLE001
            self.log.exception("Error processing request %s", record.id)
            message = str(error) or type(error).__name__
        response = error_response(
            record.id,
            status_code=500,
            error="Internal Server Error",
            message=message,
        )
        return response, RequestStatus.FAILED

    def _resolve_malformed(self, record_id: str, error: RecordFormatError) -> None:
        # The status cannot be rewritten in an unparseable record; the waiter
        # removes it together with this synthetic response.
        self.log.warning("Malformed request record %s: %s", record_id, error)
        if self.store.response_exists(record_id):
            return
        self.store.write_response(
            error_response(
                record_id,
                status_code=500,
                error="Malformed Request Record",
                message=str(error),
            ),
        )

    def _process_and_count(self, record_id: str) -> ProcessOutcome:
        try:
            outcome = self.process(record_id)
        except Exception:  # noqa: BLE001
            self.log.exception("Unexpected failure processing %s", record_id)
            outcome = ProcessOutcome.STORE_ERROR
        if outcome in _RETRY_LATER:
            self._forget([record_id])
        with self._totals_lock:
            self._totals.count(outcome)
        return outcome

    def _forget(self, record_ids: list[str]) -> None:
        with self._seen_lock:
            for record_id in record_ids:
                self.seen.discard(record_id)

    def _maybe_sweep(self) -> None:
        if self.sweeper is None:
            return
        now = time.monotonic()
        last = self._last_sweep_at
        if last is not None and now - last < self.sweep_interval_seconds:
            return
        self._last_sweep_at = now
        try:
            self.sweeper.sweep()
        except StoreError as error:
            self.log.warning("Sweep failed: %s", error)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
