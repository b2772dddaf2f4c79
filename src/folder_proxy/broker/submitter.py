"""Front-side roles: enqueue a request, then wait for its response."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from uuid import uuid4

from folder_proxy.broker.errors import RecordFormatError, StoreError
from folder_proxy.broker.locking import FileLock
from folder_proxy.broker.models import (
    Headers,
    RequestRecord,
    RequestStatus,
    ResponseRecord,
    WaitOutcome,
    WaitTimeout,
    error_response,
    utc_now,
)
from folder_proxy.broker.store import RecordStore

DEFAULT_POLL_INTERVAL_SECONDS = 0.1
DEFAULT_PROGRESS_EVERY_POLLS = 25


def new_record_id() -> str:
    """Random 122-bit correlation id."""

    return str(uuid4())


class Submitter:
    """Writes new pending request records into the store."""

    def __init__(
        self,
        store: RecordStore,
        *,
        id_factory: Callable[[], str] = new_record_id,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.id_factory = id_factory
        self.log = logger or logging.getLogger(__name__)

    def submit(
        self,
        method: str,
        path: str,
        headers: Headers | None = None,
        body: bytes | None = None,
    ) -> str:
        """Durably enqueue one request and return its id."""

        record = RequestRecord(
            id=self.id_factory(),
            method=method.upper(),
            path=path,
            headers=dict(headers or {}),
            body=body,
            submitted_at=utc_now(),
            status=RequestStatus.PENDING,
        )
        self.store.create_request(record)
        self.log.info("Request saved: id=%s method=%s path=%s", record.id, record.method, path)
        return record.id


class CompletionWaiter:
    """Polls for a completion marker and collects the response exactly once."""

    def __init__(  # noqa: PLR0913
        self,
        store: RecordStore,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        progress_every_polls: int = DEFAULT_PROGRESS_EVERY_POLLS,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0.")
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self.progress_every_polls = max(1, progress_every_polls)
        self.log = logger or logging.getLogger(__name__)
        self._clock = clock
        self._sleep = sleep

    def await_response(self, record_id: str, timeout_seconds: float) -> WaitOutcome:
        """Return the response for ``record_id`` or a ``WaitTimeout``.

        The wait ends no later than ``timeout_seconds`` plus one poll.  On
        success the response record, its marker and the request record are
        removed from the store.
        """

        started = self._clock()
        deadline = started + max(0.0, timeout_seconds)
        polls = 0
        while True:
            polls += 1
            response = self._poll_once(record_id)
            now = self._clock()
            if response is not None:
                self.log.info(
                    "Response delivered: id=%s status=%s elapsed_ms=%d polls=%d",
                    record_id,
                    response.status_code,
                    int((now - started) * 1000),
                    polls,
                )
                return response
            if now >= deadline:
                self.log.warning(
                    "Timeout waiting for response: id=%s elapsed_ms=%d polls=%d",
                    record_id,
                    int((now - started) * 1000),
                    polls,
                )
                return WaitTimeout(id=record_id, elapsed_seconds=now - started, polls=polls)
            if polls % self.progress_every_polls == 0:
                self.log.info(
                    "Still waiting for response: id=%s elapsed_ms=%d polls=%d",
                    record_id,
                    int((now - started) * 1000),
                    polls,
                )
            self._sleep(min(self.poll_interval_seconds, deadline - now))

    def abandon(self, record_id: str) -> bool:
        """Delete a timed-out request if no worker currently holds it.

        A worker that already claimed the request may still finish it; its
        response then stays behind as an orphan for the sweeper.
        """

        lock = self.store.request_lock(record_id)
        try:
            if not lock.try_acquire():
                self.log.info(
                    "Request %s is held by a worker; leaving it for the sweeper",
                    record_id,
                )
                return False
            try:
                removed = self.store.delete_request(record_id, lock=lock)
            finally:
                lock.release()
        except StoreError as error:
            self.log.warning("Could not abandon request %s: %s", record_id, error)
            return False
        if removed:
            self.log.info("Abandoned request removed: id=%s", record_id)
        return removed

    def _poll_once(self, record_id: str) -> ResponseRecord | None:
        try:
            if not self.store.has_completion_marker(record_id):
                self.log.debug("Response not ready yet: id=%s", record_id)
                return None
            return self._collect(record_id)
        except StoreError as error:
            self.log.warning("Error checking for response %s: %s", record_id, error)
            return None

    def _collect(self, record_id: str) -> ResponseRecord | None:
        # The worker releases the request lock only after writing the terminal
        # status, so holding it here means the exchange is fully resolved.
        request_lock = self.store.request_lock(record_id)
        if not request_lock.try_acquire():
            self.log.debug("Response marked but request %s still locked", record_id)
            return None
        response_lock = self.store.response_lock(record_id)
        try:
            if not response_lock.try_acquire():
                self._release(request_lock, record_id)
                return None
            response = self._read_response(record_id)
        except StoreError:
            if response_lock.held:
                self._release(response_lock, record_id)
            self._release(request_lock, record_id)
            raise
        # From here on the response is in hand and is returned whatever happens
        # to cleanup; leftovers age out through the sweeper.
        try:
            self.store.delete_request(record_id, lock=request_lock)
            self.store.delete_response(record_id, lock=response_lock)
        except StoreError as error:
            self.log.warning("Cleanup failed for %s: %s", record_id, error)
        else:
            self.log.info("Request and response files cleaned up: id=%s", record_id)
        finally:
            self._release(response_lock, record_id)
            self._release(request_lock, record_id)
        return response

    def _release(self, lock: FileLock, record_id: str) -> None:
        try:
            lock.release()
        except StoreError as error:
            self.log.warning("Could not release lock for %s: %s", record_id, error)

    def _read_response(self, record_id: str) -> ResponseRecord:
        try:
            return self.store.read_response(record_id)
        except FileNotFoundError:
            message = "Completion marker present but response record is missing"
        except RecordFormatError as error:
            message = f"Response record is malformed: {error}"
        self.log.error("Unreadable response for %s: %s", record_id, message)
        return error_response(record_id, status_code=502, error="Bad Gateway", message=message)


class RelayClient:
    """Submit-and-wait facade used by the front HTTP adapter."""

    def __init__(
        self,
        *,
        submitter: Submitter,
        waiter: CompletionWaiter,
        timeout_seconds: float,
        abandon_on_timeout: bool = True,
    ) -> None:
        self.submitter = submitter
        self.waiter = waiter
        self.timeout_seconds = timeout_seconds
        self.abandon_on_timeout = abandon_on_timeout

    @classmethod
    def for_store(  # noqa: PLR0913
        cls,
        store: RecordStore,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        abandon_on_timeout: bool = True,
        logger: logging.Logger | None = None,
    ) -> RelayClient:
        return cls(
            submitter=Submitter(store, logger=logger),
            waiter=CompletionWaiter(
                store,
                poll_interval_seconds=poll_interval_seconds,
                logger=logger,
            ),
            timeout_seconds=timeout_seconds,
            abandon_on_timeout=abandon_on_timeout,
        )

    def exchange(
        self,
        method: str,
        path: str,
        headers: Headers | None = None,
        body: bytes | None = None,
    ) -> WaitOutcome:
        """Relay one request and block until its response or the deadline."""

        record_id = self.submitter.submit(method, path, headers, body)
        outcome = self.waiter.await_response(record_id, self.timeout_seconds)
        if isinstance(outcome, WaitTimeout) and self.abandon_on_timeout:
            self.waiter.abandon(record_id)
        return outcome
