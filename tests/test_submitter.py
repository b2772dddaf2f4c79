"""Tests for the front-side submit and wait roles."""

from __future__ import annotations

import json
import logging
import threading
import time

import allure
import pytest

from folder_proxy.broker.errors import StoreError
from folder_proxy.broker.models import RequestStatus, ResponseRecord, WaitTimeout
from folder_proxy.broker.store import RecordStore
from folder_proxy.broker.submitter import CompletionWaiter, RelayClient, Submitter

pytestmark = [
    allure.epic("Folder Broker"),
    allure.feature("Submit & Wait"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _respond(store: RecordStore, record_id: str, status_code: int = 200) -> None:
    store.write_response(
        ResponseRecord(
            id=record_id,
            status_code=status_code,
            headers={"content-type": "application/json"},
            body=b'{"id":42}',
        ),
    )


class TestSubmitter:
    def test_submit_writes_pending_record(self, store: RecordStore):
        record_id = Submitter(store).submit(
            "post",
            "/items?draft=1",
            {"content-type": "text/plain"},
            b"hello",
        )

        record = store.read_request(record_id)
        assert record.method == "POST"
        assert record.path == "/items?draft=1"
        assert record.body == b"hello"
        assert record.status is RequestStatus.PENDING
        assert json.loads(store.request_path(record_id).read_text("utf-8"))["id"] == record_id

    def test_concurrent_submits_get_distinct_ids(self, store: RecordStore):
        submitter = Submitter(store)
        total = 40
        barrier = threading.Barrier(total)
        ids: list[str] = []
        ids_lock = threading.Lock()

        def _submit() -> None:
            barrier.wait()
            record_id = submitter.submit("GET", "/ping")
            with ids_lock:
                ids.append(record_id)

        threads = [threading.Thread(target=_submit) for _ in range(total)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(ids)) == total
        assert sorted(store.list_request_ids()) == sorted(ids)


class TestCompletionWaiter:
    def test_timeout_ends_within_one_poll_of_deadline(self, store: RecordStore):
        clock = FakeClock()
        waiter = CompletionWaiter(
            store,
            poll_interval_seconds=0.1,
            clock=clock,
            sleep=clock.sleep,
        )
        record_id = Submitter(store).submit("GET", "/slow")

        outcome = waiter.await_response(record_id, timeout_seconds=1.0)

        assert isinstance(outcome, WaitTimeout)
        assert outcome.id == record_id
        assert abs(outcome.elapsed_seconds - 1.0) <= 0.1
        assert outcome.polls >= 10
        assert all(step <= 0.1 for step in clock.sleeps)
        assert store.request_exists(record_id)

    def test_real_time_timeout_does_not_raise(self, store: RecordStore):
        waiter = CompletionWaiter(store, poll_interval_seconds=0.02)

        outcome = waiter.await_response("never-submitted", timeout_seconds=0.1)

        assert isinstance(outcome, WaitTimeout)
        assert 0.1 <= outcome.elapsed_seconds < 2.0
        assert outcome.elapsed_ms >= 100

    def test_progress_is_logged_while_waiting(self, store: RecordStore, caplog):
        clock = FakeClock()
        waiter = CompletionWaiter(
            store,
            poll_interval_seconds=0.1,
            progress_every_polls=5,
            clock=clock,
            sleep=clock.sleep,
        )

        with caplog.at_level(logging.INFO, logger="folder_proxy.broker.submitter"):
            waiter.await_response("r1", timeout_seconds=1.0)

        assert any("Still waiting for response" in message for message in caplog.messages)
        assert any("Timeout waiting for response" in message for message in caplog.messages)

    def test_collects_response_and_cleans_up(self, store: RecordStore):
        record_id = Submitter(store).submit("GET", "/widgets/42")
        _respond(store, record_id)

        outcome = CompletionWaiter(store, poll_interval_seconds=0.01).await_response(
            record_id,
            timeout_seconds=1.0,
        )

        assert isinstance(outcome, ResponseRecord)
        assert outcome.status_code == 200
        assert outcome.body == b'{"id":42}'
        assert list(store.requests_dir.iterdir()) == []
        assert list(store.responses_dir.iterdir()) == []

    def test_waits_for_worker_to_release_request_lock(self, store: RecordStore):
        record_id = Submitter(store).submit("GET", "/widgets/42")
        _respond(store, record_id)
        worker_lock = store.request_lock(record_id)
        assert worker_lock.try_acquire()
        timer = threading.Timer(0.1, worker_lock.release)
        timer.start()

        outcome = CompletionWaiter(store, poll_interval_seconds=0.01).await_response(
            record_id,
            timeout_seconds=5.0,
        )

        timer.join()
        assert isinstance(outcome, ResponseRecord)
        assert not store.request_exists(record_id)

    def test_marker_without_record_becomes_bad_gateway(self, store: RecordStore):
        store.mark_complete("r1")

        outcome = CompletionWaiter(store, poll_interval_seconds=0.01).await_response("r1", 1.0)

        assert isinstance(outcome, ResponseRecord)
        assert outcome.status_code == 502
        assert json.loads(outcome.body)["error"] == "Bad Gateway"
        assert not store.has_completion_marker("r1")

    def test_malformed_response_becomes_bad_gateway(self, store: RecordStore):
        store.response_path("r1").write_text('{"id": "r1", "statusCode": "ok"}', "utf-8")
        store.mark_complete("r1")

        outcome = CompletionWaiter(store, poll_interval_seconds=0.01).await_response("r1", 1.0)

        assert isinstance(outcome, ResponseRecord)
        assert outcome.status_code == 502
        assert "malformed" in json.loads(outcome.body)["message"]
        assert not store.response_path("r1").exists()

    def test_cleanup_failure_still_delivers_response(self, store: RecordStore, monkeypatch):
        record_id = Submitter(store).submit("GET", "/widgets/42")
        _respond(store, record_id)
        original_delete = store.delete_request
        failures: list[str] = []

        def _failing_delete(target_id: str, *, lock):
            if not failures:
                failures.append(target_id)
                raise StoreError(message="share went away", code="store_io")
            return original_delete(target_id, lock=lock)

        monkeypatch.setattr(store, "delete_request", _failing_delete)

        outcome = CompletionWaiter(store, poll_interval_seconds=0.01).await_response(
            record_id,
            timeout_seconds=1.0,
        )

        assert isinstance(outcome, ResponseRecord)
        assert outcome.status_code == 200
        assert outcome.body == b'{"id":42}'
        assert failures == [record_id]
        assert store.request_exists(record_id)
        assert store.list_lock_paths() == []


class TestAbandon:
    def test_abandon_removes_unclaimed_request(self, store: RecordStore):
        record_id = Submitter(store).submit("GET", "/slow")

        assert CompletionWaiter(store).abandon(record_id) is True
        assert not store.request_exists(record_id)
        assert CompletionWaiter(store).abandon(record_id) is False

    def test_abandon_leaves_claimed_request_alone(self, store: RecordStore):
        record_id = Submitter(store).submit("GET", "/slow")
        worker_lock = store.request_lock(record_id)
        assert worker_lock.try_acquire()

        assert CompletionWaiter(store).abandon(record_id) is False

        worker_lock.release()
        assert store.request_exists(record_id)


class TestRelayClient:
    def test_timeout_abandons_request(self, store: RecordStore):
        relay = RelayClient.for_store(store, timeout_seconds=0.05, poll_interval_seconds=0.01)

        outcome = relay.exchange("GET", "/slow")

        assert isinstance(outcome, WaitTimeout)
        assert store.list_request_ids() == []

    def test_timeout_can_keep_request(self, store: RecordStore):
        relay = RelayClient.for_store(
            store,
            timeout_seconds=0.05,
            poll_interval_seconds=0.01,
            abandon_on_timeout=False,
        )

        outcome = relay.exchange("GET", "/slow")

        assert isinstance(outcome, WaitTimeout)
        assert store.list_request_ids() == [outcome.id]

    def test_exchange_returns_response_written_by_other_side(self, store: RecordStore):
        relay = RelayClient.for_store(store, timeout_seconds=5.0, poll_interval_seconds=0.01)

        def _answer_first_request() -> None:
            for _ in range(500):
                ids = store.list_request_ids()
                if ids:
                    _respond(store, ids[0], status_code=201)
                    return
                time.sleep(0.01)

        responder = threading.Thread(target=_answer_first_request)
        responder.start()
        outcome = relay.exchange("POST", "/items", body=b"{}")
        responder.join()

        assert isinstance(outcome, ResponseRecord)
        assert outcome.status_code == 201


def test_poll_interval_must_be_positive(store: RecordStore) -> None:
    with pytest.raises(ValueError, match="poll_interval_seconds"):
        CompletionWaiter(store, poll_interval_seconds=0)
