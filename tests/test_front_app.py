"""Tests for the FastAPI front adapter."""

from __future__ import annotations

import threading

import allure
import httpx
import pytest
from fastapi.testclient import TestClient

from folder_proxy.broker.errors import StoreError
from folder_proxy.broker.models import ResponseRecord
from folder_proxy.broker.store import RecordStore
from folder_proxy.broker.submitter import RelayClient
from folder_proxy.broker.worker import BrokerWorker
from folder_proxy.front.app import create_app, to_http_response

pytestmark = [
    allure.epic("Folder Broker"),
    allure.feature("Front HTTP Adapter"),
]


@pytest.fixture()
def running_back(store: RecordStore, target_factory, widget_handler):
    """Back worker looping in a helper thread against the fake target."""
    captured: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        if request.url.path == "/echo":
            return httpx.Response(
                200,
                headers=[("content-type", "text/plain"), ("x-seen", "1"), ("x-seen", "2")],
                stream=httpx.ByteStream(request.content),
            )
        return widget_handler(request)

    worker = BrokerWorker(
        store=store,
        target=target_factory(_handler),
        poll_interval_seconds=0.01,
    )
    loop = threading.Thread(target=worker.run_loop, daemon=True)
    loop.start()
    yield captured
    worker.request_stop()
    loop.join(timeout=5)
    worker.close()


@pytest.fixture()
def client(store: RecordStore):
    relay = RelayClient.for_store(store, timeout_seconds=5.0, poll_interval_seconds=0.01)
    with TestClient(create_app(relay)) as test_client:
        yield test_client


def test_health_is_answered_locally(client: TestClient, store: RecordStore) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert store.list_request_ids() == []


def test_get_is_relayed_to_target(client: TestClient, store: RecordStore, running_back) -> None:
    response = client.get("/widgets/42", params={"verbose": "1"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {"id": 42}
    (sent,) = running_back
    assert sent.url.path == "/widgets/42"
    assert sent.url.params["verbose"] == "1"
    assert store.list_request_ids() == []
    assert store.list_response_ids() == []


def test_body_and_repeated_headers_survive_the_round_trip(
    client: TestClient,
    running_back,
) -> None:
    response = client.post(
        "/echo",
        content=b"payload-bytes",
        headers={"content-type": "text/plain", "x-trace": "abc"},
    )

    assert response.status_code == 200
    assert response.content == b"payload-bytes"
    assert response.headers.get_list("x-seen") == ["1", "2"]
    (sent,) = running_back
    assert sent.method == "POST"
    assert sent.headers["x-trace"] == "abc"
    assert sent.headers["host"] == "target.test"


def test_missing_target_route_passes_status_through(client: TestClient, running_back) -> None:
    response = client.delete("/widgets/1")

    assert response.status_code == 404
    assert response.text == "not found"


def test_no_worker_means_gateway_timeout(store: RecordStore) -> None:
    relay = RelayClient.for_store(store, timeout_seconds=0.1, poll_interval_seconds=0.02)
    with TestClient(create_app(relay)) as client:
        response = client.get("/widgets/42")

    assert response.status_code == 504
    payload = response.json()
    assert payload["error"] == "Gateway Timeout"
    assert payload["message"] == "Remote worker did not respond in time"
    assert payload["elapsedTime"] >= 100
    assert store.list_request_ids() == []


def test_store_failure_is_internal_server_error(store: RecordStore) -> None:
    class _BrokenRelay:
        def exchange(self, method, path, headers=None, body=None):
            raise StoreError(message="disk unavailable", code="store_io")

    with TestClient(create_app(_BrokenRelay())) as client:
        response = client.put("/widgets/1", content=b"{}")

    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error", "message": "disk unavailable"}


def test_to_http_response_drops_stale_framing_headers() -> None:
    record = ResponseRecord(
        id="r1",
        status_code=201,
        headers={"content-length": "999", "transfer-encoding": "chunked", "x-id": "r1"},
        body=b"ok",
    )

    response = to_http_response(record)

    assert response.status_code == 201
    assert response.body == b"ok"
    assert response.headers["content-length"] == "2"
    assert "transfer-encoding" not in response.headers
    assert response.headers["x-id"] == "r1"


def test_to_http_response_keeps_target_length_for_head() -> None:
    record = ResponseRecord(
        id="r1",
        status_code=200,
        headers={"content-length": "1234", "content-type": "text/plain"},
    )

    head = to_http_response(record, method="HEAD")
    get = to_http_response(record)

    assert head.headers.getlist("content-length") == ["1234"]
    assert head.headers["content-type"] == "text/plain"
    assert get.headers["content-length"] == "0"


def test_head_is_relayed_with_target_length(store: RecordStore, target_factory) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-length": "1234", "content-type": "text/plain"},
            stream=httpx.ByteStream(b""),
        )

    worker = BrokerWorker(store=store, target=target_factory(_handler), poll_interval_seconds=0.01)
    loop = threading.Thread(target=worker.run_loop, daemon=True)
    loop.start()
    relay = RelayClient.for_store(store, timeout_seconds=5.0, poll_interval_seconds=0.01)
    try:
        with TestClient(create_app(relay)) as client:
            response = client.head("/files/report.pdf")
    finally:
        worker.request_stop()
        loop.join(timeout=5)
        worker.close()

    assert response.status_code == 200
    assert response.headers["content-length"] == "1234"
    assert response.content == b""
