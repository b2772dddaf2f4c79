"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from folder_proxy.broker.store import RecordStore
from folder_proxy.broker.target import TargetClient

TARGET_URL = "http://target.test"


@pytest.fixture()
def store(tmp_path: Path) -> RecordStore:
    record_store = RecordStore(tmp_path / "shared")
    record_store.initialize()
    return record_store


@pytest.fixture()
def clean_env(monkeypatch):
    """Drop FOLDER_PROXY_* overrides that may leak in from the shell."""
    for name in list(os.environ):
        if name.startswith("FOLDER_PROXY_") or name in {"PORT", "LOG_LEVEL"}:
            monkeypatch.delenv(name, raising=False)


def _widget_handler(request: httpx.Request) -> httpx.Response:
    parts = request.url.path.strip("/").split("/")
    if request.method == "GET" and len(parts) == 2 and parts[0] == "widgets":  # noqa: PLR2004
        body = json.dumps({"id": int(parts[1])}, separators=(",", ":")).encode()
        return httpx.Response(
            200,
            headers={"content-type": "application/json"},
            stream=httpx.ByteStream(body),
        )
    return httpx.Response(
        404,
        headers={"content-type": "text/plain"},
        stream=httpx.ByteStream(b"not found"),
    )


@pytest.fixture()
def widget_handler() -> Callable[[httpx.Request], httpx.Response]:
    """Tiny fake target API: GET /widgets/<n> returns {"id":n}."""
    return _widget_handler


@pytest.fixture()
def target_factory():
    """Build TargetClient instances backed by an in-process httpx transport."""
    clients: list[TargetClient] = []

    def _factory(handler=_widget_handler, **kwargs) -> TargetClient:
        kwargs.setdefault("sleep", lambda _: None)
        client = TargetClient(
            base_url=TARGET_URL,
            transport=httpx.MockTransport(handler),
            **kwargs,
        )
        clients.append(client)
        return client

    yield _factory
    for client in clients:
        client.close()


@pytest.fixture()
def make_old() -> Callable[[Path, float], None]:
    def _make_old(path: Path, seconds: float) -> None:
        stamp = time.time() - seconds
        os.utime(path, (stamp, stamp))

    return _make_old


@pytest.fixture()
def wait_until() -> Callable[..., bool]:
    def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait_until
