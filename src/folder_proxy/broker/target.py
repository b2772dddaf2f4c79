"""Outbound HTTP client for the real target service."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

import httpx

from folder_proxy.broker.errors import TargetTransportError
from folder_proxy.broker.models import (
    Headers,
    RequestRecord,
    ResponseRecord,
    group_headers,
    header_items,
    utc_now,
)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 1.0

# Connection-scoped headers describe the front's client connection, not the
# request itself; httpx recomputes them for the target connection.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "content-length",
        "host",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    },
)

# The stored body is complete, so transfer framing from the target is dropped.
RESPONSE_FRAMING_HEADERS = frozenset(
    {"connection", "content-length", "keep-alive", "transfer-encoding"},
)


class TargetCaller(Protocol):
    """Anything that can turn a request record into a response record."""

    def call(self, request: RequestRecord) -> ResponseRecord:
        """Execute the request; raise ``TargetTransportError`` when unreachable."""


def forwardable_headers(headers: Headers) -> list[tuple[str, str]]:
    """Request headers minus hop-by-hop ones, in original order."""

    return [
        (name, value)
        for name, value in header_items(headers)
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]


def linear_backoff(base_seconds: float, attempt: int) -> float:
    """Delay after failed attempt number ``attempt`` (1-based)."""

    return max(0.0, base_seconds) * attempt


class TargetClient:
    """httpx wrapper with call timeout, retry on transport errors, no redirects.

    HTTP error statuses are valid responses and are returned as-is; only
    transport failures (refused, reset, DNS, timeout) are retried.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        trust_env: bool = True,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        self.base_url = base_url
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.log = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=False,
            trust_env=trust_env,
            transport=transport,
        )

    def call(self, request: RequestRecord) -> ResponseRecord:
        """Forward ``request`` to the target, retrying transport failures."""

        last_error: httpx.TransportError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._send(request)
            except httpx.TransportError as exc:
                last_error = exc
                self.log.warning(
                    "Target transport error: id=%s attempt=%d/%d error=%s",
                    request.id,
                    attempt,
                    self.max_attempts,
                    _describe(exc),
                )
            if attempt < self.max_attempts:
                self._sleep(linear_backoff(self.retry_backoff_seconds, attempt))

        raise TargetTransportError(
            message=_describe(last_error) if last_error else "Max retries exceeded",
            code="target_unreachable",
            attempts=self.max_attempts,
        )

    def _send(self, request: RequestRecord) -> ResponseRecord:
        outbound = self._client.build_request(
            request.method,
            request.path,
            headers=forwardable_headers(request.headers),
            content=request.body,
        )
        skipped = RESPONSE_FRAMING_HEADERS
        if request.method.upper() == "HEAD":
            # No body follows; the length describes the resource itself.
            skipped = skipped - {"content-length"}
        response = self._client.send(outbound, stream=True)
        try:
            if response.is_stream_consumed:
                # Preloaded by the transport; only the decoded content is left.
                body = response.content
            else:
                # Raw bytes keep any content-encoding intact for the caller.
                body = b"".join(response.iter_raw())
        finally:
            response.close()
        return ResponseRecord(
            id=request.id,
            status_code=response.status_code,
            headers=group_headers(
                [
                    (name, value)
                    for name, value in response.headers.multi_items()
                    if name.lower() not in skipped
                ],
            ),
            body=body,
            produced_at=utc_now(),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TargetClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _describe(error: BaseException) -> str:
    text = str(error).strip()
    return text or type(error).__name__
