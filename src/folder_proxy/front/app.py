"""FastAPI listener that relays every incoming request through the folder."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from folder_proxy import __version__
from folder_proxy.broker.errors import StoreError
from folder_proxy.broker.models import ResponseRecord, WaitTimeout, group_headers, header_items
from folder_proxy.broker.submitter import RelayClient

RELAY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# Framing headers the ASGI server recomputes for the replayed body.
RESPONSE_SKIP_HEADERS = frozenset(
    {"connection", "content-length", "keep-alive", "transfer-encoding"},
)


def create_app(relay: RelayClient, *, logger: logging.Logger | None = None) -> FastAPI:
    """Build the front application around an already configured relay."""

    log = logger or logging.getLogger(__name__)
    app = FastAPI(
        title="folder-proxy",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.relay = relay

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.api_route("/{full_path:path}", methods=RELAY_METHODS)
    async def relay_request(request: Request, full_path: str) -> Response:  # noqa: ARG001
        body = await request.body()
        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query}"
        headers = group_headers(list(request.headers.items()))
        try:
            outcome = await run_in_threadpool(
                relay.exchange,
                request.method,
                path,
                headers,
                body or None,
            )
        except StoreError as error:
            log.error("Error processing request %s %s: %s", request.method, path, error)
            return JSONResponse(
                status_code=500,
                content={"error": "Internal Server Error", "message": str(error)},
            )
        if isinstance(outcome, WaitTimeout):
            return JSONResponse(
                status_code=504,
                content={
                    "error": "Gateway Timeout",
                    "message": "Remote worker did not respond in time",
                    "elapsedTime": outcome.elapsed_ms,
                },
            )
        return to_http_response(outcome, method=request.method)

    return app


def to_http_response(record: ResponseRecord, *, method: str = "GET") -> Response:
    """Replay a response record's status, headers and body verbatim.

    A HEAD response has no body, so the target's ``content-length`` is kept
    rather than recomputed from the empty payload.
    """

    items = header_items(record.headers)
    preset: dict[str, str] = {}
    if method.upper() == "HEAD":
        preset = {name: value for name, value in items if name.lower() == "content-length"}
    response = Response(
        content=record.body or b"",
        status_code=record.status_code,
        headers=preset or None,
    )
    for name, value in items:
        if name.lower() in RESPONSE_SKIP_HEADERS:
            continue
        response.headers.append(name, value)
    return response
