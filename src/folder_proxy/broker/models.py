"""Domain models for relayed request/response exchanges."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

HeaderValue = str | list[str]
Headers = dict[str, HeaderValue]


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class RequestStatus(str, Enum):
    """Request record lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {RequestStatus.COMPLETED, RequestStatus.FAILED}


@dataclass(slots=True)
class RequestRecord:
    """One pending HTTP exchange as written by the front."""

    id: str
    method: str
    path: str
    headers: Headers = field(default_factory=dict)
    body: bytes | None = None
    submitted_at: datetime = field(default_factory=utc_now)
    status: RequestStatus = RequestStatus.PENDING


@dataclass(slots=True)
class ResponseRecord:
    """Response produced by the back for one request id."""

    id: str
    status_code: int
    headers: Headers = field(default_factory=dict)
    body: bytes | None = None
    produced_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class WaitTimeout:
    """Waiter gave up before a completion marker appeared."""

    id: str
    elapsed_seconds: float
    polls: int

    @property
    def elapsed_ms(self) -> int:
        return int(self.elapsed_seconds * 1000)


WaitOutcome = ResponseRecord | WaitTimeout


def header_items(headers: Headers) -> list[tuple[str, str]]:
    """Flatten a header mapping into ``(name, value)`` pairs preserving order."""

    items: list[tuple[str, str]] = []
    for name, value in headers.items():
        if isinstance(value, list):
            items.extend((name, str(item)) for item in value)
        else:
            items.append((name, str(value)))
    return items


def group_headers(items: list[tuple[str, str]]) -> Headers:
    """Group repeated header names into lists, keeping single values as strings."""

    grouped: Headers = {}
    for name, value in items:
        existing = grouped.get(name)
        if existing is None:
            grouped[name] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            grouped[name] = [existing, value]
    return grouped


def error_response(
    record_id: str,
    *,
    status_code: int,
    error: str,
    message: str,
) -> ResponseRecord:
    """Synthesized JSON error response for exchanges that could not complete."""

    body = json.dumps({"error": error, "message": message}).encode("utf-8")
    return ResponseRecord(
        id=record_id,
        status_code=status_code,
        headers={"content-type": "application/json"},
        body=body,
        produced_at=utc_now(),
    )
