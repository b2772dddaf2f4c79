"""Broker error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class BrokerError(Exception):
    """Base broker error."""

    message: str
    code: str = "broker_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class StoreError(BrokerError):
    """Shared folder I/O failure; callers retry on the next tick."""

    path: str | None = None


@dataclass(slots=True)
class RecordFormatError(BrokerError):
    """Record content cannot be parsed; permanent for that exchange."""

    record_id: str | None = None


@dataclass(slots=True)
class TargetTransportError(BrokerError):
    """Target service could not be reached after all attempts."""

    attempts: int = 0
