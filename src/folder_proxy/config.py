"""Runtime configuration for both halves of the folder proxy."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_STORE_ROOT = Path("REST_PROXY_DO_NOT_DELETE")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(slots=True)
class StoreSettings:
    """Shared folder layout and cleanup settings."""

    root: Path = DEFAULT_STORE_ROOT
    requests_dir_name: str = "requests"
    responses_dir_name: str = "responses"
    orphan_max_age_seconds: float = 300.0
    stale_lock_seconds: float = 120.0
    sweep_interval_seconds: float = 60.0


@dataclass(slots=True)
class FrontSettings:
    """Front (submitter) side settings."""

    host: str = "127.0.0.1"
    port: int = 3000
    poll_interval_seconds: float = 0.1
    deadline_seconds: float = 30.0
    delete_request_on_timeout: bool = True


@dataclass(slots=True)
class BackSettings:
    """Back (worker) side settings."""

    target_url: str = "http://127.0.0.1:8088"
    poll_interval_seconds: float = 0.05
    batch_size: int = 20
    max_concurrent_requests: int = 40
    max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    request_timeout_seconds: float = 30.0
    seen_capacity: int = 1000
    trust_env: bool = True

    @property
    def worst_case_call_seconds(self) -> float:
        """Upper bound of one request's target time including retries."""

        backoff = sum(self.retry_backoff_seconds * n for n in range(1, self.max_attempts))
        return self.request_timeout_seconds * self.max_attempts + backoff


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    store: StoreSettings = field(default_factory=StoreSettings)
    front: FrontSettings = field(default_factory=FrontSettings)
    back: BackSettings = field(default_factory=BackSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, store_root: Path | None = None) -> Settings:
        """Load settings from environment with defaults for a local setup."""

        return cls(
            store=StoreSettings(
                root=store_root
                or Path(os.getenv("FOLDER_PROXY_STORE_ROOT", str(DEFAULT_STORE_ROOT))),
                requests_dir_name=os.getenv("FOLDER_PROXY_REQUESTS_DIR", "requests"),
                responses_dir_name=os.getenv("FOLDER_PROXY_RESPONSES_DIR", "responses"),
                orphan_max_age_seconds=float(
                    os.getenv("FOLDER_PROXY_ORPHAN_MAX_AGE_SECONDS", "300"),
                ),
                stale_lock_seconds=float(os.getenv("FOLDER_PROXY_STALE_LOCK_SECONDS", "120")),
                sweep_interval_seconds=float(
                    os.getenv("FOLDER_PROXY_SWEEP_INTERVAL_SECONDS", "60"),
                ),
            ),
            front=FrontSettings(
                host=os.getenv("FOLDER_PROXY_FRONT_HOST", "127.0.0.1"),
                port=int(os.getenv("FOLDER_PROXY_FRONT_PORT", os.getenv("PORT", "3000"))),
                poll_interval_seconds=float(
                    os.getenv("FOLDER_PROXY_FRONT_POLL_INTERVAL_SECONDS", "0.1"),
                ),
                deadline_seconds=float(os.getenv("FOLDER_PROXY_FRONT_DEADLINE_SECONDS", "30")),
                delete_request_on_timeout=_env_bool(
                    "FOLDER_PROXY_FRONT_DELETE_REQUEST_ON_TIMEOUT",
                    default=True,
                ),
            ),
            back=BackSettings(
                target_url=os.getenv("FOLDER_PROXY_TARGET_URL", "http://127.0.0.1:8088"),
                poll_interval_seconds=float(
                    os.getenv("FOLDER_PROXY_BACK_POLL_INTERVAL_SECONDS", "0.05"),
                ),
                batch_size=int(os.getenv("FOLDER_PROXY_BACK_BATCH_SIZE", "20")),
                max_concurrent_requests=int(
                    os.getenv("FOLDER_PROXY_BACK_MAX_CONCURRENT_REQUESTS", "40"),
                ),
                max_attempts=int(os.getenv("FOLDER_PROXY_BACK_MAX_ATTEMPTS", "3")),
                retry_backoff_seconds=float(
                    os.getenv("FOLDER_PROXY_BACK_RETRY_BACKOFF_SECONDS", "1.0"),
                ),
                request_timeout_seconds=float(
                    os.getenv("FOLDER_PROXY_BACK_REQUEST_TIMEOUT_SECONDS", "30"),
                ),
                seen_capacity=int(os.getenv("FOLDER_PROXY_BACK_SEEN_CAPACITY", "1000")),
                trust_env=_env_bool("FOLDER_PROXY_BACK_TRUST_ENV", default=True),
            ),
            log_level=os.getenv("FOLDER_PROXY_LOG_LEVEL", os.getenv("LOG_LEVEL", "INFO")).upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the broker cannot work with."""

        self.validate_front()
        self.validate_back()
        self.validate_shared()

    def validate_shared(self) -> None:
        """Checks every role needs: log level and the sweeper timing bounds."""

        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"FOLDER_PROXY_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}: "
                f"{self.log_level!r}",
            )
        if self.store.orphan_max_age_seconds <= self.front.deadline_seconds:
            raise ValueError(
                "FOLDER_PROXY_ORPHAN_MAX_AGE_SECONDS must be greater than "
                "FOLDER_PROXY_FRONT_DEADLINE_SECONDS.",
            )
        if self.store.stale_lock_seconds <= self.back.worst_case_call_seconds:
            raise ValueError(
                "FOLDER_PROXY_STALE_LOCK_SECONDS must exceed the worst-case target call time "
                f"({self.back.worst_case_call_seconds:.1f}s with retries).",
            )

    def validate_front(self) -> None:
        if self.front.poll_interval_seconds <= 0:
            raise ValueError("FOLDER_PROXY_FRONT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.front.deadline_seconds <= 0:
            raise ValueError("FOLDER_PROXY_FRONT_DEADLINE_SECONDS must be > 0.")
        if not 0 < self.front.port < 65536:  # noqa: PLR2004
            raise ValueError("FOLDER_PROXY_FRONT_PORT must be between 1 and 65535.")

    def validate_back(self) -> None:
        _validate_target_url(self.back.target_url)
        if self.back.poll_interval_seconds <= 0:
            raise ValueError("FOLDER_PROXY_BACK_POLL_INTERVAL_SECONDS must be > 0.")
        if self.back.batch_size <= 0:
            raise ValueError("FOLDER_PROXY_BACK_BATCH_SIZE must be a positive integer.")
        if self.back.max_concurrent_requests <= 0:
            raise ValueError(
                "FOLDER_PROXY_BACK_MAX_CONCURRENT_REQUESTS must be a positive integer.",
            )
        if self.back.max_attempts <= 0:
            raise ValueError("FOLDER_PROXY_BACK_MAX_ATTEMPTS must be a positive integer.")
        if self.back.retry_backoff_seconds < 0:
            raise ValueError("FOLDER_PROXY_BACK_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.back.request_timeout_seconds <= 0:
            raise ValueError("FOLDER_PROXY_BACK_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.back.seen_capacity <= 0:
            raise ValueError("FOLDER_PROXY_BACK_SEEN_CAPACITY must be a positive integer.")


def _validate_target_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid FOLDER_PROXY_TARGET_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
