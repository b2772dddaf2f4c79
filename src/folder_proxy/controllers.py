"""Controllers for folder-proxy CLI commands."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path

import uvicorn

from folder_proxy.broker.models import WaitTimeout, group_headers
from folder_proxy.broker.store import RecordStore
from folder_proxy.broker.submitter import RelayClient
from folder_proxy.broker.sweeper import OrphanSweeper
from folder_proxy.broker.target import TargetClient
from folder_proxy.broker.worker import BrokerWorker
from folder_proxy.config import Settings
from folder_proxy.front.app import create_app


@dataclass(slots=True)
class StoreInitCommand:
    """CLI input for store initialization."""

    store_root: Path | None
    reset: bool


@dataclass(slots=True)
class StoreInspectCommand:
    """CLI input for store status and sweep."""

    store_root: Path | None


@dataclass(slots=True)
class FrontServeCommand:
    """CLI input for the front HTTP listener."""

    store_root: Path | None
    host: str | None
    port: int | None
    log_level: str | None = None


@dataclass(slots=True)
class FrontSendCommand:
    """CLI input for relaying a single request."""

    store_root: Path | None
    method: str
    path: str
    headers: tuple[str, ...]
    data: str | None
    deadline_seconds: float | None
    log_level: str | None = None


@dataclass(slots=True)
class BackRunCommand:
    """CLI input for the back worker."""

    store_root: Path | None
    target_url: str | None
    once: bool
    max_ticks: int | None
    log_level: str | None = None


class BrokerCliController:
    """Coordinates store, front and back CLI operations."""

    def init_store(self, command: StoreInitCommand) -> list[str]:
        settings = Settings.from_env(store_root=command.store_root)
        store = _store(settings)
        store.initialize(reset=command.reset)
        return [
            f"Store initialized: root={store.root} reset={command.reset}",
            f"Requests: {store.requests_dir}",
            f"Responses: {store.responses_dir}",
        ]

    def status(self, command: StoreInspectCommand) -> list[str]:
        settings = Settings.from_env(store_root=command.store_root)
        store = _store(settings)
        if not store.is_available():
            return [f"Store not initialized at {store.root}"]
        counts = store.counts()
        by_status = " ".join(
            f"{name}={counts.requests_by_status.get(name, 0)}"
            for name in ("pending", "claimed", "completed", "failed")
        )
        return [
            f"Store: {store.root}",
            f"Requests: {by_status} malformed={counts.malformed_requests}",
            f"Responses: total={counts.responses} committed={counts.completed_responses}",
            f"Locks: {counts.locks}",
        ]

    def sweep(self, command: StoreInspectCommand) -> list[str]:
        settings = Settings.from_env(store_root=command.store_root)
        store = _store(settings)
        if not store.is_available():
            return [f"Store not initialized at {store.root}"]
        report = _sweeper(settings, store).sweep()
        lines = [
            "Sweep summary: "
            f"stale_locks={len(report.stale_locks)} "
            f"stale_requests={len(report.stale_requests)} "
            f"orphan_responses={len(report.orphan_responses)}",
        ]
        lines.extend(f"  lock {name}" for name in report.stale_locks)
        lines.extend(f"  request {record_id}" for record_id in report.stale_requests)
        lines.extend(f"  response {record_id}" for record_id in report.orphan_responses)
        return lines

    def serve_front(self, command: FrontServeCommand) -> list[str]:
        settings = _load_settings(command.store_root, command.log_level)
        front = replace(
            settings.front,
            host=command.host or settings.front.host,
            port=command.port or settings.front.port,
        )
        settings = replace(settings, front=front)
        settings.validate_front()
        settings.validate_shared()
        store = _store(settings)
        store.initialize()
        app = create_app(_relay(settings, store))
        uvicorn.run(app, host=front.host, port=front.port, log_level=settings.log_level.lower())
        return [f"Front stopped: {front.host}:{front.port}"]

    def send(self, command: FrontSendCommand) -> list[str]:
        settings = _load_settings(command.store_root, command.log_level)
        if command.deadline_seconds is not None:
            settings = replace(
                settings,
                front=replace(settings.front, deadline_seconds=command.deadline_seconds),
            )
        settings.validate_front()
        settings.validate_shared()
        store = _store(settings)
        store.initialize()
        outcome = _relay(settings, store).exchange(
            command.method,
            command.path,
            _parse_headers(command.headers),
            command.data.encode("utf-8") if command.data is not None else None,
        )
        if isinstance(outcome, WaitTimeout):
            return [f"Gateway Timeout: id={outcome.id} elapsed_ms={outcome.elapsed_ms}"]
        lines = [f"Status: {outcome.status_code}"]
        lines.extend(f"{name}: {value}" for name, value in sorted(outcome.headers.items()))
        lines.append("")
        if outcome.body is not None:
            lines.append(outcome.body.decode("utf-8", errors="replace"))
        return lines

    def run_back(self, command: BackRunCommand) -> list[str]:
        settings = _load_settings(command.store_root, command.log_level)
        if command.target_url:
            settings = replace(settings, back=replace(settings.back, target_url=command.target_url))
        settings.validate_back()
        settings.validate_shared()
        store = _store(settings)
        store.initialize()
        back = settings.back
        with TargetClient(
            base_url=back.target_url,
            timeout_seconds=back.request_timeout_seconds,
            max_attempts=back.max_attempts,
            retry_backoff_seconds=back.retry_backoff_seconds,
            trust_env=back.trust_env,
        ) as target:
            worker = BrokerWorker(
                store=store,
                target=target,
                max_concurrent=back.max_concurrent_requests,
                poll_interval_seconds=back.poll_interval_seconds,
                batch_size=back.batch_size,
                seen_capacity=back.seen_capacity,
                sweeper=_sweeper(settings, store),
                sweep_interval_seconds=settings.store.sweep_interval_seconds,
            )
            try:
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(max_ticks=command.max_ticks)
                )
            finally:
                worker.close()

        return [
            "Worker summary: "
            f"discovered={summary.discovered} dispatched={summary.dispatched} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"malformed={summary.malformed} skipped={summary.skipped} "
            f"store_errors={summary.store_errors} idle_polls={summary.idle_polls}",
        ]


def _load_settings(store_root: Path | None, log_level: str | None) -> Settings:
    settings = Settings.from_env(store_root=store_root)
    if log_level:
        settings = replace(settings, log_level=log_level.upper())
    return settings


def _store(settings: Settings) -> RecordStore:
    return RecordStore(
        settings.store.root,
        requests_dir_name=settings.store.requests_dir_name,
        responses_dir_name=settings.store.responses_dir_name,
    )


def _sweeper(settings: Settings, store: RecordStore) -> OrphanSweeper:
    return OrphanSweeper(
        store,
        orphan_max_age_seconds=settings.store.orphan_max_age_seconds,
        stale_lock_seconds=settings.store.stale_lock_seconds,
    )


def _relay(settings: Settings, store: RecordStore) -> RelayClient:
    return RelayClient.for_store(
        store,
        timeout_seconds=settings.front.deadline_seconds,
        poll_interval_seconds=settings.front.poll_interval_seconds,
        abandon_on_timeout=settings.front.delete_request_on_timeout,
    )


def _parse_headers(values: tuple[str, ...]) -> dict[str, str | list[str]]:
    pairs: list[tuple[str, str]] = []
    for value in values:
        if ":" not in value:
            raise ValueError(f"Invalid header {value!r}. Expected format 'Name: value'.")
        name, header_value = value.split(":", 1)
        pairs.append((name.strip(), header_value.strip()))
    return group_headers(pairs)
