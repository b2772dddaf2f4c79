"""Shared-folder record store: the directory is the database."""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from folder_proxy.broker.codec import (
    load_json,
    request_from_payload,
    request_to_payload,
    response_from_payload,
    response_to_payload,
    write_json_atomic,
)
from folder_proxy.broker.errors import RecordFormatError, StoreError
from folder_proxy.broker.locking import LOCK_SUFFIX, FileLock
from folder_proxy.broker.models import RequestRecord, ResponseRecord

RECORD_SUFFIX = ".json"
DONE_SUFFIX = ".done"


@dataclass(slots=True)
class StoreCounts:
    """Snapshot of what currently sits in the folder."""

    requests_by_status: dict[str, int]
    malformed_requests: int
    responses: int
    completed_responses: int
    locks: int


class RecordStore:
    """File layout and I/O for request/response records under one root.

    ``requests/<id>.json`` and ``responses/<id>.json`` hold the records,
    ``responses/<id>.json.done`` marks a response as fully written, and
    ``<record>.lock`` guards read-modify-write of a record.
    """

    def __init__(
        self,
        root: Path,
        *,
        requests_dir_name: str = "requests",
        responses_dir_name: str = "responses",
        logger: logging.Logger | None = None,
    ) -> None:
        self.root = root
        self.requests_dir = root / requests_dir_name
        self.responses_dir = root / responses_dir_name
        self.log = logger or logging.getLogger(__name__)

    # -- layout ----------------------------------------------------------------

    def initialize(self, *, reset: bool = False) -> None:
        """Create both namespaces, optionally wiping existing content first."""

        try:
            if reset:
                shutil.rmtree(self.requests_dir, ignore_errors=True)
                shutil.rmtree(self.responses_dir, ignore_errors=True)
            self.requests_dir.mkdir(parents=True, exist_ok=True)
            self.responses_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StoreError(
                message=f"Could not initialize store at {self.root}: {error}",
                code="store_init",
                path=str(self.root),
            ) from error
        self.log.info(
            "Store ready: requests=%s responses=%s reset=%s",
            self.requests_dir,
            self.responses_dir,
            reset,
        )

    def is_available(self) -> bool:
        return self.requests_dir.is_dir() and self.responses_dir.is_dir()

    def request_path(self, record_id: str) -> Path:
        return self.requests_dir / f"{record_id}{RECORD_SUFFIX}"

    def response_path(self, record_id: str) -> Path:
        return self.responses_dir / f"{record_id}{RECORD_SUFFIX}"

    def marker_path(self, record_id: str) -> Path:
        return self.responses_dir / f"{record_id}{RECORD_SUFFIX}{DONE_SUFFIX}"

    def request_lock(self, record_id: str) -> FileLock:
        return FileLock(self.request_path(record_id))

    def response_lock(self, record_id: str) -> FileLock:
        return FileLock(self.response_path(record_id))

    # -- listing ---------------------------------------------------------------

    def list_request_ids(self) -> list[str]:
        """Ids of request records in directory listing order."""

        return self._list_record_ids(self.requests_dir)

    def list_response_ids(self) -> list[str]:
        return self._list_record_ids(self.responses_dir)

    def list_lock_paths(self) -> list[Path]:
        paths: list[Path] = []
        for directory in (self.requests_dir, self.responses_dir):
            paths.extend(
                directory / name
                for name in self._list_names(directory)
                if name.endswith(LOCK_SUFFIX)
            )
        return paths

    def list_marker_ids(self) -> list[str]:
        suffix = f"{RECORD_SUFFIX}{DONE_SUFFIX}"
        return [
            name[: -len(suffix)]
            for name in self._list_names(self.responses_dir)
            if name.endswith(suffix)
        ]

    # -- requests --------------------------------------------------------------

    def create_request(self, record: RequestRecord) -> Path:
        """Publish a new request record; no lock, the id is fresh."""

        path = self.request_path(record.id)
        self._write(path, request_to_payload(record))
        return path

    def read_request(self, record_id: str) -> RequestRecord:
        """Read and validate a request record.

        Raises ``FileNotFoundError`` when absent, ``RecordFormatError`` when the
        content is malformed and ``StoreError`` on other I/O failures.
        """

        path = self.request_path(record_id)
        raw = self._load(path, record_id=record_id)
        return request_from_payload(raw, expected_id=record_id)

    def save_request(self, record: RequestRecord, *, lock: FileLock) -> None:
        """Rewrite an existing request record; caller must hold its lock."""

        self._require_lock(lock, self.request_path(record.id))
        self._write(self.request_path(record.id), request_to_payload(record))

    def delete_request(self, record_id: str, *, lock: FileLock) -> bool:
        """Remove the request record; returns False when it was already gone."""

        self._require_lock(lock, self.request_path(record_id))
        return self._unlink(self.request_path(record_id))

    def request_exists(self, record_id: str) -> bool:
        return self.request_path(record_id).exists()

    # -- responses -------------------------------------------------------------

    def write_response(self, record: ResponseRecord) -> None:
        """Write the response record, then create its completion marker.

        The marker is only created after the record has been fsynced and
        renamed into place, so its presence means the record is complete.
        """

        self._write(self.response_path(record.id), response_to_payload(record))
        self.mark_complete(record.id)

    def mark_complete(self, record_id: str) -> None:
        """Create the zero-length completion marker for a written response."""

        marker = self.marker_path(record_id)
        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            self.log.warning("Completion marker already present for %s", record_id)
            return
        except OSError as error:
            raise StoreError(
                message=f"Could not create completion marker {marker}: {error}",
                code="marker_io",
                path=str(marker),
            ) from error
        os.close(fd)

    def has_completion_marker(self, record_id: str) -> bool:
        return self.marker_path(record_id).exists()

    def response_exists(self, record_id: str) -> bool:
        return self.response_path(record_id).exists() or self.marker_path(record_id).exists()

    def read_response(self, record_id: str) -> ResponseRecord:
        """Read and validate a response record; same errors as ``read_request``."""

        raw = self._load(self.response_path(record_id), record_id=record_id)
        return response_from_payload(raw, expected_id=record_id)

    def delete_response(self, record_id: str, *, lock: FileLock) -> bool:
        """Remove the response record and its marker; idempotent."""

        self._require_lock(lock, self.response_path(record_id))
        removed_marker = self._unlink(self.marker_path(record_id))
        removed_record = self._unlink(self.response_path(record_id))
        return removed_marker or removed_record

    # -- inspection ------------------------------------------------------------

    def age_seconds(self, path: Path) -> float | None:
        try:
            return max(0.0, time.time() - path.stat().st_mtime)
        except FileNotFoundError:
            return None
        except OSError as error:
            raise StoreError(
                message=f"Could not stat {path}: {error}",
                code="store_io",
                path=str(path),
            ) from error

    def counts(self) -> StoreCounts:
        by_status: dict[str, int] = {}
        malformed = 0
        for record_id in self.list_request_ids():
            try:
                record = self.read_request(record_id)
            except FileNotFoundError:
                continue
            except RecordFormatError:
                malformed += 1
                continue
            by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
        return StoreCounts(
            requests_by_status=by_status,
            malformed_requests=malformed,
            responses=len(self.list_response_ids()),
            completed_responses=len(self.list_marker_ids()),
            locks=len(self.list_lock_paths()),
        )

    # -- internals -------------------------------------------------------------

    def _list_record_ids(self, directory: Path) -> list[str]:
        return [
            name[: -len(RECORD_SUFFIX)]
            for name in self._list_names(directory)
            if name.endswith(RECORD_SUFFIX)
        ]

    def _list_names(self, directory: Path) -> list[str]:
        try:
            return os.listdir(directory)
        except OSError as error:
            raise StoreError(
                message=f"Could not list {directory}: {error}",
                code="store_io",
                path=str(directory),
            ) from error

    def _load(self, path: Path, *, record_id: str) -> dict[str, object]:
        try:
            return load_json(path, record_id=record_id)
        except FileNotFoundError:
            raise
        except UnicodeDecodeError as error:
            raise RecordFormatError(
                message=f"{path.name} is not UTF-8: {error}",
                code="encoding_invalid",
                record_id=record_id,
            ) from error
        except OSError as error:
            raise StoreError(
                message=f"Could not read {path}: {error}",
                code="store_io",
                path=str(path),
            ) from error

    def _write(self, path: Path, payload: dict[str, object]) -> None:
        try:
            write_json_atomic(path, payload)
        except OSError as error:
            raise StoreError(
                message=f"Could not write {path}: {error}",
                code="store_io",
                path=str(path),
            ) from error

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            raise StoreError(
                message=f"Could not delete {path}: {error}",
                code="store_io",
                path=str(path),
            ) from error
        return True

    @staticmethod
    def _require_lock(lock: FileLock, target: Path) -> None:
        if not lock.held or lock.target != target:
            raise RuntimeError(f"Mutation of {target.name} requires holding its lock.")
