"""Periodic cleanup of orphaned records and abandoned lock markers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from folder_proxy.broker.errors import RecordFormatError, StoreError
from folder_proxy.broker.store import RecordStore

DEFAULT_ORPHAN_MAX_AGE_SECONDS = 300.0
DEFAULT_STALE_LOCK_SECONDS = 120.0


@dataclass(slots=True)
class SweepReport:
    """What one sweep removed."""

    stale_locks: list[str] = field(default_factory=list)
    stale_requests: list[str] = field(default_factory=list)
    orphan_responses: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.stale_locks) + len(self.stale_requests) + len(self.orphan_responses)


class OrphanSweeper:
    """Removes leftovers of exchanges nobody will finish or collect.

    - lock markers older than ``stale_lock_seconds`` (their owner crashed);
    - request records that are terminal or unparseable and older than
      ``orphan_max_age_seconds`` (their front timed out);
    - response records whose request is gone and that are older than
      ``orphan_max_age_seconds``.

    Pending and claimed requests are never touched.  Records are deleted under
    their lock, like any other mutation.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        orphan_max_age_seconds: float = DEFAULT_ORPHAN_MAX_AGE_SECONDS,
        stale_lock_seconds: float = DEFAULT_STALE_LOCK_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.orphan_max_age_seconds = orphan_max_age_seconds
        self.stale_lock_seconds = stale_lock_seconds
        self.log = logger or logging.getLogger(__name__)

    def sweep(self) -> SweepReport:
        report = SweepReport()
        self._sweep_locks(report)
        self._sweep_requests(report)
        self._sweep_responses(report)
        if report.total:
            self.log.warning(
                "Sweep removed locks=%d requests=%d responses=%d",
                len(report.stale_locks),
                len(report.stale_requests),
                len(report.orphan_responses),
            )
        return report

    def _sweep_locks(self, report: SweepReport) -> None:
        for path in self.store.list_lock_paths():
            age = self.store.age_seconds(path)
            if age is None or age <= self.stale_lock_seconds:
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as error:
                self.log.warning("Could not remove stale lock %s: %s", path, error)
                continue
            report.stale_locks.append(path.name)

    def _sweep_requests(self, report: SweepReport) -> None:
        for record_id in self.store.list_request_ids():
            age = self.store.age_seconds(self.store.request_path(record_id))
            if age is None or age <= self.orphan_max_age_seconds:
                continue
            lock = self.store.request_lock(record_id)
            if not lock.try_acquire():
                continue
            try:
                try:
                    record = self.store.read_request(record_id)
                except FileNotFoundError:
                    continue
                except RecordFormatError:
                    record = None
                if record is not None and not record.status.is_terminal:
                    continue
                if self.store.delete_request(record_id, lock=lock):
                    report.stale_requests.append(record_id)
            except StoreError as error:
                self.log.warning("Could not sweep request %s: %s", record_id, error)
            finally:
                lock.release()

    def _sweep_responses(self, report: SweepReport) -> None:
        candidates = dict.fromkeys(self.store.list_response_ids())
        candidates.update(dict.fromkeys(self.store.list_marker_ids()))
        for record_id in candidates:
            if self.store.request_exists(record_id):
                continue
            ages = [
                self.store.age_seconds(self.store.response_path(record_id)),
                self.store.age_seconds(self.store.marker_path(record_id)),
            ]
            known = [age for age in ages if age is not None]
            if not known or max(known) <= self.orphan_max_age_seconds:
                continue
            lock = self.store.response_lock(record_id)
            if not lock.try_acquire():
                continue
            try:
                if self.store.delete_response(record_id, lock=lock):
                    report.orphan_responses.append(record_id)
            except StoreError as error:
                self.log.warning("Could not sweep response %s: %s", record_id, error)
            finally:
                lock.release()
