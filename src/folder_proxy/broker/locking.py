"""Advisory lock markers built on exclusive file creation."""

from __future__ import annotations

import os
import time
from pathlib import Path

from folder_proxy.broker.errors import StoreError

LOCK_SUFFIX = ".lock"


def lock_path_for(target: Path) -> Path:
    """Deterministic lock marker name for ``target``."""

    return target.with_name(f"{target.name}{LOCK_SUFFIX}")


class FileLock:
    """Non-blocking lock represented by ``<target>.lock``.

    ``try_acquire`` creates the marker with ``O_CREAT | O_EXCL`` so exactly one
    caller wins; everyone else gets ``False`` and should retry on a later tick.
    The lock is only as good as its callers: every path that mutates the
    target must go through it.
    """

    def __init__(self, target: Path) -> None:
        self.target = target
        self.path = lock_path_for(target)
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        """Create the marker; return True only if this call created it."""

        if self._held:
            return True
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as error:
            raise StoreError(
                message=f"Could not create lock {self.path}: {error}",
                code="lock_io",
                path=str(self.path),
            ) from error
        try:
            os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        finally:
            os.close(fd)
        self._held = True
        return True

    def release(self) -> None:
        """Delete the marker; an already-missing marker is fine."""

        self._held = False
        try:
            self.path.unlink(missing_ok=True)
        except OSError as error:
            raise StoreError(
                message=f"Could not remove lock {self.path}: {error}",
                code="lock_io",
                path=str(self.path),
            ) from error

    def age_seconds(self) -> float | None:
        """Seconds since the marker was created, or None when absent."""

        try:
            return max(0.0, time.time() - self.path.stat().st_mtime)
        except FileNotFoundError:
            return None
