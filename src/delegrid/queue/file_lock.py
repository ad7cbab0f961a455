"""Exclusive sidecar lock file guarding a shared document.

The marker is a ``filelock.SoftFileLock``: created exclusively on acquire
and deleted on release. When a full acquisition wait times out and the
marker is older than the stale threshold, its holder is assumed dead; the
marker is removed and acquisition retried once.

Usage:
    with DocumentLock(Path("tasks.json.lock"), timeout_seconds=5.0):
        ...  # read-modify-write the document
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from types import TracebackType

from filelock import SoftFileLock, Timeout

from delegrid.errors import LockTimeoutError

logger = logging.getLogger(__name__)


class DocumentLock:
    """Soft lock file with bounded wait and stale-marker takeover."""

    def __init__(
        self,
        lock_path: Path,
        *,
        timeout_seconds: float = 5.0,
        retry_interval_seconds: float = 0.1,
        stale_after_seconds: float | None = None,
    ) -> None:
        """Initialize lock manager.

        Args:
            lock_path: Marker file path, usually ``<document>.lock``.
            timeout_seconds: Maximum wait before ``LockTimeoutError``.
            retry_interval_seconds: Sleep between acquisition attempts.
            stale_after_seconds: Age after which a marker is considered
                abandoned; defaults to ``timeout_seconds``.
        """

        self.lock_path = lock_path
        self.timeout_seconds = timeout_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self.stale_after_seconds = (
            stale_after_seconds if stale_after_seconds is not None else timeout_seconds
        )
        self._lock = SoftFileLock(str(lock_path), timeout=timeout_seconds)

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> None:
        """Block until the lock is held or the timeout elapses.

        Raises:
            LockTimeoutError: If another holder keeps the lock past the timeout.
        """

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(poll_interval=self.retry_interval_seconds)
            return
        except Timeout as error:
            if not self._remove_if_stale():
                raise self._timeout_error() from error
        try:
            self._lock.acquire(poll_interval=self.retry_interval_seconds)
        except Timeout as error:
            raise self._timeout_error() from error

    def release(self) -> None:
        """Release the lock; a no-op when it is not held."""

        self._lock.release()

    def _remove_if_stale(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age <= self.stale_after_seconds:
            return False
        logger.warning("Removing stale lock %s (age %.1fs)", self.lock_path, age)
        self.lock_path.unlink(missing_ok=True)
        return True

    def _timeout_error(self) -> LockTimeoutError:
        return LockTimeoutError(
            f"Timed out after {self.timeout_seconds:.1f}s waiting for lock {self.lock_path}",
        )

    def __enter__(self) -> DocumentLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
