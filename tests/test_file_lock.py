from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import allure
import pytest

from delegrid.errors import LockTimeoutError
from delegrid.queue.file_lock import DocumentLock

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Document Lock"),
]


def test_lock_creates_marker_and_releases(tmp_path: Path) -> None:
    lock = DocumentLock(tmp_path / "nested" / "tasks.json.lock")
    with lock:
        assert lock.is_locked
        assert lock.lock_path.exists()
    assert not lock.is_locked
    assert not lock.lock_path.exists()
    lock.release()


def test_second_holder_times_out(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json.lock"
    holder = DocumentLock(path, timeout_seconds=30.0)
    contender = DocumentLock(
        path,
        timeout_seconds=0.3,
        retry_interval_seconds=0.05,
        stale_after_seconds=60.0,
    )
    with holder:
        started = time.monotonic()
        with pytest.raises(LockTimeoutError, match="waiting for lock"):
            contender.acquire()
        assert time.monotonic() - started >= 0.3
        assert path.exists()


def test_stale_marker_is_removed(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json.lock"
    path.write_text("abandoned", encoding="utf-8")
    old = time.time() - 120
    os.utime(path, (old, old))

    lock = DocumentLock(
        path,
        timeout_seconds=0.2,
        retry_interval_seconds=0.05,
        stale_after_seconds=10.0,
    )
    lock.acquire()
    assert lock.is_locked
    assert path.stat().st_mtime > old
    lock.release()
    assert not path.exists()


def test_waiter_gets_lock_after_release(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json.lock"
    holder = DocumentLock(path)
    holder.acquire()
    acquired = threading.Event()

    def _wait() -> None:
        with DocumentLock(path, timeout_seconds=5.0, retry_interval_seconds=0.01):
            acquired.set()

    thread = threading.Thread(target=_wait)
    thread.start()
    time.sleep(0.1)
    assert not acquired.is_set()
    holder.release()
    thread.join(timeout=5)
    assert acquired.is_set()
