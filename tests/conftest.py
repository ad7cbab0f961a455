"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from delegrid.queue.document_store import DocumentTaskQueue
from delegrid.queue.sql_store import SqlTaskQueue
from delegrid.registry.repository import WorkerRegistry


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "delegrid.db"


@pytest.fixture()
def sql_queue(db_path: Path) -> Iterator[SqlTaskQueue]:
    queue = SqlTaskQueue(db_path, max_retries=2)
    queue.init_schema()
    yield queue
    queue.close()


@pytest.fixture()
def document_queue(tmp_path: Path) -> Iterator[DocumentTaskQueue]:
    queue = DocumentTaskQueue(tmp_path / "tasks.json", max_retries=2)
    queue.init_schema()
    yield queue
    queue.close()


@pytest.fixture(params=["sqlite", "document"])
def any_queue(request, sql_queue, document_queue):
    """Run a test once per queue backend."""

    return sql_queue if request.param == "sqlite" else document_queue


@pytest.fixture()
def registry(db_path: Path) -> Iterator[WorkerRegistry]:
    repository = WorkerRegistry(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def clean_env(monkeypatch):
    """Drop DELEGRID_* variables inherited from the developer shell."""

    for key in list(os.environ):
        if key.startswith("DELEGRID_"):
            monkeypatch.delenv(key, raising=False)
