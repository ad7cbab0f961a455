"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from delegrid.storage.common import build_sqlite_engine

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"
HEAD_REVISION = "20261018_0003"


def upgrade_head(db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
    """Apply Alembic migrations up to head for the given SQLite database.

    The migration runs on a connection opened with the shared engine policy,
    so concurrent callers serialize on the database write lock.
    """

    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        with engine.begin() as connection:
            config.attributes["connection"] = connection
            command.upgrade(config, "head")
    finally:
        engine.dispose()
