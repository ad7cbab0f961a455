"""Alembic environment for the delegrid schema."""

from __future__ import annotations

from alembic import context
from sqlalchemy import create_engine, pool
from sqlmodel import SQLModel

from delegrid.storage import sqlmodel_models  # noqa: F401

config = context.config
target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    """Emit migration SQL for the configured URL without connecting."""

    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations on a caller-supplied connection, or open one from the URL."""

    connection = config.attributes.get("connection")
    if connection is not None:
        _run_with_connection(connection)
        return

    url = config.get_main_option("sqlalchemy.url")
    if url is None:
        raise RuntimeError("sqlalchemy.url is not configured for migrations.")
    engine = create_engine(url, poolclass=pool.NullPool)
    try:
        with engine.connect() as fresh_connection:
            _run_with_connection(fresh_connection)
            fresh_connection.commit()
    finally:
        engine.dispose()


def _run_with_connection(connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
