"""Alembic environment for gigledger.

At start-up `gigledger.database` hands over its own connection; the CLI path
(`alembic upgrade head`) builds a sync engine from the app settings instead.
Batch mode keeps SQLite ALTER TABLE limitations out of the migration files.
"""

from __future__ import annotations

import logging
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from gigledger.db_models import *  # noqa: F401, F403 (registers all tables)

logger = logging.getLogger("alembic.env")

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, render_as_batch=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


def _sync_url() -> str:
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    from gigledger.database import database_url

    return database_url().replace("+aiosqlite", "")


def run_migrations_offline() -> None:
    """Emit the migration SQL instead of executing it."""
    _configure(url=_sync_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})


def run_migrations_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        _configure(connection=connection)
        return

    config.set_main_option("sqlalchemy.url", _sync_url())
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection=connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
