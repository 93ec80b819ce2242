"""Alembic environment for ErrandHub.

At application startup ``errandhub.database`` hands over its live connection
through ``config.attributes``; from the command line a synchronous engine is
built from alembic.ini or, failing that, from the application settings.
SQLite needs batch mode for ALTER TABLE.
"""

from __future__ import annotations

import logging
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from errandhub.db_models import *  # noqa: F401, F403 (registers all tables)

logger = logging.getLogger("alembic.env")

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def _sync_url() -> str:
    from errandhub.config import settings

    url = settings.database_url
    if "://" not in url:
        return f"sqlite:///{url}"
    return url.replace("+aiosqlite", "").replace("+asyncpg", "+psycopg")


def _configure(**kwargs) -> None:
    url = str(kwargs.get("url") or kwargs["connection"].engine.url)
    context.configure(
        target_metadata=target_metadata,
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL without a database connection."""
    _configure(
        url=config.get_main_option("sqlalchemy.url") or _sync_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
        return

    if not config.get_main_option("sqlalchemy.url"):
        config.set_main_option("sqlalchemy.url", _sync_url())
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as conn:
        _configure(connection=conn)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
