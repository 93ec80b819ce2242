"""Async engine, schema migrations and sessions.

SQLite is the default store. Offer acceptance and the last step of a flow
lean on its write lock to serialise concurrent writers, so every connection
waits out a busy database instead of failing with "database is locked".
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from pathlib import Path

import sqlalchemy
from alembic import command
from alembic.config import Config
from alembic.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from errandhub.config import settings
from errandhub.db_models import (  # noqa: F401 (registers tables)
    Channel,
    ConversationSession,
    Offer,
    Rating,
    Task,
    TaskCandidate,
    Worker,
)

logger = logging.getLogger("errandhub.database")

_engine: AsyncEngine | None = None
_session_factory: sessionmaker | None = None

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

# What startup does to the schema
UPGRADE = "upgrade"
STAMP = "stamp"
CURRENT = "current"


def resolve_url(raw: str) -> str:
    """Accept a bare SQLite file path as well as a full async URL."""
    if "://" in raw:
        return raw
    Path(raw).parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{raw}"


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def make_engine(url: str) -> AsyncEngine:
    if not is_sqlite(url):
        return create_async_engine(url, pool_pre_ping=True)

    engine = create_async_engine(
        url,
        connect_args={
            "check_same_thread": False,
            "timeout": settings.database_busy_timeout_seconds,
        },
    )

    # Foreign keys are a per-connection setting in SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_conn, _record) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def plan_migration(tables: set[str], current_rev: str | None, head_rev: str | None) -> str:
    """Decide what startup does to the schema.

    A database built by ``create_all`` has the tables but no Alembic
    tracking, so it is stamped at head. Anything else is upgraded unless it
    already sits at head.
    """
    if "alembic_version" not in tables:
        return STAMP if "tasks" in tables else UPGRADE
    return CURRENT if current_rev == head_rev else UPGRADE


def _migrate(sync_conn) -> str:
    cfg = Config()
    cfg.set_main_option("script_location", str(_MIGRATIONS_DIR))
    cfg.attributes["connection"] = sync_conn

    tables = set(sqlalchemy.inspect(sync_conn).get_table_names())
    current_rev = MigrationContext.configure(sync_conn).get_current_revision()
    head_rev = ScriptDirectory.from_config(cfg).get_current_head()

    action = plan_migration(tables, current_rev, head_rev)
    if action == STAMP:
        logger.info("Untracked schema found, stamping revision %s", head_rev)
        command.stamp(cfg, "head")
    elif action == UPGRADE:
        logger.info("Migrating schema from %s to %s", current_rev or "(empty)", head_rev)
        command.upgrade(cfg, "head")
    else:
        logger.debug("Schema is current at revision %s", current_rev)
    return action


async def init_db(url: str) -> str:
    """Open the engine and bring the schema to head. Returns the action taken."""
    global _engine, _session_factory
    _engine = make_engine(url)
    _session_factory = sessionmaker(  # type: ignore[call-overload]
        _engine, class_=AsyncSession, expire_on_commit=False
    )

    async with _engine.begin() as conn:
        if is_sqlite(url):
            await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
        # Alembic's command API is synchronous
        return await conn.run_sync(_migrate)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    assert _session_factory is not None, "Database not initialised, call init_db() first"
    async with _session_factory() as session:
        yield session


def get_session_factory() -> sessionmaker:
    assert _session_factory is not None, "Database not initialised, call init_db() first"
    return _session_factory
