"""Startup schema handling on a real SQLite file."""

import pytest
from sqlalchemy import text
from sqlmodel import SQLModel

from errandhub.database import (
    CURRENT,
    STAMP,
    UPGRADE,
    close_db,
    get_session_factory,
    init_db,
    make_engine,
    plan_migration,
    resolve_url,
)


def test_resolve_url_accepts_bare_paths(tmp_path):
    path = tmp_path / "nested" / "errandhub.db"
    assert resolve_url(str(path)) == f"sqlite+aiosqlite:///{path}"
    assert path.parent.is_dir()
    assert resolve_url("postgresql+asyncpg://db/errandhub") == "postgresql+asyncpg://db/errandhub"


@pytest.mark.parametrize(
    "tables, current, expected",
    [
        (set(), None, UPGRADE),
        ({"tasks", "offers"}, None, STAMP),
        ({"alembic_version", "tasks"}, "001", CURRENT),
        ({"alembic_version"}, None, UPGRADE),
    ],
)
def test_plan_migration(tables, current, expected):
    assert plan_migration(tables, current, "001") == expected


@pytest.mark.asyncio
async def test_fresh_database_is_migrated_once(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}"
    try:
        assert await init_db(url) == UPGRADE
        async with get_session_factory()() as session:
            tables = await session.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'table'")
            )
            assert {"workers", "tasks", "offers", "channels"} <= set(tables.scalars().all())
            assert (await session.execute(text("PRAGMA foreign_keys"))).scalar_one() == 1
        await close_db()

        assert await init_db(url) == CURRENT
    finally:
        await close_db()


@pytest.mark.asyncio
async def test_untracked_schema_is_stamped(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}"
    engine = make_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    await engine.dispose()

    try:
        assert await init_db(url) == STAMP
        async with get_session_factory()() as session:
            version = await session.execute(text("SELECT version_num FROM alembic_version"))
            assert version.scalar_one() == "001"
    finally:
        await close_db()
