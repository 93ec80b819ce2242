"""Channel provisioning and teardown."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from errandhub.config import settings
from errandhub.db_models import Channel, ChannelStatus, Task
from errandhub.errors import PermanentServiceError, TransientServiceError
from errandhub.services.channels import (
    close_due_channels,
    get_channel_for_task,
    provision_missing_channels,
)
from errandhub.utils import as_utc, utcnow
from tests.conftest import add_task, add_worker


async def _accept(db, engine) -> Task:
    await add_worker(db, "rider-1")
    task = await add_task(db)
    offer = await engine.submit_offer("rider-1", task.id, 500, "motorcycle")
    await engine.accept_offer("cust-1", offer["id"])
    return task


async def _channel(db, task_id: str) -> Channel:
    async with db() as session:
        return await get_channel_for_task(session, task_id)


async def _make_due(db, task_id: str) -> None:
    async with db() as session:
        await session.execute(
            update(Channel)
            .where(Channel.task_id == task_id)
            .values(close_after=utcnow() - timedelta(seconds=1))
        )
        await session.commit()


async def _close_due(db, transport) -> int:
    async with db() as session:
        return await close_due_channels(session, transport)


@pytest.mark.asyncio
async def test_acceptance_provisions_chat(db, engine, transport):
    task = await _accept(db, engine)

    channel = await _channel(db, task.id)
    assert channel.status == ChannelStatus.open
    assert channel.external_ref == "chat-1"
    assert sorted(user for _, user in transport.promoted) == ["cust-1", "rider-1"]
    welcome = transport.texts_to("chat-1")
    assert len(welcome) == 1
    assert "/completed" in welcome[0]


@pytest.mark.asyncio
async def test_transient_create_failure_is_retried(db, engine, transport):
    transport.fail("create_channel", TransientServiceError("429"))
    task = await _accept(db, engine)

    assert transport.calls["create_channel"] == 2
    assert (await _channel(db, task.id)).external_ref == "chat-1"


@pytest.mark.asyncio
async def test_background_provisions_missing_chat(db, engine, transport):
    transport.fail("create_channel", PermanentServiceError("403"))
    task = await _accept(db, engine)
    assert (await _channel(db, task.id)).external_ref is None

    async with db() as session:
        assert await provision_missing_channels(session, transport) == 1
    async with db() as session:
        assert await provision_missing_channels(session, transport) == 0
    assert (await _channel(db, task.id)).external_ref == "chat-1"


@pytest.mark.asyncio
async def test_channel_waits_for_grace_period(db, engine, transport):
    task = await _accept(db, engine)
    await engine.confirm_in_progress("rider-1", task.id)
    await engine.mark_completed("cust-1", task.id)

    channel = await _channel(db, task.id)
    assert channel.status == ChannelStatus.closing
    grace = as_utc(channel.close_after) - utcnow()
    assert timedelta(seconds=settings.channel_close_grace_seconds - 5) < grace

    assert await _close_due(db, transport) == 0
    assert transport.deleted == []


@pytest.mark.asyncio
async def test_close_removes_members_then_deletes(db, engine, transport):
    task = await _accept(db, engine)
    await engine.raise_dispute("cust-1", task.id, "No show")
    await _make_due(db, task.id)

    assert await _close_due(db, transport) == 1

    assert transport.calls["remove_member"] == 2
    assert transport.deleted == ["chat-1"]
    channel = await _channel(db, task.id)
    assert channel.status == ChannelStatus.closed
    assert channel.closed_at is not None
    async with db() as session:
        assert (await session.get(Task, task.id)).channel_id is None

    # Nothing left to do on the next pass
    assert await _close_due(db, transport) == 0


@pytest.mark.asyncio
async def test_failed_close_backs_off(db, engine, transport):
    task = await _accept(db, engine)
    await engine.raise_dispute("rider-1", task.id)
    await _make_due(db, task.id)
    grace = settings.channel_close_grace_seconds

    transport.fail("delete_channel", PermanentServiceError("500"))
    assert await _close_due(db, transport) == 0
    channel = await _channel(db, task.id)
    assert channel.status == ChannelStatus.closing
    assert channel.close_attempts == 1
    first_delay = as_utc(channel.close_after) - utcnow()
    assert timedelta(seconds=grace - 5) < first_delay <= timedelta(seconds=grace)

    await _make_due(db, task.id)
    transport.fail("delete_channel", PermanentServiceError("500"))
    assert await _close_due(db, transport) == 0
    channel = await _channel(db, task.id)
    assert channel.close_attempts == 2
    second_delay = as_utc(channel.close_after) - utcnow()
    assert second_delay > timedelta(seconds=2 * grace - 5)

    await _make_due(db, task.id)
    assert await _close_due(db, transport) == 1
    assert (await _channel(db, task.id)).status == ChannelStatus.closed


@pytest.mark.asyncio
async def test_close_abandoned_after_max_attempts(db, engine, transport, monkeypatch, caplog):
    monkeypatch.setattr(settings, "channel_max_close_attempts", 2)
    task = await _accept(db, engine)
    await engine.raise_dispute("cust-1", task.id)

    for _ in range(2):
        await _make_due(db, task.id)
        transport.fail("remove_member", PermanentServiceError("500"))
        assert await _close_due(db, transport) == 0

    channel = await _channel(db, task.id)
    assert channel.status == ChannelStatus.abandoned
    assert channel.close_after is None
    assert "Abandoning channel" in caplog.text
    async with db() as session:
        assert (await session.get(Task, task.id)).channel_id is None

    # Never picked up again
    assert await _close_due(db, transport) == 0
    assert transport.calls["remove_member"] == 2
