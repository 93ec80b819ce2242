"""Channel lifecycle: the private chat bound to an accepted task.

A channel row is written inside the acceptance transaction. The chat itself
is provisioned right after commit (and re-tried by the background loop if
that fails). Once the task is completed, cancelled or disputed the channel is
scheduled for teardown after a grace period; teardown removes participants,
then deletes the chat, and gives up after a bounded number of attempts.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errandhub.adapters.chat import ChatTransport
from errandhub.config import settings
from errandhub.db_models import (
    ACTIVE_TASK_STATUSES,
    Channel,
    ChannelStatus,
    Task,
)
from errandhub.errors import ExternalServiceError
from errandhub.ids import channel_id as make_channel_id
from errandhub.notifications import channel_welcome_text
from errandhub.retry import call_external
from errandhub.utils import as_utc, iso, status_str, utcnow

logger = logging.getLogger("errandhub.channels")


def channel_to_dict(channel: Channel) -> dict:
    return {
        "id": channel.id,
        "task_id": channel.task_id,
        "customer_id": channel.customer_id,
        "worker_id": channel.worker_id,
        "external_ref": channel.external_ref,
        "status": status_str(channel.status),
        "close_after": iso(channel.close_after),
        "created_at": iso(channel.created_at),
    }


def new_channel(task: Task, worker_id: str) -> Channel:
    """Channel record for the acceptance transaction. Caller adds and commits."""
    return Channel(
        id=make_channel_id(),
        task_id=task.id,
        customer_id=task.customer_id,
        worker_id=worker_id,
    )


async def provision_channel(
    session: AsyncSession, channel: Channel, task: Task, transport: ChatTransport
) -> bool:
    """Create the chat on the transport and record its reference. Commits."""
    if channel.external_ref:
        return True
    participants = [channel.customer_id, channel.worker_id]
    try:
        ref = await call_external(
            "create_channel", transport.create_channel, f"Task {task.id}", participants
        )
        for member in participants:
            await call_external("promote_member", transport.promote_member, ref, member)
    except ExternalServiceError as exc:
        logger.error("Could not provision channel %s for task %s: %s", channel.id, task.id, exc)
        return False

    channel.external_ref = ref
    session.add(channel)
    await session.commit()
    logger.info("Provisioned channel %s as %s", channel.id, ref)

    try:
        await call_external(
            "send_message", transport.send_message, ref, channel_welcome_text(task)
        )
    except ExternalServiceError as exc:
        logger.warning("Welcome message to channel %s failed: %s", channel.id, exc)
    return True


async def schedule_close(session: AsyncSession, task_id: str) -> None:
    """Mark the task's open channel for teardown after the grace period. No commit."""
    await session.execute(
        update(Channel)
        .where(Channel.task_id == task_id, Channel.status == ChannelStatus.open)
        .values(
            status=ChannelStatus.closing,
            close_after=utcnow() + timedelta(seconds=settings.channel_close_grace_seconds),
        )
        .execution_options(synchronize_session=False)
    )


async def _release_task_channel(session: AsyncSession, channel: Channel) -> None:
    await session.execute(
        update(Task)
        .where(Task.id == channel.task_id, Task.channel_id == channel.id)
        .values(channel_id=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def close_channel(session: AsyncSession, channel: Channel, transport: ChatTransport) -> bool:
    """Tear one channel down. Returns True once it is gone. Commits."""
    now = utcnow()
    if channel.external_ref:
        try:
            for member in (channel.customer_id, channel.worker_id):
                await call_external(
                    "remove_member", transport.remove_member, channel.external_ref, member
                )
            await call_external("delete_channel", transport.delete_channel, channel.external_ref)
        except ExternalServiceError as exc:
            channel.close_attempts += 1
            if channel.close_attempts >= settings.channel_max_close_attempts:
                channel.status = ChannelStatus.abandoned
                channel.close_after = None
                await _release_task_channel(session, channel)
                logger.error(
                    "Abandoning channel %s (%s) after %d attempts: %s",
                    channel.id,
                    channel.external_ref,
                    channel.close_attempts,
                    exc,
                )
            else:
                delay = settings.channel_close_grace_seconds * (2 ** (channel.close_attempts - 1))
                channel.close_after = now + timedelta(seconds=delay)
                logger.warning(
                    "Closing channel %s failed (attempt %d), retrying in %ds",
                    channel.id,
                    channel.close_attempts,
                    delay,
                )
            session.add(channel)
            await session.commit()
            return False

    channel.status = ChannelStatus.closed
    channel.closed_at = now
    channel.close_after = None
    session.add(channel)
    await _release_task_channel(session, channel)
    await session.commit()
    logger.info("Closed channel %s for task %s", channel.id, channel.task_id)
    return True


async def close_due_channels(session: AsyncSession, transport: ChatTransport) -> int:
    now = utcnow()
    result = await session.execute(
        select(Channel).where(
            Channel.status == ChannelStatus.closing,
            Channel.close_after != None,  # noqa: E711
            Channel.close_after <= now,
        )
    )
    closed = 0
    for channel in result.scalars().all():
        if await close_channel(session, channel, transport):
            closed += 1
    return closed


async def provision_missing_channels(session: AsyncSession, transport: ChatTransport) -> int:
    """Retry chat creation for active tasks whose channel never got provisioned."""
    result = await session.execute(
        select(Channel, Task)
        .join(Task, Task.id == Channel.task_id)
        .where(
            Channel.status == ChannelStatus.open,
            Channel.external_ref == None,  # noqa: E711
            Task.status.in_(ACTIVE_TASK_STATUSES),
        )
    )
    provisioned = 0
    for channel, task in result.all():
        if await provision_channel(session, channel, task, transport):
            provisioned += 1
    return provisioned


async def get_channel_for_task(session: AsyncSession, task_id: str) -> Channel | None:
    result = await session.execute(select(Channel).where(Channel.task_id == task_id))
    channel = result.scalar_one_or_none()
    if channel is not None:
        channel.close_after = as_utc(channel.close_after)
    return channel
