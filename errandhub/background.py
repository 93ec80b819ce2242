"""Background maintenance: expiry sweeps and channel provisioning/teardown."""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from errandhub.adapters.chat import ChatTransport
from errandhub.config import settings
from errandhub.dispatch import DispatchEngine
from errandhub.notifications import NotificationGateway, offer_expired_text, task_expired_text
from errandhub.services.channels import close_due_channels, provision_missing_channels
from errandhub.services.offers import expire_stale_offers
from errandhub.services.sessions import SessionStore
from errandhub.services.tasks import expire_stale_tasks

logger = logging.getLogger("errandhub.background")


async def expire_offers(session: AsyncSession) -> int:
    return len(await expire_stale_offers(session))


async def expire_tasks(session: AsyncSession, notifier: NotificationGateway) -> int:
    expired = await expire_stale_tasks(session)
    for task, rejected in expired:
        await notifier.notify(task.customer_id, task_expired_text(task))
        await notifier.notify_many(rejected, offer_expired_text(task))
    return len(expired)


async def sweep_sessions(session: AsyncSession, store: SessionStore) -> int:
    return await store.sweep_expired(session)


async def provision_channels(session: AsyncSession, transport: ChatTransport) -> int:
    return await provision_missing_channels(session, transport)


async def close_channels(session: AsyncSession, transport: ChatTransport) -> int:
    return await close_due_channels(session, transport)


async def run_maintenance(engine: DispatchEngine) -> dict[str, int]:
    """One pass over every sweep. Returns what each one did."""
    async with engine.session_factory() as session:
        return {
            "offers": await expire_offers(session),
            "tasks": await expire_tasks(session, engine.notifier),
            "sessions": await sweep_sessions(session, engine.store),
            "provisioned": await provision_channels(session, engine.transport),
            "closed": await close_channels(session, engine.transport),
        }


async def background_loop(engine: DispatchEngine) -> None:
    """Run background maintenance every ``background_interval_seconds``."""
    while True:
        try:
            counts = await run_maintenance(engine)
            if any(counts.values()):
                logger.info(
                    "BG: offers=%d, tasks=%d, sessions=%d, prov=%d, closed=%d",
                    counts["offers"],
                    counts["tasks"],
                    counts["sessions"],
                    counts["provisioned"],
                    counts["closed"],
                )
        except Exception:
            logger.exception("Background task error")
        await asyncio.sleep(settings.background_interval_seconds)
