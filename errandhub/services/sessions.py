"""Session store: ephemeral, single-owner conversation state with a TTL.

Rows live in ``conversation_sessions`` so every process instance sees the
same state. Methods never commit; the caller decides the transaction, which
lets the final step delete the session and write its result atomically.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from errandhub.config import settings
from errandhub.db_models import ConversationSession
from errandhub.errors import PreconditionError
from errandhub.flows import FlowState, flow_state_adapter
from errandhub.utils import as_utc, utcnow

logger = logging.getLogger("errandhub.sessions")

NO_ACTIVE_SESSION = "No active session. Start again to continue."


@dataclass
class ActiveSession:
    owner_id: str
    state: FlowState
    step: str
    created_at: datetime
    expires_at: datetime

    @property
    def flow(self) -> str:
        return self.state.flow


class SessionStore:
    def __init__(self, ttl_seconds: int | None = None):
        self._ttl_seconds = ttl_seconds

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._ttl_seconds or settings.session_ttl_seconds)

    async def get(self, session: AsyncSession, owner_id: str) -> ActiveSession | None:
        """Return the owner's live session; an expired one is discarded."""
        row = await session.get(ConversationSession, owner_id, populate_existing=True)
        if row is None:
            return None
        expires_at = as_utc(row.expires_at)
        if expires_at < utcnow():
            await session.delete(row)
            await session.flush()
            logger.info("Session for %s expired (%s)", owner_id, row.flow)
            return None
        return ActiveSession(
            owner_id=row.owner_id,
            state=flow_state_adapter.validate_json(row.data),
            step=row.step,
            created_at=as_utc(row.created_at),
            expires_at=expires_at,
        )

    async def create(
        self, session: AsyncSession, owner_id: str, state: FlowState, step: str
    ) -> ActiveSession:
        """Start a session, replacing any expired leftover for the owner."""
        await session.execute(
            delete(ConversationSession).where(ConversationSession.owner_id == owner_id)
        )
        now = utcnow()
        row = ConversationSession(
            owner_id=owner_id,
            flow=state.flow,
            step=step,
            data=state.model_dump_json(),
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
        )
        session.add(row)
        await session.flush()
        return ActiveSession(owner_id, state, step, now, row.expires_at)

    async def save(
        self, session: AsyncSession, owner_id: str, state: FlowState, step: str
    ) -> datetime:
        """Advance a live session and refresh its expiry.

        The write is conditional on the row still being live, so a concurrent
        sweep can never be resurrected by a late update.
        """
        now = utcnow()
        expires_at = now + self.ttl
        result = await session.execute(
            update(ConversationSession)
            .where(
                ConversationSession.owner_id == owner_id,
                ConversationSession.expires_at >= now,
            )
            .values(
                step=step,
                data=state.model_dump_json(),
                updated_at=now,
                expires_at=expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise PreconditionError(NO_ACTIVE_SESSION)
        return expires_at

    async def delete(self, session: AsyncSession, owner_id: str) -> bool:
        result = await session.execute(
            delete(ConversationSession)
            .where(ConversationSession.owner_id == owner_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def sweep_expired(self, session: AsyncSession) -> int:
        """Delete every expired session. Idempotent; commits."""
        result = await session.execute(
            delete(ConversationSession)
            .where(ConversationSession.expires_at < utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount
