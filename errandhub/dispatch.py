"""Dispatch engine: the operations exposed to the command-routing layer.

Each public coroutine opens its own database session, runs the relevant
service functions, commits, and only then sends notifications. Business-rule
failures surface as ``DispatchError`` subclasses and leave durable state
untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from errandhub.adapters.chat import ChatTransport
from errandhub.adapters.geocoding import DistanceProvider, Geocoder
from errandhub.adapters.identity import IdentityVerifier
from errandhub.config import settings
from errandhub.db_models import OPEN_TASK_STATUSES, TaskKind, TaskStatus, WorkerRole
from errandhub.errors import (
    ExternalServiceError,
    PreconditionError,
    UnauthorizedError,
    ValidationError,
)
from errandhub.flows import (
    FLOW_RATING,
    FLOW_REGISTRATION,
    FLOW_TASK_CREATION,
    PROMPTS,
    FlowState,
    RatingState,
    RegistrationState,
    StepInput,
    TaskCreationState,
    apply_step,
    next_step,
    parse_step,
    steps_for,
)
from errandhub.geo import Coordinate
from errandhub.notifications import (
    NotificationGateway,
    completed_text,
    customer_accepted_text,
    dispute_resolved_text,
    dispute_text,
    in_progress_text,
    new_task_text,
    no_workers_text,
    offer_accept_options,
    offer_accepted_text,
    offer_buttons,
    offer_received_text,
    offer_rejected_text,
    task_cancelled_text,
)
from errandhub.retry import call_external
from errandhub.services import channels as channel_service
from errandhub.services import offers as offer_service
from errandhub.services import ratings as rating_service
from errandhub.services import tasks as task_service
from errandhub.services import workers as worker_service
from errandhub.services.geosearch import Geosearch, SearchResult, role_for_kind
from errandhub.services.sessions import NO_ACTIVE_SESSION, ActiveSession, SessionStore
from errandhub.utils import iso, status_str

logger = logging.getLogger("errandhub.dispatch")


@dataclass
class FlowReply:
    """What the routing layer shows the user after a flow call."""

    flow: str
    step: str | None
    prompt: str | None = None
    done: bool = False
    resumed: bool = False
    expires_at: datetime | None = None
    result: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "flow": self.flow,
            "step": self.step,
            "prompt": self.prompt,
            "done": self.done,
            "resumed": self.resumed,
            "expires_at": iso(self.expires_at),
            "result": self.result,
        }


def _reply_for(active: ActiveSession, resumed: bool = False) -> FlowReply:
    return FlowReply(
        flow=active.flow,
        step=active.step,
        prompt=PROMPTS[active.step],
        resumed=resumed,
        expires_at=active.expires_at,
    )


class DispatchEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        geocoder: Geocoder,
        distance: DistanceProvider,
        identity: IdentityVerifier,
        transport: ChatTransport,
        store: SessionStore | None = None,
    ):
        self.session_factory = session_factory
        self.geocoder = geocoder
        self.identity = identity
        self.transport = transport
        self.geosearch = Geosearch(distance)
        self.notifier = NotificationGateway(transport)
        self.store = store or SessionStore()

    # ------------------------------------------------------------------
    # Conversation flows
    # ------------------------------------------------------------------

    async def start_flow(
        self,
        owner_id: str,
        flow: str,
        *,
        kind: TaskKind | None = None,
        role: WorkerRole | None = None,
        task_id: str | None = None,
    ) -> FlowReply:
        """Open a multi-step session for ``owner_id``.

        If one is already live the configured policy decides: ``reject``
        raises, ``resume`` hands back the live session unchanged.
        """
        async with self.session_factory() as session:
            active = await self.store.get(session, owner_id)
            if active is not None:
                await session.commit()
                if settings.flow_conflict_policy == "resume":
                    return _reply_for(active, resumed=True)
                raise PreconditionError(
                    f"A {active.flow.replace('_', ' ')} flow is already in progress. "
                    "Finish it or cancel it first."
                )

            state = await self._initial_state(session, owner_id, flow, kind, role, task_id)
            active = await self.store.create(session, owner_id, state, steps_for(state)[0])
            await session.commit()
        logger.info("Started %s flow for %s", flow, owner_id)
        return _reply_for(active)

    async def _initial_state(
        self,
        session: AsyncSession,
        owner_id: str,
        flow: str,
        kind: TaskKind | None,
        role: WorkerRole | None,
        task_id: str | None,
    ) -> FlowState:
        if flow == FLOW_TASK_CREATION:
            if kind is None:
                raise ValidationError("Choose delivery or errand")
            await task_service.ensure_can_post(session, owner_id)
            return TaskCreationState(kind=kind)
        if flow == FLOW_REGISTRATION:
            if role is None:
                raise ValidationError("Choose rider or errander")
            await worker_service.ensure_not_registered(session, owner_id)
            return RegistrationState(role=role)
        if flow == FLOW_RATING:
            if not task_id:
                raise ValidationError("Which task do you want to rate?")
            task = await rating_service.ensure_rateable(session, owner_id, task_id)
            return RatingState(task_id=task.id, worker_id=task.assigned_worker_id)
        raise ValidationError(f"Unknown flow {flow!r}")

    async def submit_step(self, owner_id: str, step_input: StepInput) -> FlowReply:
        """Validate one reply against the current step and advance the session.

        Invalid input raises ``ValidationError`` and leaves the session where
        it was. The final step commits the collected data and ends the session.
        """
        async with self.session_factory() as session:
            active = await self.store.get(session, owner_id)
            if active is None:
                await session.commit()
                raise PreconditionError(NO_ACTIVE_SESSION)

            value = await parse_step(active.state, active.step, step_input, self.geocoder)
            state = apply_step(active.state, active.step, value)
            upcoming = next_step(state, active.step)
            if upcoming is not None:
                expires_at = await self.store.save(session, owner_id, state, upcoming)
                await session.commit()
                return FlowReply(
                    flow=state.flow, step=upcoming, prompt=PROMPTS[upcoming], expires_at=expires_at
                )

            if isinstance(state, TaskCreationState):
                return await self._finish_task_creation(session, owner_id, state)
            if isinstance(state, RegistrationState):
                return await self._finish_registration(session, owner_id, state)
            return await self._finish_rating(session, owner_id, state)

    async def _end_session(self, session: AsyncSession, owner_id: str) -> None:
        """Claim the final step by deleting the session row.

        Of two concurrent submissions only one deletes it; the other writes
        nothing and sees ``NO_ACTIVE_SESSION``.
        """
        if not await self.store.delete(session, owner_id):
            await session.rollback()
            raise PreconditionError(NO_ACTIVE_SESSION)

    async def _finish_task_creation(
        self, session: AsyncSession, owner_id: str, state: TaskCreationState
    ) -> FlowReply:
        await self._end_session(session, owner_id)
        task = await task_service.create_task(session, owner_id, state)
        await session.commit()
        task_id = task.id

        result: dict = {"task": task_service.task_to_dict(task)}
        try:
            search = await self.dispatch_task(task_id)
            result["search"] = search.to_dict()
        except ExternalServiceError as exc:
            # The task stays pending; the customer can trigger a new search
            logger.error("Search for new task %s failed: %s", task_id, exc)
            result["search"] = None
        return FlowReply(flow=FLOW_TASK_CREATION, step=None, done=True, result=result)

    async def _finish_registration(
        self, session: AsyncSession, owner_id: str, state: RegistrationState
    ) -> FlowReply:
        # On provider failure the session stays on its last step so the user can resend
        check = await call_external(
            "verify_identity", self.identity.verify_identity, state.national_id, state.full_name
        )
        await self._end_session(session, owner_id)
        worker = await worker_service.register_worker(session, owner_id, state, check)
        await session.commit()

        if check.accepted:
            text = f"Welcome aboard, {worker.full_name}! You are verified as a {state.role.value}."
        else:
            text = f"We could not verify your identity: {worker.rejection_reason}"
        await self.notifier.notify(owner_id, text)
        return FlowReply(
            flow=FLOW_REGISTRATION,
            step=None,
            done=True,
            result={"worker": worker_service.worker_to_dict(worker)},
        )

    async def _finish_rating(
        self, session: AsyncSession, owner_id: str, state: RatingState
    ) -> FlowReply:
        await self._end_session(session, owner_id)
        try:
            rating = await rating_service.rate_worker(
                session, owner_id, state.task_id, state.score, state.comment
            )
        except PreconditionError:
            # One shot: a rejected rating ends the session too
            await session.rollback()
            await self.store.delete(session, owner_id)
            await session.commit()
            raise
        await session.commit()
        return FlowReply(
            flow=FLOW_RATING,
            step=None,
            done=True,
            result={"rating": rating_service.rating_to_dict(rating)},
        )

    async def cancel_flow(self, owner_id: str) -> bool:
        """Drop the owner's session at any step. No-op when there is none."""
        async with self.session_factory() as session:
            removed = await self.store.delete(session, owner_id)
            await session.commit()
        if removed:
            logger.info("Cancelled flow for %s", owner_id)
        return removed

    async def get_flow(self, owner_id: str) -> FlowReply:
        async with self.session_factory() as session:
            active = await self.store.get(session, owner_id)
            await session.commit()
        if active is None:
            raise PreconditionError(NO_ACTIVE_SESSION)
        return _reply_for(active)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def find_candidates(
        self, center: Coordinate, role: WorkerRole, exclude: frozenset[str] = frozenset()
    ) -> SearchResult:
        if not center.is_valid():
            raise ValidationError("That location is outside the valid coordinate range.")
        async with self.session_factory() as session:
            return await self.geosearch.find_candidates(session, center, role, exclude)

    async def dispatch_task(self, task_id: str, caller_id: str | None = None) -> SearchResult:
        """Search around an open task and notify workers not yet told about it.

        With ``caller_id`` set this is a customer asking for a new search.
        """
        async with self.session_factory() as session:
            task = await task_service.get_task(session, task_id)
            if caller_id is not None and task.customer_id != caller_id:
                raise UnauthorizedError("Only the customer can search again for this task")
            if status_str(task.status) not in {s.value for s in OPEN_TASK_STATUSES}:
                raise PreconditionError(
                    f"Task is {status_str(task.status)}, only open tasks can be searched for"
                )

            search = await self.geosearch.find_candidates(
                session,
                task_service.search_center(task),
                role_for_kind(task.kind),
                exclude=frozenset({task.customer_id}),
            )
            fresh = set(await task_service.record_search(session, task, search))

        if not search.found:
            await self.notifier.notify(task.customer_id, no_workers_text(task))
            return search

        for candidate in search.candidates:
            if candidate.worker_id in fresh:
                await self.notifier.notify(
                    candidate.worker_id,
                    new_task_text(task, candidate.distance_km),
                    offer_buttons(task),
                )
        return search

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def submit_offer(
        self, worker_id: str, task_id: str, price: int, vehicle_type: str | None = None
    ) -> dict:
        async with self.session_factory() as session:
            offer, task = await offer_service.submit_offer(
                session, worker_id, task_id, price, vehicle_type
            )
            worker = await worker_service.get_worker(session, worker_id)

        await self.notifier.notify(
            task.customer_id,
            offer_received_text(
                offer, worker.full_name, worker.rating_aggregate, worker.review_count
            ),
            offer_accept_options(offer),
        )
        return offer_service.offer_to_dict(offer)

    async def list_offers(self, customer_id: str, task_id: str) -> list[dict]:
        async with self.session_factory() as session:
            return await offer_service.list_offers(session, customer_id, task_id)

    async def accept_offer(self, customer_id: str, offer_id: str) -> dict:
        async with self.session_factory() as session:
            acceptance = await offer_service.accept_offer(session, customer_id, offer_id)
            task = acceptance.task
            await channel_service.provision_channel(
                session, acceptance.channel, task, self.transport
            )

        await self.notifier.notify(acceptance.worker.id, offer_accepted_text(task))
        await self.notifier.notify_many(acceptance.rejected_worker_ids, offer_rejected_text(task))
        await self.notifier.notify(
            customer_id,
            customer_accepted_text(
                task, acceptance.worker.full_name, acceptance.channel.external_ref
            ),
        )
        return {
            "task": task_service.task_to_dict(task),
            "offer": offer_service.offer_to_dict(acceptance.offer),
            "channel": channel_service.channel_to_dict(acceptance.channel),
            "rejected_worker_ids": acceptance.rejected_worker_ids,
        }

    # ------------------------------------------------------------------
    # Progress, completion, rating
    # ------------------------------------------------------------------

    async def confirm_in_progress(self, worker_id: str, task_id: str) -> dict:
        async with self.session_factory() as session:
            task = await task_service.confirm_in_progress(session, worker_id, task_id)
        await self.notifier.notify(task.customer_id, in_progress_text(task))
        return task_service.task_to_dict(task)

    async def mark_completed(self, customer_id: str, task_id: str) -> dict:
        """Complete the task, then open a rating session unless the customer is mid-flow."""
        async with self.session_factory() as session:
            task = await task_service.mark_completed(session, customer_id, task_id)
            rating_flow = None
            if await self.store.get(session, customer_id) is None:
                state = RatingState(task_id=task.id, worker_id=task.assigned_worker_id)
                rating_flow = await self.store.create(session, customer_id, state, "score")
            await session.commit()

        await self.notifier.notify(task.assigned_worker_id, completed_text(task))
        await self.notifier.notify(customer_id, completed_text(task))
        if rating_flow is not None:
            await self.notifier.notify(customer_id, PROMPTS["score"])
        return {
            "task": task_service.task_to_dict(task),
            "rating_flow": _reply_for(rating_flow).to_dict() if rating_flow else None,
        }

    async def rate(
        self, customer_id: str, task_id: str, score: int, comment: str | None = None
    ) -> dict:
        """Rate the assigned worker directly, closing any rating session for the task."""
        async with self.session_factory() as session:
            rating = await rating_service.rate_worker(session, customer_id, task_id, score, comment)
            active = await self.store.get(session, customer_id)
            if (
                active is not None
                and isinstance(active.state, RatingState)
                and active.state.task_id == task_id
            ):
                await self.store.delete(session, customer_id)
            await session.commit()
        return rating_service.rating_to_dict(rating)

    # ------------------------------------------------------------------
    # Cancellation and disputes
    # ------------------------------------------------------------------

    async def cancel_task(self, customer_id: str, task_id: str) -> dict:
        async with self.session_factory() as session:
            task, rejected = await task_service.cancel_task(session, customer_id, task_id)
        await self.notifier.notify_many(rejected, task_cancelled_text(task))
        return task_service.task_to_dict(task)

    async def raise_dispute(self, caller_id: str, task_id: str, reason: str | None = None) -> dict:
        async with self.session_factory() as session:
            task = await task_service.raise_dispute(session, caller_id, task_id, reason)
            worker_id = await task_service.task_worker_id(session, task)
        parties = [p for p in (task.customer_id, worker_id) if p]
        await self.notifier.notify_many(parties, dispute_text(task, reason))
        return task_service.task_to_dict(task)

    async def resolve_dispute(self, task_id: str, outcome: TaskStatus) -> dict:
        async with self.session_factory() as session:
            before = await task_service.get_task(session, task_id)
            worker_id = await task_service.task_worker_id(session, before)
            task = await task_service.resolve_dispute(session, task_id, outcome)
        parties = [p for p in (task.customer_id, worker_id) if p]
        await self.notifier.notify_many(parties, dispute_resolved_text(task))
        return task_service.task_to_dict(task)

    # ------------------------------------------------------------------
    # Workers and reads
    # ------------------------------------------------------------------

    async def update_location(self, worker_id: str, coord: Coordinate) -> dict:
        async with self.session_factory() as session:
            return await worker_service.update_location(session, worker_id, coord)

    async def set_availability(self, worker_id: str, available: bool) -> dict:
        async with self.session_factory() as session:
            return await worker_service.set_availability(session, worker_id, available)

    async def review_worker(self, worker_id: str, approve: bool, reason: str | None = None) -> dict:
        async with self.session_factory() as session:
            worker = await worker_service.review_worker(session, worker_id, approve, reason)
        text = (
            "Your account has been verified. You can now receive requests."
            if approve
            else f"Your verification was rejected: {worker['rejection_reason']}"
        )
        await self.notifier.notify(worker_id, text)
        return worker

    async def get_task(self, caller_id: str, task_id: str) -> dict:
        async with self.session_factory() as session:
            task = await task_service.get_task_for(session, task_id, caller_id)
            data = task_service.task_to_dict(task)
            channel = await channel_service.get_channel_for_task(session, task_id)
        if channel is not None:
            data["channel"] = channel_service.channel_to_dict(channel)
        return data
