"""Offer submission and atomic acceptance."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errandhub.config import settings
from errandhub.db_models import (
    OPEN_TASK_STATUSES,
    Channel,
    Offer,
    OfferStatus,
    Task,
    TaskKind,
    TaskStatus,
    VehicleType,
    VerificationStatus,
    Worker,
)
from errandhub.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PreconditionError,
    UnauthorizedError,
    ValidationError,
)
from errandhub.ids import offer_id as make_offer_id
from errandhub.services.channels import new_channel
from errandhub.services.geosearch import role_for_kind
from errandhub.services.tasks import get_task, is_expired, transition_task
from errandhub.utils import as_utc, iso, status_str, utcnow

logger = logging.getLogger("errandhub.offers")

NOT_ACCEPTING = "Task no longer accepting offers"
ALREADY_BID = "You already bid on this task"
MUST_BE_VERIFIED = "You must be verified to make offers"
ALREADY_RESOLVED = "Task already resolved"
OFFER_GONE = "Offer not found or expired"
TASK_EXPIRED = "Task has expired"


def offer_to_dict(offer: Offer, worker: Worker | None = None) -> dict:
    data = {
        "id": offer.id,
        "task_id": offer.task_id,
        "worker_id": offer.worker_id,
        "price": offer.price,
        "vehicle_type": status_str(offer.vehicle_type),
        "status": status_str(offer.status),
        "created_at": iso(offer.created_at),
        "expires_at": iso(offer.expires_at),
    }
    if worker is not None:
        data["worker_name"] = worker.full_name
        data["worker_rating"] = round(worker.rating_aggregate, 2)
        data["worker_reviews"] = worker.review_count
    return data


def _parse_vehicle_type(kind: TaskKind, value: VehicleType | str | None) -> VehicleType | None:
    if kind != TaskKind.delivery:
        return None
    if not value:
        raise ValidationError("A delivery offer needs a vehicle type")
    try:
        return VehicleType(value)
    except ValueError:
        options = ", ".join(v.value for v in VehicleType)
        raise ValidationError(f"Vehicle type must be one of: {options}") from None


async def submit_offer(
    session: AsyncSession,
    worker_id: str,
    task_id: str,
    price: int,
    vehicle_type: VehicleType | str | None = None,
) -> tuple[Offer, Task]:
    """A verified worker bids on an open task. Commits."""
    worker = await session.get(Worker, worker_id, populate_existing=True)
    if worker is None or worker.verification_status != VerificationStatus.verified:
        raise PreconditionError(MUST_BE_VERIFIED)
    if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
        raise ValidationError("Price must be a whole amount greater than zero")

    task = await get_task(session, task_id)
    if task.customer_id == worker_id:
        raise PreconditionError("You cannot bid on your own task")
    if status_str(task.status) not in {s.value for s in OPEN_TASK_STATUSES} or is_expired(task):
        raise PreconditionError(NOT_ACCEPTING)
    if worker.role != role_for_kind(task.kind):
        raise PreconditionError(f"Only {role_for_kind(task.kind).value}s can bid on this task")
    vehicle = _parse_vehicle_type(task.kind, vehicle_type)
    if not worker.is_available:
        raise PreconditionError("You must be available to make offers")

    existing = await session.execute(
        select(Offer.id).where(
            Offer.task_id == task_id,
            Offer.worker_id == worker_id,
            Offer.status == OfferStatus.pending,
        )
    )
    if existing.first():
        raise PreconditionError(ALREADY_BID)

    now = utcnow()
    offer = Offer(
        id=make_offer_id(),
        task_id=task_id,
        worker_id=worker_id,
        price=price,
        vehicle_type=vehicle,
        status=OfferStatus.pending,
        created_at=now,
        expires_at=now + timedelta(minutes=settings.offer_expire_minutes),
    )
    try:
        # Re-checked inside the write: the task may have been accepted meanwhile
        moved = await transition_task(
            session, task_id, OPEN_TASK_STATUSES, status=TaskStatus.offered
        )
        if not moved:
            raise PreconditionError(NOT_ACCEPTING)
        session.add(offer)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise PreconditionError(ALREADY_BID) from None
    except Exception:
        await session.rollback()
        raise

    logger.info("Offer %s on task %s by %s: %d", offer.id, task_id, worker_id, price)
    return offer, await get_task(session, task_id)


async def list_offers(
    session: AsyncSession, customer_id: str, task_id: str, include_closed: bool = False
) -> list[dict]:
    """Offers on a task, cheapest first. Only the task's customer may look."""
    task = await get_task(session, task_id)
    if task.customer_id != customer_id:
        raise UnauthorizedError("Not your task")
    query = (
        select(Offer, Worker)
        .join(Worker, Worker.id == Offer.worker_id)
        .where(Offer.task_id == task_id)
        .order_by(Offer.price, Offer.created_at, Offer.id)
    )
    if not include_closed:
        query = query.where(Offer.status == OfferStatus.pending)
    result = await session.execute(query)
    return [offer_to_dict(offer, worker) for offer, worker in result.all()]


@dataclass
class Acceptance:
    task: Task
    offer: Offer
    worker: Worker
    channel: Channel
    rejected_worker_ids: list[str] = field(default_factory=list)


async def _lock_offer(session: AsyncSession, offer_id: str) -> Offer | None:
    result = await session.execute(
        select(Offer)
        .where(Offer.id == offer_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _lock_task(session: AsyncSession, task_id: str) -> Task:
    result = await session.execute(
        select(Task)
        .where(Task.id == task_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def accept_offer(session: AsyncSession, customer_id: str, offer_id: str) -> Acceptance:
    """Accept one offer and settle the whole task in a single transaction.

    The task row is locked, then moved out of pending/offered with a
    conditional UPDATE. Of two concurrent acceptances on the same task only
    one can match that condition; the other sees ``ConflictError``. Any
    failure rolls everything back.
    """
    try:
        offer = await _lock_offer(session, offer_id)
        if offer is None:
            raise NotFoundError(OFFER_GONE)
        task = await _lock_task(session, offer.task_id)
        if task.customer_id != customer_id:
            raise UnauthorizedError("Not your task")
        if status_str(task.status) not in {s.value for s in OPEN_TASK_STATUSES}:
            raise ConflictError(ALREADY_RESOLVED)
        if is_expired(task):
            raise PreconditionError(TASK_EXPIRED)
        expires_at = as_utc(offer.expires_at)
        if status_str(offer.status) != OfferStatus.pending.value or (
            expires_at is not None and expires_at < utcnow()
        ):
            raise NotFoundError(OFFER_GONE)

        # Lock the sibling offers we are about to reject
        await session.execute(
            select(Offer.id)
            .where(Offer.task_id == task.id, Offer.status == OfferStatus.pending)
            .with_for_update()
        )

        claimed = await transition_task(
            session,
            task.id,
            OPEN_TASK_STATUSES,
            status=TaskStatus.accepted,
            assigned_worker_id=offer.worker_id,
        )
        if not claimed:
            raise ConflictError(ALREADY_RESOLVED)

        won = await session.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.status == OfferStatus.pending)
            .values(status=OfferStatus.accepted)
            .execution_options(synchronize_session=False)
        )
        if won.rowcount == 0:
            raise ConflictError(ALREADY_RESOLVED)

        losers = await session.execute(
            select(Offer.worker_id).where(
                Offer.task_id == task.id,
                Offer.id != offer.id,
                Offer.status == OfferStatus.pending,
            )
        )
        rejected_worker_ids = list(losers.scalars().all())
        await session.execute(
            update(Offer)
            .where(
                Offer.task_id == task.id,
                Offer.id != offer.id,
                Offer.status == OfferStatus.pending,
            )
            .values(status=OfferStatus.rejected)
            .execution_options(synchronize_session=False)
        )

        busy = await session.execute(
            update(Worker)
            .where(Worker.id == offer.worker_id, Worker.is_available.is_(True))
            .values(is_available=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if busy.rowcount == 0:
            raise PreconditionError("That worker has just taken another task")

        channel = new_channel(task, offer.worker_id)
        session.add(channel)
        await session.flush()
        await session.execute(
            update(Task)
            .where(Task.id == task.id)
            .values(channel_id=channel.id)
            .execution_options(synchronize_session=False)
        )

        accepted = await session.execute(
            select(func.count())
            .select_from(Offer)
            .where(Offer.task_id == task.id, Offer.status == OfferStatus.accepted)
        )
        accepted_count = accepted.scalar_one()
        if accepted_count != 1:
            logger.critical(
                "Task %s has %d accepted offers after accepting %s",
                task.id,
                accepted_count,
                offer.id,
            )
            raise InvariantViolation(f"task {task.id} has {accepted_count} accepted offers")

        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Offer %s accepted: task %s assigned to %s, %d offer(s) rejected",
        offer_id,
        task.id,
        offer.worker_id,
        len(rejected_worker_ids),
    )
    task = await get_task(session, task.id)
    offer = await session.get(Offer, offer_id, populate_existing=True)
    worker = await session.get(Worker, offer.worker_id, populate_existing=True)
    return Acceptance(
        task=task,
        offer=offer,
        worker=worker,
        channel=channel,
        rejected_worker_ids=rejected_worker_ids,
    )


async def expire_stale_offers(session: AsyncSession) -> list[Offer]:
    """Pending offers past their expiry become expired. Commits."""
    now = utcnow()
    result = await session.execute(
        select(Offer).where(
            Offer.status == OfferStatus.pending,
            Offer.expires_at != None,  # noqa: E711
            Offer.expires_at < now,
        )
    )
    stale = list(result.scalars().all())
    if not stale:
        return []
    await session.execute(
        update(Offer)
        .where(Offer.id.in_([o.id for o in stale]), Offer.status == OfferStatus.pending)
        .values(status=OfferStatus.expired)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info("Expired %d offer(s)", len(stale))
    return stale
