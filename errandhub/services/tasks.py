"""Task repository and lifecycle transitions."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import and_, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errandhub.config import settings
from errandhub.db_models import (
    ACTIVE_TASK_STATUSES,
    OPEN_TASK_STATUSES,
    Offer,
    OfferStatus,
    Task,
    TaskCandidate,
    TaskKind,
    TaskStatus,
    Worker,
)
from errandhub.errors import (
    ConflictError,
    NotFoundError,
    PreconditionError,
    UnauthorizedError,
    ValidationError,
)
from errandhub.flows import TaskCreationState
from errandhub.geo import Coordinate
from errandhub.ids import candidate_id as make_candidate_id
from errandhub.ids import task_id as make_task_id
from errandhub.services.channels import schedule_close
from errandhub.services.geosearch import SearchResult
from errandhub.utils import as_utc, iso, status_str, utcnow

logger = logging.getLogger("errandhub.tasks")


def task_to_dict(task: Task) -> dict:
    data = {
        "id": task.id,
        "customer_id": task.customer_id,
        "kind": status_str(task.kind),
        "status": status_str(task.status),
        "instructions": task.instructions,
        "assigned_worker_id": task.assigned_worker_id,
        "channel_id": task.channel_id,
        "search_radius_km": task.search_radius_km,
        "candidate_count": task.candidate_count,
        "dispute_reason": task.dispute_reason,
        "created_at": iso(task.created_at),
        "updated_at": iso(task.updated_at),
        "expires_at": iso(task.expires_at),
        "completed_at": iso(task.completed_at),
    }
    if task.kind == TaskKind.delivery:
        data["pickup"] = _place(task.pickup_latitude, task.pickup_longitude, task.pickup_address)
        data["dropoff"] = _place(
            task.dropoff_latitude, task.dropoff_longitude, task.dropoff_address
        )
    else:
        data["location"] = _place(
            task.location_latitude, task.location_longitude, task.location_address
        )
    return data


def _place(lat: float | None, lon: float | None, address: str | None) -> dict | None:
    if lat is None or lon is None:
        return None
    return {"latitude": lat, "longitude": lon, "address": address}


def search_center(task: Task) -> Coordinate:
    """Where to look for workers: the pickup for deliveries, the errand location otherwise."""
    if task.kind == TaskKind.delivery:
        return Coordinate(task.pickup_latitude, task.pickup_longitude)
    return Coordinate(task.location_latitude, task.location_longitude)


async def get_task(session: AsyncSession, task_id: str) -> Task:
    task = await session.get(Task, task_id, populate_existing=True)
    if not task:
        raise NotFoundError("Task not found")
    return task


async def get_task_for(session: AsyncSession, task_id: str, caller_id: str) -> Task:
    """Task detail is visible to its customer and its assigned worker only."""
    task = await get_task(session, task_id)
    if caller_id not in (task.customer_id, await task_worker_id(session, task)):
        raise UnauthorizedError("Not your task")
    return task


async def task_worker_id(session: AsyncSession, task: Task) -> str | None:
    """The worker holding a task. Disputed tasks keep no assignment, so ask the accepted offer."""
    if task.assigned_worker_id or status_str(task.status) != TaskStatus.disputed.value:
        return task.assigned_worker_id
    result = await session.execute(
        select(Offer.worker_id).where(
            Offer.task_id == task.id, Offer.status == OfferStatus.accepted
        )
    )
    return result.scalar_one_or_none()


def held_by(worker_id: str):
    """Filter for tasks a worker currently holds, disputed ones included."""
    won = select(Offer.task_id).where(
        Offer.worker_id == worker_id, Offer.status == OfferStatus.accepted
    )
    return or_(
        and_(Task.assigned_worker_id == worker_id, Task.status.in_(ACTIVE_TASK_STATUSES)),
        and_(Task.status == TaskStatus.disputed, Task.id.in_(won)),
    )


async def count_active_tasks(session: AsyncSession, customer_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Task)
        .where(
            Task.customer_id == customer_id,
            Task.status.in_((*OPEN_TASK_STATUSES, *ACTIVE_TASK_STATUSES)),
        )
    )
    return result.scalar_one()


async def ensure_can_post(session: AsyncSession, customer_id: str) -> None:
    limit = settings.max_active_tasks_per_customer
    if limit and await count_active_tasks(session, customer_id) >= limit:
        raise PreconditionError(
            f"You already have {limit} open task(s). Finish or cancel one first."
        )


async def create_task(session: AsyncSession, customer_id: str, state: TaskCreationState) -> Task:
    """Persist a finished task-creation flow as a pending task. Does not commit."""
    await ensure_can_post(session, customer_id)
    now = utcnow()
    task = Task(
        id=make_task_id(),
        customer_id=customer_id,
        kind=state.kind,
        status=TaskStatus.pending,
        instructions=state.instructions,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(hours=settings.task_expire_hours),
    )
    if state.kind == TaskKind.delivery:
        if state.pickup is None or state.dropoff is None:
            raise ValidationError("A delivery needs both a pickup and a drop-off location.")
        task.pickup_latitude = state.pickup.latitude
        task.pickup_longitude = state.pickup.longitude
        task.pickup_address = state.pickup.address
        task.dropoff_latitude = state.dropoff.latitude
        task.dropoff_longitude = state.dropoff.longitude
        task.dropoff_address = state.dropoff.address
    else:
        if state.location is None:
            raise ValidationError("An errand needs a location.")
        task.location_latitude = state.location.latitude
        task.location_longitude = state.location.longitude
        task.location_address = state.location.address
    session.add(task)
    await session.flush()
    logger.info("Created %s task %s for %s", state.kind.value, task.id, customer_id)
    return task


async def record_search(session: AsyncSession, task: Task, search: SearchResult) -> list[str]:
    """Store the outcome of a search. Returns the workers not notified before. Commits."""
    known = set(await candidate_ids(session, task.id))
    fresh: list[str] = []
    for rank, candidate in enumerate(search.candidates):
        if candidate.worker_id in known:
            continue
        session.add(
            TaskCandidate(
                id=make_candidate_id(),
                task_id=task.id,
                worker_id=candidate.worker_id,
                distance_km=candidate.distance_km,
                rank=rank,
            )
        )
        fresh.append(candidate.worker_id)
    task.search_radius_km = search.radius_km
    task.candidate_count = len(search.candidates)
    task.searched_at = utcnow()
    task.updated_at = task.searched_at
    session.add(task)
    await session.commit()
    return fresh


async def candidate_ids(session: AsyncSession, task_id: str) -> list[str]:
    result = await session.execute(
        select(TaskCandidate.worker_id)
        .where(TaskCandidate.task_id == task_id)
        .order_by(TaskCandidate.rank, TaskCandidate.worker_id)
    )
    return list(result.scalars().all())


async def transition_task(
    session: AsyncSession, task_id: str, from_statuses: tuple[TaskStatus, ...], **values
) -> bool:
    """Move a task on only if it is still in one of ``from_statuses``."""
    values.setdefault("updated_at", utcnow())
    result = await session.execute(
        update(Task)
        .where(Task.id == task_id, Task.status.in_(from_statuses))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def _set_worker_available(session: AsyncSession, worker_id: str | None) -> None:
    if worker_id is None:
        return
    await session.execute(
        update(Worker)
        .where(Worker.id == worker_id)
        .values(is_available=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def reject_pending_offers(session: AsyncSession, task_id: str) -> list[str]:
    """Reject every pending offer on a task. Returns the affected workers."""
    result = await session.execute(
        select(Offer.worker_id).where(
            Offer.task_id == task_id, Offer.status == OfferStatus.pending
        )
    )
    worker_ids = list(result.scalars().all())
    await session.execute(
        update(Offer)
        .where(Offer.task_id == task_id, Offer.status == OfferStatus.pending)
        .values(status=OfferStatus.rejected)
        .execution_options(synchronize_session=False)
    )
    return worker_ids


async def confirm_in_progress(session: AsyncSession, worker_id: str, task_id: str) -> Task:
    """The assigned worker attests payment was settled and starts the task."""
    task = await get_task(session, task_id)
    status = status_str(task.status)
    if status != TaskStatus.accepted.value:
        raise PreconditionError(f"Task is {status}, only an accepted task can be started")
    if task.assigned_worker_id != worker_id:
        raise UnauthorizedError("Only the assigned worker can start this task")

    moved = await transition_task(
        session, task_id, (TaskStatus.accepted,), status=TaskStatus.in_progress
    )
    if not moved:
        raise ConflictError("Task already changed status")
    await session.commit()
    logger.info("Task %s in progress by %s", task_id, worker_id)
    return await get_task(session, task_id)


async def mark_completed(session: AsyncSession, customer_id: str, task_id: str) -> Task:
    """Customer confirms the work is done. Frees the worker and retires the channel."""
    task = await get_task(session, task_id)
    if task.customer_id != customer_id:
        raise UnauthorizedError("Only the customer can complete this task")
    status = status_str(task.status)
    if status != TaskStatus.in_progress.value:
        raise PreconditionError(f"Task is {status}, only a task in progress can be completed")

    now = utcnow()
    moved = await transition_task(
        session, task_id, (TaskStatus.in_progress,), status=TaskStatus.completed, completed_at=now
    )
    if not moved:
        raise ConflictError("Task already changed status")
    await _set_worker_available(session, task.assigned_worker_id)
    await schedule_close(session, task_id)
    await session.commit()
    logger.info("Task %s completed", task_id)
    return await get_task(session, task_id)


async def cancel_task(
    session: AsyncSession, customer_id: str, task_id: str
) -> tuple[Task, list[str]]:
    """Customer withdraws a task that has not been accepted yet.

    Returns the task and the workers whose pending offers were rejected.
    """
    task = await get_task(session, task_id)
    if task.customer_id != customer_id:
        raise UnauthorizedError("Not your task")

    moved = await transition_task(
        session,
        task_id,
        OPEN_TASK_STATUSES,
        status=TaskStatus.cancelled,
        cancelled_at=utcnow(),
    )
    if not moved:
        status = status_str(task.status)
        raise PreconditionError(
            f"Task is {status}, only pending or offered tasks can be cancelled"
        )
    rejected = await reject_pending_offers(session, task_id)
    await session.commit()
    logger.info("Task %s cancelled, %d offer(s) rejected", task_id, len(rejected))
    return await get_task(session, task_id), rejected


async def raise_dispute(
    session: AsyncSession, caller_id: str, task_id: str, reason: str | None = None
) -> Task:
    """Either party freezes an active task until an operator resolves it."""
    task = await get_task(session, task_id)
    if caller_id not in (task.customer_id, task.assigned_worker_id):
        raise UnauthorizedError("Only the customer or the assigned worker can dispute this task")

    moved = await transition_task(
        session,
        task_id,
        ACTIVE_TASK_STATUSES,
        status=TaskStatus.disputed,
        dispute_reason=reason,
        disputed_by=caller_id,
        assigned_worker_id=None,
    )
    if not moved:
        status = status_str(task.status)
        raise PreconditionError(
            f"Task is {status}, only accepted or in-progress tasks can be disputed"
        )
    await schedule_close(session, task_id)
    await session.commit()
    logger.warning("Task %s disputed by %s: %s", task_id, caller_id, reason)
    return await get_task(session, task_id)


async def resolve_dispute(session: AsyncSession, task_id: str, outcome: TaskStatus) -> Task:
    """Operator decision on a disputed task: force completed or cancelled."""
    if outcome not in (TaskStatus.completed, TaskStatus.cancelled):
        raise ValidationError("A dispute resolves to completed or cancelled")
    task = await get_task(session, task_id)
    worker_id = await task_worker_id(session, task)

    now = utcnow()
    values: dict = {"status": outcome}
    if outcome == TaskStatus.completed:
        values["completed_at"] = now
        values["assigned_worker_id"] = worker_id
    else:
        values["cancelled_at"] = now
    moved = await transition_task(session, task_id, (TaskStatus.disputed,), **values)
    if not moved:
        status = status_str(task.status)
        raise PreconditionError(f"Task is {status}, not disputed")
    await _set_worker_available(session, worker_id)
    await schedule_close(session, task_id)
    await session.commit()
    logger.info("Dispute on task %s resolved as %s", task_id, outcome.value)
    return await get_task(session, task_id)


async def expire_stale_tasks(session: AsyncSession) -> list[tuple[Task, list[str]]]:
    """Pending or offered tasks past their expiry become expired. Commits."""
    now = utcnow()
    result = await session.execute(
        select(Task.id).where(
            Task.status.in_(OPEN_TASK_STATUSES),
            Task.expires_at != None,  # noqa: E711
            Task.expires_at < now,
        )
    )
    expired: list[tuple[Task, list[str]]] = []
    for tid in result.scalars().all():
        if not await transition_task(session, tid, OPEN_TASK_STATUSES, status=TaskStatus.expired):
            continue
        rejected = await reject_pending_offers(session, tid)
        await session.commit()
        expired.append((await get_task(session, tid), rejected))
        logger.info("Task %s expired", tid)
    return expired


async def list_customer_tasks(
    session: AsyncSession,
    customer_id: str,
    status: TaskStatus | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[dict], int]:
    query = select(Task).where(Task.customer_id == customer_id)
    if status is not None:
        query = query.where(Task.status == status)
    count = await session.execute(select(func.count()).select_from(query.subquery()))
    result = await session.execute(
        query.order_by(Task.created_at.desc()).offset(offset).limit(limit)
    )
    return [task_to_dict(t) for t in result.scalars().all()], count.scalar_one()


async def list_worker_tasks(session: AsyncSession, worker_id: str) -> list[dict]:
    """Tasks the worker is currently assigned to (accepted, in progress or disputed)."""
    result = await session.execute(
        select(Task)
        .where(held_by(worker_id))
        .order_by(Task.updated_at.desc())
    )
    return [task_to_dict(t) for t in result.scalars().all()]


def is_expired(task: Task) -> bool:
    expires_at = as_utc(task.expires_at)
    return expires_at is not None and expires_at < utcnow()
