"""Worker registry: identity, verification and availability."""

from __future__ import annotations

import logging

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errandhub.adapters.identity import IdentityCheck
from errandhub.db_models import Task, VerificationStatus, Worker
from errandhub.errors import NotFoundError, PreconditionError, ValidationError
from errandhub.flows import RegistrationState
from errandhub.geo import Coordinate
from errandhub.services.tasks import held_by
from errandhub.utils import iso, status_str, utcnow

logger = logging.getLogger("errandhub.workers")


def worker_to_dict(worker: Worker) -> dict:
    return {
        "id": worker.id,
        "role": status_str(worker.role),
        "full_name": worker.full_name,
        "vehicle_type": status_str(worker.vehicle_type),
        "verification_status": status_str(worker.verification_status),
        "rejection_reason": worker.rejection_reason,
        "is_available": worker.is_available,
        "rating_aggregate": round(worker.rating_aggregate, 2),
        "review_count": worker.review_count,
        "location_updated_at": iso(worker.location_updated_at),
        "created_at": iso(worker.created_at),
    }


async def get_worker(session: AsyncSession, worker_id: str) -> Worker:
    worker = await session.get(Worker, worker_id)
    if not worker:
        raise NotFoundError("Worker not found")
    return worker


async def ensure_not_registered(session: AsyncSession, owner_id: str) -> None:
    existing = await session.get(Worker, owner_id)
    if existing:
        status = status_str(existing.verification_status)
        raise PreconditionError(f"You are already registered as a {existing.role.value} ({status})")


async def register_worker(
    session: AsyncSession, owner_id: str, state: RegistrationState, check: IdentityCheck
) -> Worker:
    """Create the worker record from a completed registration. Does not commit."""
    await ensure_not_registered(session, owner_id)

    clash = await session.execute(
        select(Worker.id).where(
            or_(
                Worker.phone_number == state.phone_number,
                Worker.national_id == state.national_id,
            )
        )
    )
    if clash.first():
        raise ValidationError("That phone number or national id is already registered")

    worker = Worker(
        id=owner_id,
        role=state.role,
        full_name=state.full_name,
        phone_number=state.phone_number,
        bank_details=state.bank_details,
        national_id=state.national_id,
        vehicle_type=state.vehicle_type,
        verification_status=(
            VerificationStatus.verified if check.accepted else VerificationStatus.rejected
        ),
        rejection_reason=None if check.accepted else (check.reason or "Identity check failed"),
    )
    session.add(worker)
    await session.flush()
    logger.info(
        "Registered %s %s (%s)", worker.role.value, owner_id, worker.verification_status.value
    )
    return worker


async def update_location(session: AsyncSession, worker_id: str, coord: Coordinate) -> dict:
    if not coord.is_valid():
        raise ValidationError("That location is outside the valid coordinate range.")
    worker = await get_worker(session, worker_id)
    now = utcnow()
    worker.last_latitude = coord.latitude
    worker.last_longitude = coord.longitude
    worker.location_updated_at = now
    worker.updated_at = now
    session.add(worker)
    await session.commit()
    return worker_to_dict(worker)


async def has_active_task(session: AsyncSession, worker_id: str) -> bool:
    result = await session.execute(
        select(Task.id).where(held_by(worker_id))
    )
    return result.first() is not None


async def set_availability(session: AsyncSession, worker_id: str, available: bool) -> dict:
    """Worker goes on or off duty. Going on duty mid-task is refused."""
    worker = await get_worker(session, worker_id)
    if available and await has_active_task(session, worker_id):
        raise PreconditionError("Finish your current task before going available")
    worker.is_available = available
    worker.updated_at = utcnow()
    session.add(worker)
    await session.commit()
    return worker_to_dict(worker)


async def review_worker(
    session: AsyncSession, worker_id: str, approve: bool, reason: str | None = None
) -> dict:
    """Manual verification decision by an operator."""
    worker = await get_worker(session, worker_id)
    if approve:
        worker.verification_status = VerificationStatus.verified
        worker.rejection_reason = None
    else:
        worker.verification_status = VerificationStatus.rejected
        worker.rejection_reason = reason or "Rejected by reviewer"
    worker.updated_at = utcnow()
    session.add(worker)
    await session.commit()
    logger.info("Worker %s reviewed: %s", worker_id, worker.verification_status.value)
    return worker_to_dict(worker)
