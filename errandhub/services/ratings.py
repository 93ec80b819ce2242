"""Worker ratings with a running mean."""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errandhub.db_models import Rating, Task, TaskStatus, Worker
from errandhub.errors import PreconditionError, UnauthorizedError, ValidationError
from errandhub.ids import rating_id as make_rating_id
from errandhub.services.tasks import get_task
from errandhub.utils import iso, status_str

logger = logging.getLogger("errandhub.ratings")

ALREADY_RATED = "You already rated this worker for this task"


def rating_to_dict(rating: Rating) -> dict:
    return {
        "id": rating.id,
        "task_id": rating.task_id,
        "rated_id": rating.rated_id,
        "score": rating.score,
        "comment": rating.comment,
        "created_at": iso(rating.created_at),
    }


async def ensure_rateable(session: AsyncSession, customer_id: str, task_id: str) -> Task:
    task = await get_task(session, task_id)
    if task.customer_id != customer_id:
        raise UnauthorizedError("Only the customer can rate this task")
    if status_str(task.status) != TaskStatus.completed.value or not task.assigned_worker_id:
        raise PreconditionError("Only completed tasks can be rated")
    existing = await session.execute(
        select(Rating.id).where(
            Rating.task_id == task_id, Rating.rated_id == task.assigned_worker_id
        )
    )
    if existing.first():
        raise PreconditionError(ALREADY_RATED)
    return task


async def rate_worker(
    session: AsyncSession,
    customer_id: str,
    task_id: str,
    score: int,
    comment: str | None = None,
) -> Rating:
    """Record one rating and fold it into the worker's mean. Does not commit.

    The aggregate is updated in SQL so concurrent ratings of the same worker
    never lose a contribution.
    """
    if not 1 <= score <= 5:
        raise ValidationError("A rating is a whole number from 1 to 5")
    task = await ensure_rateable(session, customer_id, task_id)
    worker_id = task.assigned_worker_id

    rating = Rating(
        id=make_rating_id(),
        task_id=task_id,
        rater_id=customer_id,
        rated_id=worker_id,
        score=score,
        comment=comment,
    )
    session.add(rating)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        raise PreconditionError(ALREADY_RATED) from None

    await session.execute(
        update(Worker)
        .where(Worker.id == worker_id)
        .values(
            rating_aggregate=(Worker.rating_aggregate * Worker.review_count + score)
            / (Worker.review_count + 1),
            review_count=Worker.review_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    logger.info("Worker %s rated %d for task %s", worker_id, score, task_id)
    return rating
