"""Task lifecycle after acceptance: progress, completion, rating, disputes."""

import pytest

from errandhub.db_models import ChannelStatus, Task, TaskStatus, Worker
from errandhub.errors import PreconditionError, UnauthorizedError, ValidationError
from errandhub.flows import StepInput
from errandhub.services.channels import get_channel_for_task
from errandhub.services.ratings import ALREADY_RATED
from errandhub.services.tasks import list_worker_tasks
from tests.conftest import add_task, add_worker


async def _accepted_task(db, engine, worker_id: str = "rider-1") -> Task:
    await add_worker(db, worker_id)
    task = await add_task(db)
    offer = await engine.submit_offer(worker_id, task.id, 500, "motorcycle")
    await engine.accept_offer("cust-1", offer["id"])
    return task


async def _completed_task(db, engine, worker_id: str = "rider-1") -> Task:
    task = await _accepted_task(db, engine, worker_id)
    await engine.confirm_in_progress(worker_id, task.id)
    await engine.mark_completed("cust-1", task.id)
    return task


async def _stored(db, model, key):
    async with db() as session:
        return await session.get(model, key)


@pytest.mark.asyncio
async def test_start_before_acceptance_changes_nothing(db, engine):
    await add_worker(db, "rider-1")
    task = await add_task(db)
    await engine.submit_offer("rider-1", task.id, 500, "motorcycle")

    with pytest.raises(PreconditionError):
        await engine.confirm_in_progress("rider-1", task.id)

    stored = await _stored(db, Task, task.id)
    assert stored.status == TaskStatus.offered
    assert stored.assigned_worker_id is None
    assert (await _stored(db, Worker, "rider-1")).is_available is True


@pytest.mark.asyncio
async def test_only_assigned_worker_starts(db, engine):
    task = await _accepted_task(db, engine)
    with pytest.raises(UnauthorizedError):
        await engine.confirm_in_progress("rider-2", task.id)


@pytest.mark.asyncio
async def test_full_lifecycle(db, engine, transport):
    task = await _accepted_task(db, engine)

    started = await engine.confirm_in_progress("rider-1", task.id)
    assert started["status"] == "in_progress"
    assert any("in progress" in t for t in transport.texts_to("cust-1"))

    with pytest.raises(UnauthorizedError):
        await engine.mark_completed("rider-1", task.id)

    done = await engine.mark_completed("cust-1", task.id)
    assert done["task"]["status"] == "completed"
    assert done["task"]["completed_at"] is not None
    assert done["rating_flow"]["step"] == "score"
    assert (await _stored(db, Worker, "rider-1")).is_available is True

    async with db() as session:
        channel = await get_channel_for_task(session, task.id)
    assert channel.status == ChannelStatus.closing
    assert channel.close_after is not None


@pytest.mark.asyncio
async def test_complete_requires_in_progress(db, engine):
    task = await _accepted_task(db, engine)
    with pytest.raises(PreconditionError):
        await engine.mark_completed("cust-1", task.id)


@pytest.mark.asyncio
async def test_rate_once_then_rejected(db, engine):
    task = await _completed_task(db, engine)

    rating = await engine.rate("cust-1", task.id, 4, "Quick and polite")
    assert rating["score"] == 4
    with pytest.raises(PreconditionError, match=ALREADY_RATED):
        await engine.rate("cust-1", task.id, 5)

    worker = await _stored(db, Worker, "rider-1")
    assert worker.review_count == 1
    assert worker.rating_aggregate == pytest.approx(4.0)

    # The rating session opened on completion is gone
    with pytest.raises(PreconditionError):
        await engine.get_flow("cust-1")


@pytest.mark.asyncio
async def test_rating_mean_across_tasks(db, engine):
    first = await _completed_task(db, engine)
    await engine.rate("cust-1", first.id, 5)

    second = await add_task(db)
    offer = await engine.submit_offer("rider-1", second.id, 300, "motorcycle")
    await engine.accept_offer("cust-1", offer["id"])
    await engine.confirm_in_progress("rider-1", second.id)
    await engine.mark_completed("cust-1", second.id)
    await engine.rate("cust-1", second.id, 2)

    worker = await _stored(db, Worker, "rider-1")
    assert worker.review_count == 2
    assert worker.rating_aggregate == pytest.approx(3.5)


@pytest.mark.asyncio
async def test_rating_through_the_flow(db, engine):
    task = await _completed_task(db, engine)

    with pytest.raises(ValidationError):
        await engine.submit_step("cust-1", StepInput(text="great"))
    reply = await engine.submit_step("cust-1", StepInput(text="5"))
    assert reply.step == "comment"
    reply = await engine.submit_step("cust-1", StepInput(text="skip"))

    assert reply.done
    assert reply.result["rating"]["score"] == 5
    assert reply.result["rating"]["task_id"] == task.id
    with pytest.raises(PreconditionError):
        await engine.start_flow("cust-1", "rating", task_id=task.id)


@pytest.mark.asyncio
@pytest.mark.parametrize("score", [0, 6])
async def test_rate_out_of_range(db, engine, score):
    task = await _completed_task(db, engine)
    with pytest.raises(ValidationError):
        await engine.rate("cust-1", task.id, score)


@pytest.mark.asyncio
async def test_cannot_rate_unfinished_task(db, engine):
    task = await _accepted_task(db, engine)
    with pytest.raises(PreconditionError):
        await engine.rate("cust-1", task.id, 4)


@pytest.mark.asyncio
async def test_cancel_open_task_rejects_offers(db, engine, transport):
    await add_worker(db, "rider-1")
    task = await add_task(db)
    await engine.submit_offer("rider-1", task.id, 500, "motorcycle")

    cancelled = await engine.cancel_task("cust-1", task.id)

    assert cancelled["status"] == "cancelled"
    assert any("cancelled" in t for t in transport.texts_to("rider-1"))
    offers = await engine.list_offers("cust-1", task.id)
    assert offers == []


@pytest.mark.asyncio
async def test_cannot_cancel_accepted_task(db, engine):
    task = await _accepted_task(db, engine)
    with pytest.raises(PreconditionError):
        await engine.cancel_task("cust-1", task.id)
    with pytest.raises(UnauthorizedError):
        await engine.cancel_task("cust-2", task.id)


@pytest.mark.asyncio
async def test_dispute_and_resolve_as_cancelled(db, engine, transport):
    task = await _accepted_task(db, engine)
    await engine.confirm_in_progress("rider-1", task.id)

    disputed = await engine.raise_dispute("rider-1", task.id, "Customer unreachable")
    assert disputed["status"] == "disputed"
    assert disputed["dispute_reason"] == "Customer unreachable"
    assert disputed["assigned_worker_id"] is None
    assert any("dispute" in t for t in transport.texts_to("cust-1"))
    assert any("dispute" in t for t in transport.texts_to("rider-1"))

    # The worker who won the task still sees it while it is disputed
    assert (await engine.get_task("rider-1", task.id))["status"] == "disputed"
    async with db() as session:
        held = await list_worker_tasks(session, "rider-1")
    assert [t["id"] for t in held] == [task.id]

    # A disputed worker does not go back on duty
    with pytest.raises(PreconditionError):
        await engine.set_availability("rider-1", True)

    resolved = await engine.resolve_dispute(task.id, TaskStatus.cancelled)
    assert resolved["status"] == "cancelled"
    assert resolved["assigned_worker_id"] is None
    assert (await _stored(db, Worker, "rider-1")).is_available is True
    assert any("resolved as cancelled" in t for t in transport.texts_to("rider-1"))


@pytest.mark.asyncio
async def test_dispute_resolved_as_completed_can_be_rated(db, engine):
    task = await _accepted_task(db, engine)
    await engine.raise_dispute("cust-1", task.id)
    resolved = await engine.resolve_dispute(task.id, TaskStatus.completed)
    assert resolved["assigned_worker_id"] == "rider-1"
    assert (await _stored(db, Worker, "rider-1")).is_available is True

    rating = await engine.rate("cust-1", task.id, 3)
    assert rating["rated_id"] == "rider-1"


@pytest.mark.asyncio
async def test_dispute_rules(db, engine):
    await add_worker(db, "rider-1")
    task = await add_task(db)
    with pytest.raises(PreconditionError):
        await engine.raise_dispute("cust-1", task.id)

    accepted = await _accepted_task(db, engine, "rider-2")
    with pytest.raises(UnauthorizedError):
        await engine.raise_dispute("stranger", accepted.id)
    with pytest.raises(PreconditionError):
        await engine.resolve_dispute(accepted.id, TaskStatus.completed)
    with pytest.raises(ValidationError):
        await engine.resolve_dispute(accepted.id, TaskStatus.pending)


@pytest.mark.asyncio
async def test_get_task_visible_to_parties_only(db, engine):
    task = await _accepted_task(db, engine)

    for party in ("cust-1", "rider-1"):
        data = await engine.get_task(party, task.id)
        assert data["channel"]["worker_id"] == "rider-1"
    with pytest.raises(UnauthorizedError):
        await engine.get_task("stranger", task.id)
