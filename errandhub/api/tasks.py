"""Task lifecycle routes."""

from fastapi import APIRouter, Depends, Query, Request

from errandhub.api.deps import Engine
from errandhub.auth import Caller
from errandhub.config import settings
from errandhub.database import get_db_session
from errandhub.db_models import TaskStatus
from errandhub.dispatch import DispatchEngine
from errandhub.geo import Coordinate
from errandhub.models import (
    CandidateSearchRequest,
    DisputeRequest,
    ErrorResponse,
    RateRequest,
    RateResponse,
    TasksListResponse,
)
from errandhub.rate_limit import limiter
from errandhub.services.tasks import list_customer_tasks

router = APIRouter()

_ERRORS = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.get("/v1/tasks", response_model=TasksListResponse)
@limiter.limit(settings.rate_limit_read)
async def my_tasks(
    request: Request,
    status: TaskStatus | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller: str = Caller,
    session=Depends(get_db_session),
):
    """Tasks the caller posted, newest first."""
    tasks, total = await list_customer_tasks(session, caller, status, limit, offset)
    return {"tasks": tasks, "total": total}


@router.get("/v1/tasks/{task_id}", responses=_ERRORS)
@limiter.limit(settings.rate_limit_read)
async def task_detail(
    request: Request, task_id: str, caller: str = Caller, engine: DispatchEngine = Engine
):
    return await engine.get_task(caller, task_id)


@router.post("/v1/tasks/{task_id}/search", responses=_ERRORS)
@limiter.limit(settings.rate_limit_flow)
async def search_again(
    request: Request, task_id: str, caller: str = Caller, engine: DispatchEngine = Engine
):
    """Run the expanding search again for a task that is still open."""
    search = await engine.dispatch_task(task_id, caller_id=caller)
    return search.to_dict()


@router.post("/v1/candidates")
@limiter.limit(settings.rate_limit_read)
async def find_candidates(
    request: Request,
    body: CandidateSearchRequest,
    caller: str = Caller,
    engine: DispatchEngine = Engine,
):
    center = Coordinate(body.latitude, body.longitude)
    search = await engine.find_candidates(center, body.role, exclude=frozenset({caller}))
    return search.to_dict()


@router.post("/v1/tasks/{task_id}/start", responses=_ERRORS)
@limiter.limit(settings.rate_limit_offer)
async def confirm_in_progress(
    request: Request, task_id: str, caller: str = Caller, engine: DispatchEngine = Engine
):
    """Assigned worker confirms payment was settled and starts the task."""
    return await engine.confirm_in_progress(caller, task_id)


@router.post("/v1/tasks/{task_id}/complete", responses=_ERRORS)
@limiter.limit(settings.rate_limit_offer)
async def mark_completed(
    request: Request, task_id: str, caller: str = Caller, engine: DispatchEngine = Engine
):
    return await engine.mark_completed(caller, task_id)


@router.post("/v1/tasks/{task_id}/cancel", responses=_ERRORS)
@limiter.limit(settings.rate_limit_offer)
async def cancel_task(
    request: Request, task_id: str, caller: str = Caller, engine: DispatchEngine = Engine
):
    return await engine.cancel_task(caller, task_id)


@router.post("/v1/tasks/{task_id}/dispute", responses=_ERRORS)
@limiter.limit(settings.rate_limit_offer)
async def raise_dispute(
    request: Request,
    task_id: str,
    body: DisputeRequest,
    caller: str = Caller,
    engine: DispatchEngine = Engine,
):
    return await engine.raise_dispute(caller, task_id, body.reason)


@router.post("/v1/tasks/{task_id}/rate", response_model=RateResponse, responses=_ERRORS)
@limiter.limit(settings.rate_limit_offer)
async def rate_worker(
    request: Request,
    task_id: str,
    body: RateRequest,
    caller: str = Caller,
    engine: DispatchEngine = Engine,
):
    return await engine.rate(caller, task_id, body.score, body.comment)
