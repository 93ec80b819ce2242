"""Operator routes: manual verification and dispute resolution."""

from fastapi import APIRouter, Depends, Request

from errandhub.api.deps import Engine
from errandhub.auth import verify_admin_key
from errandhub.config import settings
from errandhub.dispatch import DispatchEngine
from errandhub.models import ErrorResponse, ResolveDisputeRequest, ReviewWorkerRequest
from errandhub.rate_limit import limiter

router = APIRouter(prefix="/v1/admin", dependencies=[Depends(verify_admin_key)])

_ERRORS = {404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}


@router.post("/workers/{worker_id}/review", responses=_ERRORS)
@limiter.limit(settings.rate_limit_admin)
async def review_worker(
    request: Request,
    worker_id: str,
    body: ReviewWorkerRequest,
    engine: DispatchEngine = Engine,
):
    return await engine.review_worker(worker_id, body.approve, body.reason)


@router.post("/tasks/{task_id}/resolve", responses=_ERRORS)
@limiter.limit(settings.rate_limit_admin)
async def resolve_dispute(
    request: Request,
    task_id: str,
    body: ResolveDisputeRequest,
    engine: DispatchEngine = Engine,
):
    """Force a disputed task to completed or cancelled."""
    return await engine.resolve_dispute(task_id, body.status)
