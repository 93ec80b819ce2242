"""Worker self-service routes."""

from fastapi import APIRouter, Depends, Request

from errandhub.api.deps import Engine
from errandhub.auth import Caller
from errandhub.config import settings
from errandhub.database import get_db_session
from errandhub.dispatch import DispatchEngine
from errandhub.geo import Coordinate
from errandhub.models import AvailabilityRequest, ErrorResponse, LocationRequest
from errandhub.rate_limit import limiter
from errandhub.services.tasks import list_worker_tasks
from errandhub.services.workers import get_worker, worker_to_dict

router = APIRouter()

_ERRORS = {404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}


@router.get("/v1/workers/me", responses=_ERRORS)
@limiter.limit(settings.rate_limit_read)
async def me(request: Request, caller: str = Caller, session=Depends(get_db_session)):
    return worker_to_dict(await get_worker(session, caller))


@router.get("/v1/workers/me/tasks", responses=_ERRORS)
@limiter.limit(settings.rate_limit_read)
async def my_assignments(request: Request, caller: str = Caller, session=Depends(get_db_session)):
    """Tasks the caller is assigned to and has not finished."""
    return {"tasks": await list_worker_tasks(session, caller)}


@router.post("/v1/workers/me/location", responses=_ERRORS)
@limiter.limit(settings.rate_limit_flow)
async def update_location(
    request: Request,
    body: LocationRequest,
    caller: str = Caller,
    engine: DispatchEngine = Engine,
):
    return await engine.update_location(caller, Coordinate(body.latitude, body.longitude))


@router.post("/v1/workers/me/availability", responses=_ERRORS)
@limiter.limit(settings.rate_limit_flow)
async def set_availability(
    request: Request,
    body: AvailabilityRequest,
    caller: str = Caller,
    engine: DispatchEngine = Engine,
):
    return await engine.set_availability(caller, body.available)
