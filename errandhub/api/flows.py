"""Conversation flow routes: start, step, cancel."""

from fastapi import APIRouter, Request

from errandhub.api.deps import Engine
from errandhub.auth import Caller
from errandhub.config import settings
from errandhub.dispatch import DispatchEngine
from errandhub.flows import StepInput
from errandhub.models import ErrorResponse, FlowResponse, StartFlowRequest
from errandhub.rate_limit import limiter

router = APIRouter()

_ERRORS = {400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}


@router.post("/v1/flows", response_model=FlowResponse, status_code=201, responses=_ERRORS)
@limiter.limit(settings.rate_limit_flow)
async def start_flow(
    request: Request,
    body: StartFlowRequest,
    caller: str = Caller,
    engine: DispatchEngine = Engine,
):
    """Start a task creation, registration or rating conversation."""
    reply = await engine.start_flow(
        caller, body.flow, kind=body.kind, role=body.role, task_id=body.task_id
    )
    return reply.to_dict()


@router.get("/v1/flows", response_model=FlowResponse, responses=_ERRORS)
@limiter.limit(settings.rate_limit_read)
async def current_flow(request: Request, caller: str = Caller, engine: DispatchEngine = Engine):
    return (await engine.get_flow(caller)).to_dict()


@router.post("/v1/flows/step", response_model=FlowResponse, responses=_ERRORS)
@limiter.limit(settings.rate_limit_flow)
async def submit_step(
    request: Request,
    body: StepInput,
    caller: str = Caller,
    engine: DispatchEngine = Engine,
):
    """Answer the current step with text, a shared location, or both."""
    return (await engine.submit_step(caller, body)).to_dict()


@router.delete("/v1/flows")
@limiter.limit(settings.rate_limit_flow)
async def cancel_flow(request: Request, caller: str = Caller, engine: DispatchEngine = Engine):
    return {"cancelled": await engine.cancel_flow(caller)}
