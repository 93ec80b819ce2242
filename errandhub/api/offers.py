"""Offer routes: bid, list, accept."""

from fastapi import APIRouter, Request

from errandhub.api.deps import Engine
from errandhub.auth import Caller
from errandhub.config import settings
from errandhub.dispatch import DispatchEngine
from errandhub.models import (
    AcceptResponse,
    ErrorResponse,
    OfferCreateRequest,
    OfferResponse,
    OffersListResponse,
)
from errandhub.rate_limit import limiter

router = APIRouter()

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.post(
    "/v1/tasks/{task_id}/offers",
    response_model=OfferResponse,
    status_code=201,
    responses=_ERRORS,
)
@limiter.limit(settings.rate_limit_offer)
async def submit_offer(
    request: Request,
    task_id: str,
    body: OfferCreateRequest,
    caller: str = Caller,
    engine: DispatchEngine = Engine,
):
    """A verified worker bids on an open task."""
    return await engine.submit_offer(caller, task_id, body.price, body.vehicle_type)


@router.get("/v1/tasks/{task_id}/offers", response_model=OffersListResponse, responses=_ERRORS)
@limiter.limit(settings.rate_limit_read)
async def list_offers(
    request: Request, task_id: str, caller: str = Caller, engine: DispatchEngine = Engine
):
    offers = await engine.list_offers(caller, task_id)
    return {"offers": offers, "total": len(offers)}


@router.post("/v1/offers/{offer_id}/accept", response_model=AcceptResponse, responses=_ERRORS)
@limiter.limit(settings.rate_limit_accept)
async def accept_offer(
    request: Request, offer_id: str, caller: str = Caller, engine: DispatchEngine = Engine
):
    """Accept one offer. Every other pending offer on the task is rejected."""
    return await engine.accept_offer(caller, offer_id)
