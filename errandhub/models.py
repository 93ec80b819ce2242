"""Pydantic models for request/response schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from errandhub.db_models import TaskKind, TaskStatus, WorkerRole


class ErrorResponse(BaseModel):
    error: str
    code: str | None = None


class StartFlowRequest(BaseModel):
    flow: Literal["task_creation", "registration", "rating"]
    kind: TaskKind | None = Field(default=None, description="Task kind, for task_creation")
    role: WorkerRole | None = Field(default=None, description="Worker role, for registration")
    task_id: str | None = Field(default=None, max_length=64, description="Task, for rating")


class FlowResponse(BaseModel):
    flow: str
    step: str | None
    prompt: str | None = None
    done: bool = False
    resumed: bool = False
    expires_at: str | None = None
    result: dict = Field(default_factory=dict)


class CandidateSearchRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    role: WorkerRole


class OfferCreateRequest(BaseModel):
    price: int = Field(description="Whole amount in the local currency")
    vehicle_type: str | None = Field(default=None, max_length=20)


class OfferResponse(BaseModel):
    id: str
    task_id: str
    worker_id: str
    price: int
    vehicle_type: str | None = None
    status: str
    created_at: str | None = None
    expires_at: str | None = None
    worker_name: str | None = None
    worker_rating: float | None = None
    worker_reviews: int | None = None


class OffersListResponse(BaseModel):
    offers: list[OfferResponse]
    total: int


class AcceptResponse(BaseModel):
    task: dict
    offer: OfferResponse
    channel: dict
    rejected_worker_ids: list[str]


class RateRequest(BaseModel):
    score: int = Field(description="1-5")
    comment: str | None = Field(default=None, max_length=1000)


class RateResponse(BaseModel):
    id: str
    task_id: str
    rated_id: str
    score: int
    comment: str | None = None
    created_at: str | None = None


class DisputeRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class ResolveDisputeRequest(BaseModel):
    outcome: Literal["completed", "cancelled"]

    @property
    def status(self) -> TaskStatus:
        return TaskStatus(self.outcome)


class LocationRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class AvailabilityRequest(BaseModel):
    available: bool


class ReviewWorkerRequest(BaseModel):
    approve: bool
    reason: str | None = Field(default=None, max_length=500)


class TasksListResponse(BaseModel):
    tasks: list[dict]
    total: int
