"""SQLModel table definitions for ErrandHub."""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class TaskKind(str, enum.Enum):
    delivery = "delivery"
    errand = "errand"


class TaskStatus(str, enum.Enum):
    pending = "pending"
    offered = "offered"
    accepted = "accepted"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    disputed = "disputed"
    expired = "expired"


class OfferStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    expired = "expired"


class WorkerRole(str, enum.Enum):
    rider = "rider"
    errander = "errander"


class VerificationStatus(str, enum.Enum):
    pending = "pending"
    verified = "verified"
    rejected = "rejected"


class VehicleType(str, enum.Enum):
    motorcycle = "motorcycle"
    car = "car"
    van = "van"
    bicycle = "bicycle"


class ChannelStatus(str, enum.Enum):
    open = "open"
    closing = "closing"
    closed = "closed"
    abandoned = "abandoned"


OPEN_TASK_STATUSES = (TaskStatus.pending, TaskStatus.offered)
ACTIVE_TASK_STATUSES = (TaskStatus.accepted, TaskStatus.in_progress)
CHANNEL_CLOSING_STATUSES = (TaskStatus.completed, TaskStatus.cancelled, TaskStatus.disputed)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Worker(SQLModel, table=True):
    __tablename__ = "workers"
    __table_args__ = (
        Index("ix_workers_search", "role", "verification_status", "is_available"),
    )

    id: str = Field(primary_key=True)  # external chat identity
    role: WorkerRole
    full_name: str
    phone_number: str = Field(unique=True)
    bank_details: str
    national_id: str = Field(unique=True)
    vehicle_type: VehicleType | None = None
    verification_status: VerificationStatus = Field(default=VerificationStatus.pending)
    rejection_reason: str | None = None
    is_available: bool = Field(default=True)
    last_latitude: float | None = None
    last_longitude: float | None = None
    location_updated_at: datetime | None = None
    rating_aggregate: float = Field(default=0.0)
    review_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_status_expires_at", "status", "expires_at"),
        Index("ix_tasks_customer_status", "customer_id", "status"),
    )

    id: str = Field(primary_key=True)
    customer_id: str = Field(index=True)
    kind: TaskKind
    status: TaskStatus = Field(default=TaskStatus.pending, index=True)
    pickup_latitude: float | None = None
    pickup_longitude: float | None = None
    pickup_address: str | None = None
    dropoff_latitude: float | None = None
    dropoff_longitude: float | None = None
    dropoff_address: str | None = None
    location_latitude: float | None = None
    location_longitude: float | None = None
    location_address: str | None = None
    instructions: str | None = None
    assigned_worker_id: str | None = Field(default=None, foreign_key="workers.id", index=True)
    channel_id: str | None = None
    search_radius_km: float | None = None
    candidate_count: int | None = None
    searched_at: datetime | None = None
    dispute_reason: str | None = None
    disputed_by: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime | None = Field(default=None, index=True)
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class Offer(SQLModel, table=True):
    __tablename__ = "offers"
    __table_args__ = (
        Index("ix_offers_task_status", "task_id", "status"),
        # A worker holds at most one pending offer per task
        Index(
            "ux_offers_pending_worker",
            "task_id",
            "worker_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: str = Field(primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    worker_id: str = Field(foreign_key="workers.id", index=True)
    price: int = Field(gt=0)
    vehicle_type: VehicleType | None = None
    status: OfferStatus = Field(default=OfferStatus.pending)
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime | None = Field(default=None, index=True)


class TaskCandidate(SQLModel, table=True):
    __tablename__ = "task_candidates"
    __table_args__ = (Index("ix_task_candidates_pair", "task_id", "worker_id", unique=True),)

    id: str = Field(primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    worker_id: str = Field(foreign_key="workers.id", index=True)
    distance_km: float
    rank: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)


class Channel(SQLModel, table=True):
    __tablename__ = "channels"
    __table_args__ = (Index("ix_channels_status_close_after", "status", "close_after"),)

    id: str = Field(primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", unique=True)
    customer_id: str
    worker_id: str = Field(foreign_key="workers.id")
    external_ref: str | None = None  # id assigned by the chat transport
    status: ChannelStatus = Field(default=ChannelStatus.open)
    close_after: datetime | None = None
    close_attempts: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)
    closed_at: datetime | None = None


class Rating(SQLModel, table=True):
    __tablename__ = "ratings"
    __table_args__ = (Index("ix_ratings_task_rated", "task_id", "rated_id", unique=True),)

    id: str = Field(primary_key=True)
    task_id: str = Field(foreign_key="tasks.id")
    rater_id: str
    rated_id: str = Field(foreign_key="workers.id", index=True)
    score: int = Field(ge=1, le=5)
    comment: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class ConversationSession(SQLModel, table=True):
    __tablename__ = "conversation_sessions"

    owner_id: str = Field(primary_key=True)
    flow: str
    step: str
    data: str = Field(default="{}")  # JSON-encoded flow state
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime = Field(index=True)
