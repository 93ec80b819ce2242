"""Test fixtures with in-memory SQLite via SQLModel."""

from __future__ import annotations

import itertools
from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from errandhub.adapters.geocoding import HaversineDistance
from errandhub.config import settings
from errandhub.database import get_db_session
from errandhub.db_models import (  # noqa: F401 (registers tables)
    Channel,
    ConversationSession,
    Offer,
    Rating,
    Task,
    TaskCandidate,
    TaskKind,
    VehicleType,
    VerificationStatus,
    Worker,
    WorkerRole,
)
from errandhub.dispatch import DispatchEngine
from errandhub.flows import PlaceData, TaskCreationState
from errandhub.geo import Coordinate, Place
from errandhub.main import app
from errandhub.rate_limit import limiter
from errandhub.services.tasks import create_task
from errandhub.utils import utcnow
from tests.fakes import FakeGeocoder, FakeTransport, FakeVerifier

LAGOS = Coordinate(6.5, 3.3)
ADMIN_KEY = "test-admin-key"

_seq = itertools.count(1)


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "external_backoff_seconds", 0.0)
    monkeypatch.setattr(settings, "external_backoff_max_seconds", 0.0)
    monkeypatch.setattr(settings, "gateway_key", None)
    monkeypatch.setattr(settings, "admin_key", ADMIN_KEY)
    monkeypatch.setattr(settings, "flow_conflict_policy", "reject")
    monkeypatch.setattr(settings, "max_active_tasks_per_customer", 0)


@pytest.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite://", echo=False, connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)  # type: ignore[call-overload]

    async def override_get_db_session():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session

    yield factory

    app.dependency_overrides.clear()
    await engine.dispose()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def geocoder():
    return FakeGeocoder(
        {"12 marina road": Place(Coordinate(6.45, 3.39), "12 Marina Road, Lagos Island")}
    )


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def engine(db, geocoder, verifier, transport):
    return DispatchEngine(
        db,
        geocoder=geocoder,
        distance=HaversineDistance(),
        identity=verifier,
        transport=transport,
    )


@pytest.fixture
async def client(db, engine):
    app.state.dispatch = engine
    limiter.reset()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def caller(caller_id: str) -> dict:
    return {"X-Caller-Id": caller_id}


def admin() -> dict:
    return {"Authorization": f"Bearer {ADMIN_KEY}"}


async def add_worker(
    factory,
    worker_id: str,
    role: WorkerRole = WorkerRole.rider,
    at: Coordinate | None = LAGOS,
    verified: bool = True,
    available: bool = True,
    located_at: datetime | None = None,
) -> Worker:
    """Helper: insert a worker with a fresh location."""
    n = next(_seq)
    worker = Worker(
        id=worker_id,
        role=role,
        full_name=f"Worker {worker_id}",
        phone_number=f"+23480{n:08d}",
        bank_details="First Bank 0123456789 Test Account",
        national_id=f"{n:011d}",
        vehicle_type=VehicleType.motorcycle if role == WorkerRole.rider else None,
        verification_status=(
            VerificationStatus.verified if verified else VerificationStatus.pending
        ),
        is_available=available,
        last_latitude=at.latitude if at else None,
        last_longitude=at.longitude if at else None,
        location_updated_at=(located_at or utcnow()) if at else None,
    )
    async with factory() as session:
        session.add(worker)
        await session.commit()
    return worker


async def add_task(
    factory,
    customer_id: str = "cust-1",
    kind: TaskKind = TaskKind.delivery,
    at: Coordinate = LAGOS,
    instructions: str | None = None,
) -> Task:
    """Helper: persist a pending task around ``at`` without running a search."""
    here = PlaceData(latitude=at.latitude, longitude=at.longitude, address="Pickup point")
    if kind == TaskKind.delivery:
        there = PlaceData(
            latitude=at.latitude + 0.1, longitude=at.longitude + 0.1, address="Drop-off point"
        )
        state = TaskCreationState(kind=kind, pickup=here, dropoff=there, instructions=instructions)
    else:
        state = TaskCreationState(kind=kind, location=here, instructions=instructions)
    async with factory() as session:
        task = await create_task(session, customer_id, state)
        await session.commit()
    return task
