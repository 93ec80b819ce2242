"""Worker search around a point, widening the radius until someone is found."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errandhub.adapters.geocoding import DistanceProvider
from errandhub.config import settings
from errandhub.db_models import TaskKind, VerificationStatus, Worker, WorkerRole
from errandhub.geo import Coordinate
from errandhub.retry import call_external
from errandhub.utils import utcnow

logger = logging.getLogger("errandhub.geosearch")


@dataclass(frozen=True)
class SearchPolicy:
    initial_km: float
    step_km: float
    max_km: float

    def radii(self) -> list[float]:
        """Radii to try, in order, always ending exactly at the cap."""
        if self.initial_km >= self.max_km:
            return [self.max_km]
        if self.step_km <= 0:
            return [self.initial_km, self.max_km]
        out: list[float] = []
        i = 0
        while (radius := round(self.initial_km + i * self.step_km, 6)) < self.max_km:
            out.append(radius)
            i += 1
        out.append(self.max_km)
        return out


def policy_for(role: WorkerRole) -> SearchPolicy:
    if role == WorkerRole.rider:
        return SearchPolicy(
            settings.rider_initial_radius_km,
            settings.rider_radius_step_km,
            settings.rider_max_radius_km,
        )
    return SearchPolicy(
        settings.errander_initial_radius_km,
        settings.errander_radius_step_km,
        settings.errander_max_radius_km,
    )


def role_for_kind(kind: TaskKind) -> WorkerRole:
    return WorkerRole.rider if kind == TaskKind.delivery else WorkerRole.errander


@dataclass(frozen=True)
class Candidate:
    worker_id: str
    distance_km: float


@dataclass
class SearchResult:
    role: WorkerRole
    candidates: list[Candidate] = field(default_factory=list)
    radius_km: float = 0.0
    steps: int = 0

    @property
    def found(self) -> bool:
        return bool(self.candidates)

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "found": self.found,
            "radius_km": self.radius_km,
            "steps": self.steps,
            "candidates": [
                {"worker_id": c.worker_id, "distance_km": round(c.distance_km, 3)}
                for c in self.candidates
            ],
        }


class Geosearch:
    def __init__(self, distance: DistanceProvider):
        self._distance = distance

    async def workers_within(
        self,
        session: AsyncSession,
        center: Coordinate,
        role: WorkerRole,
        radius_km: float,
        exclude: frozenset[str] = frozenset(),
    ) -> list[Candidate]:
        """Verified, available workers with a fresh location inside the radius.

        Sorted by distance, ties broken by worker id.
        """
        fresh_after = utcnow() - timedelta(minutes=settings.location_stale_minutes)
        result = await session.execute(
            select(Worker)
            .where(
                Worker.role == role,
                Worker.verification_status == VerificationStatus.verified,
                Worker.is_available.is_(True),
                Worker.last_latitude != None,  # noqa: E711
                Worker.last_longitude != None,  # noqa: E711
                Worker.location_updated_at >= fresh_after,
            )
            .order_by(Worker.id)
        )
        pool = [w for w in result.scalars().all() if w.id not in exclude]
        if not pool:
            return []

        destinations = [Coordinate(w.last_latitude, w.last_longitude) for w in pool]
        distances = await call_external(
            "distance_km", self._distance.distance_km, center, destinations
        )
        inside = [
            Candidate(w.id, d) for w, d in zip(pool, distances, strict=True) if d <= radius_km
        ]
        inside.sort(key=lambda c: (c.distance_km, c.worker_id))
        return inside

    async def find_candidates(
        self,
        session: AsyncSession,
        center: Coordinate,
        role: WorkerRole,
        exclude: frozenset[str] = frozenset(),
    ) -> SearchResult:
        """Expand from the role's initial radius until candidates appear or the cap is hit."""
        search = SearchResult(role=role)
        for radius in policy_for(role).radii():
            search.steps += 1
            search.radius_km = radius
            search.candidates = await self.workers_within(session, center, role, radius, exclude)
            if search.candidates:
                break
        logger.info(
            "Search for %s around %s: %d found at %.1f km after %d step(s)",
            role.value,
            center.as_tuple(),
            len(search.candidates),
            search.radius_km,
            search.steps,
        )
        return search
