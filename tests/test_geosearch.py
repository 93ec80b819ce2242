"""Expanding-radius worker search."""

from datetime import timedelta

import pytest

from errandhub.adapters.geocoding import HaversineDistance
from errandhub.db_models import WorkerRole
from errandhub.errors import ValidationError
from errandhub.geo import Coordinate, haversine_km
from errandhub.services.geosearch import Geosearch, SearchPolicy, policy_for
from errandhub.utils import utcnow
from tests.conftest import LAGOS, add_worker


def _north_of(origin: Coordinate, km: float) -> Coordinate:
    # One degree of latitude is ~111.2 km
    return Coordinate(origin.latitude + km / 111.2, origin.longitude)


@pytest.mark.parametrize("role", [WorkerRole.rider, WorkerRole.errander])
def test_radii_increase_and_end_at_cap(role):
    radii = policy_for(role).radii()
    assert radii == sorted(set(radii))
    assert radii[-1] == policy_for(role).max_km


def test_default_radii():
    assert policy_for(WorkerRole.rider).radii() == [3.0, 6.0, 9.0, 12.0]
    assert policy_for(WorkerRole.errander).radii() == [2.0, 3.0, 4.0, 5.0, 6.0]


def test_uneven_step_still_stops_at_cap():
    assert SearchPolicy(2.0, 4.0, 7.0).radii() == [2.0, 6.0, 7.0]
    assert SearchPolicy(10.0, 1.0, 5.0).radii() == [5.0]


@pytest.mark.asyncio
async def test_search_widens_until_found(db):
    await add_worker(db, "rider-far", at=_north_of(LAGOS, 7.5))
    search = Geosearch(HaversineDistance())

    async with db() as session:
        result = await search.find_candidates(session, LAGOS, WorkerRole.rider)

    assert result.found
    assert result.radius_km == 9.0
    assert result.steps == 3
    assert [c.worker_id for c in result.candidates] == ["rider-far"]


@pytest.mark.asyncio
async def test_search_stops_at_first_radius_with_candidates(db):
    await add_worker(db, "near", at=_north_of(LAGOS, 1.0))
    await add_worker(db, "far", at=_north_of(LAGOS, 5.0))
    search = Geosearch(HaversineDistance())

    async with db() as session:
        result = await search.find_candidates(session, LAGOS, WorkerRole.rider)

    assert result.radius_km == 3.0
    assert [c.worker_id for c in result.candidates] == ["near"]


@pytest.mark.asyncio
async def test_ineligible_workers_are_skipped(db):
    await add_worker(db, "unverified", at=LAGOS, verified=False)
    await add_worker(db, "busy", at=LAGOS, available=False)
    await add_worker(db, "stale", at=LAGOS, located_at=utcnow() - timedelta(hours=2))
    await add_worker(db, "nowhere", at=None)
    await add_worker(db, "errander", role=WorkerRole.errander, at=LAGOS)
    await add_worker(db, "me", at=LAGOS)
    search = Geosearch(HaversineDistance())

    async with db() as session:
        result = await search.find_candidates(
            session, LAGOS, WorkerRole.rider, exclude=frozenset({"me"})
        )

    assert not result.found
    assert result.radius_km == 12.0
    assert result.steps == 4


@pytest.mark.asyncio
async def test_equal_distance_ties_broken_by_id(db):
    spot = _north_of(LAGOS, 1.0)
    for worker_id in ("w-c", "w-a", "w-b"):
        await add_worker(db, worker_id, at=spot)
    search = Geosearch(HaversineDistance())

    async with db() as session:
        first = await search.find_candidates(session, LAGOS, WorkerRole.rider)
        second = await search.find_candidates(session, LAGOS, WorkerRole.rider)

    assert [c.worker_id for c in first.candidates] == ["w-a", "w-b", "w-c"]
    assert first.candidates == second.candidates


@pytest.mark.asyncio
async def test_no_riders_between_two_lagos_points(db, engine):
    pickup = Coordinate(6.5, 3.3)
    dropoff = Coordinate(6.6, 3.4)
    assert haversine_km(pickup, dropoff) > 12.0
    # The only rider sits at the drop-off, outside the cap around the pickup
    await add_worker(db, "rider-at-dropoff", at=dropoff)

    result = await engine.find_candidates(pickup, WorkerRole.rider)

    assert not result.found
    assert result.radius_km == 12.0


@pytest.mark.asyncio
async def test_find_candidates_rejects_bad_center(engine):
    with pytest.raises(ValidationError):
        await engine.find_candidates(Coordinate(91.0, 0.0), WorkerRole.rider)
