"""Address resolution and distance providers."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import httpx
from cachetools import LRUCache

from errandhub.geo import Coordinate, Place, format_coordinate, haversine_km
from errandhub.retry import classify_http_error

logger = logging.getLogger("errandhub.adapters.geocoding")


class Geocoder(Protocol):
    async def resolve_address(self, text: str) -> Place | None: ...

    async def reverse_resolve(self, coord: Coordinate) -> str: ...


class DistanceProvider(Protocol):
    async def distance_km(
        self, origin: Coordinate, destinations: Sequence[Coordinate]
    ) -> list[float]: ...


class HaversineDistance:
    """Great-circle distances computed locally."""

    async def distance_km(
        self, origin: Coordinate, destinations: Sequence[Coordinate]
    ) -> list[float]:
        return [haversine_km(origin, d) for d in destinations]


class OfflineGeocoder:
    """Used when no geocoding service is configured: coordinates only."""

    async def resolve_address(self, text: str) -> Place | None:
        return None

    async def reverse_resolve(self, coord: Coordinate) -> str:
        return format_coordinate(coord)


class NominatimGeocoder:
    """Geocoder for Nominatim-compatible ``/search`` and ``/reverse`` endpoints."""

    def __init__(self, base_url: str, user_agent: str, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers={"User-Agent": user_agent}
        )

    async def _get(self, path: str, params: dict) -> object:
        try:
            resp = await self._client.get(path, params=params)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc) from exc
        return resp.json()

    async def resolve_address(self, text: str) -> Place | None:
        data = await self._get("/search", {"q": text, "format": "jsonv2", "limit": 1})
        if not isinstance(data, list) or not data:
            return None
        hit = data[0]
        coord = Coordinate(float(hit["lat"]), float(hit["lon"]))
        return Place(coord, hit.get("display_name") or text)

    async def reverse_resolve(self, coord: Coordinate) -> str:
        data = await self._get(
            "/reverse",
            {"lat": coord.latitude, "lon": coord.longitude, "format": "jsonv2"},
        )
        if isinstance(data, dict) and data.get("display_name"):
            return data["display_name"]
        return format_coordinate(coord)

    async def aclose(self) -> None:
        await self._client.aclose()


class CachingGeocoder:
    """LRU cache in front of a geocoder; both lookups are idempotent."""

    def __init__(self, inner: Geocoder, max_entries: int = 1024):
        self._inner = inner
        self._forward: LRUCache[str, Place | None] = LRUCache(maxsize=max_entries)
        self._reverse: LRUCache[tuple[float, float], str] = LRUCache(maxsize=max_entries)

    async def resolve_address(self, text: str) -> Place | None:
        key = " ".join(text.lower().split())
        if key in self._forward:
            return self._forward[key]
        place = await self._inner.resolve_address(text)
        self._forward[key] = place
        return place

    async def reverse_resolve(self, coord: Coordinate) -> str:
        key = (round(coord.latitude, 6), round(coord.longitude, 6))
        if key in self._reverse:
            return self._reverse[key]
        address = await self._inner.reverse_resolve(coord)
        self._reverse[key] = address
        return address
