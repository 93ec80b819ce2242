"""Coordinates, places and great-circle distance."""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_KM = 6371.0088


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def is_valid(self) -> bool:
        return -90.0 <= self.latitude <= 90.0 and -180.0 <= self.longitude <= 180.0

    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


@dataclass(frozen=True)
class Place:
    coordinate: Coordinate
    address: str

    def to_dict(self) -> dict:
        return {
            "latitude": self.coordinate.latitude,
            "longitude": self.coordinate.longitude,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Place:
        return cls(Coordinate(data["latitude"], data["longitude"]), data["address"])


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def format_coordinate(coord: Coordinate) -> str:
    return f"{coord.latitude:.5f}, {coord.longitude:.5f}"
