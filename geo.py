"""
Coordinate type and great-circle distance.

Straight-line distance is only used as a coarse pre-filter (static city
catalog radius).  Real commute time always comes from the Distance Matrix
API in commute_filter.py.
"""

import math
from dataclasses import dataclass
from typing import Dict

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 latitude/longitude pair."""
    lat: float
    lng: float

    def is_valid(self) -> bool:
        if not isinstance(self.lat, (int, float)) or not isinstance(self.lng, (int, float)):
            return False
        if not (math.isfinite(self.lat) and math.isfinite(self.lng)):
            return False
        return -90.0 <= self.lat <= 90.0 and -180.0 <= self.lng <= 180.0

    def as_param(self) -> str:
        """Format as the ``lat,lng`` string Google Maps endpoints expect."""
        return f"{self.lat},{self.lng}"

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Haversine distance in kilometres between two coordinates."""
    lat1, lng1 = math.radians(a.lat), math.radians(a.lng)
    lat2, lng2 = math.radians(b.lat), math.radians(b.lng)

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    # Rounding can push h a hair above 1.0 for near-antipodal points.
    h = min(1.0, h)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_KM * c
