"""
Static US city catalog.

Loads an offline city dataset (SimpleMaps "US Cities" export, JSON) and
answers "which cities lie within R km of this point" queries.  Place search
alone misses small towns in sparse areas; the catalog fills those gaps.

Expected JSON format (array of objects, extra keys ignored):
    [
      {"city": "New York", "state_id": "NY", "state_name": "New York",
       "lat": 40.7128, "lng": -74.0060, "population": 8175133},
      ...
    ]
lat/lng/population may be numbers or numeric strings.

The dataset is loaded lazily, once per process, and cached until reload().
Graceful degradation: a missing or corrupt file yields an empty catalog and
a warning; the finder carries on with place-search results only.
"""

import json
import logging
import math
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from candidates import SOURCE_CATALOG, CityCandidate
from finder_config import SEARCH_CONFIG, SearchConfig
from geo import Coordinate, distance_km
from health_monitor import DATA_SOURCE_UNAVAILABLE, record_failure

logger = logging.getLogger(__name__)

DEFAULT_CITY_DATA_PATH = os.path.join("data", "us-cities.json")


def _city_data_path() -> str:
    return os.environ.get("CITY_DATA_PATH", DEFAULT_CITY_DATA_PATH)


@dataclass(frozen=True)
class CityRecord:
    city: str
    state_id: str
    state_name: str
    lat: float
    lng: float
    population: Optional[int] = None

    @property
    def location(self) -> Coordinate:
        return Coordinate(self.lat, self.lng)

    @property
    def identity(self) -> str:
        """Synthesized dedup key, e.g. ``city_ElSegundo_CA``."""
        return f"city_{self.city.replace(' ', '')}_{self.state_id.upper()}"

    def to_candidate(self) -> CityCandidate:
        return CityCandidate(
            identity=self.identity,
            display_name=self.city,
            formatted_address=format_city_for_geocoding(self),
            location=self.location,
            source=SOURCE_CATALOG,
            state=self.state_id,
        )


def format_city_for_geocoding(record: CityRecord) -> str:
    """``"City, State Name"``, falling back to the state code."""
    state = record.state_name or record.state_id
    return f"{record.city}, {state}"


def _to_float(value: Any) -> Optional[float]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _parse_record(raw: Dict[str, Any]) -> Optional[CityRecord]:
    """Build a CityRecord from one JSON row, or None if it is unusable."""
    if not isinstance(raw, dict):
        return None
    city = str(raw.get("city") or "").strip()
    lat = _to_float(raw.get("lat"))
    lng = _to_float(raw.get("lng"))
    if not city or lat is None or lng is None:
        return None
    population = _to_float(raw.get("population"))
    return CityRecord(
        city=city,
        state_id=str(raw.get("state_id") or "").strip(),
        state_name=str(raw.get("state_name") or "").strip(),
        lat=lat,
        lng=lng,
        population=int(population) if population is not None else None,
    )


class CityCatalog:
    """
    In-memory city dataset with proximity queries.

    Usage:
        catalog = CityCatalog("data/us-cities.json")
        nearby = catalog.cities_near(Coordinate(40.0, -75.0), 50, "PA")
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or _city_data_path()
        self._lock = threading.Lock()
        self._records: Optional[List[CityRecord]] = None

    def records(self) -> List[CityRecord]:
        """All records, loading the file on first use."""
        records = self._records
        if records is not None:
            return records
        with self._lock:
            if self._records is None:
                self._records = self._load()
            return self._records

    def invalidate(self) -> None:
        """Drop the cached dataset; the next query reloads it."""
        with self._lock:
            self._records = None

    def reload(self) -> int:
        """Re-read the dataset now.  Returns the number of records loaded."""
        self.invalidate()
        return len(self.records())

    def _load(self) -> List[CityRecord]:
        if not os.path.exists(self.path):
            logger.warning(
                "[catalog] City data file not found at %s; "
                "neighborhood finder will use Places results only",
                self.path,
            )
            record_failure("city_catalog", DATA_SOURCE_UNAVAILABLE)
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw_rows = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("[catalog] Could not read city data %s: %s", self.path, e)
            record_failure("city_catalog", DATA_SOURCE_UNAVAILABLE)
            return []
        if not isinstance(raw_rows, list):
            logger.warning("[catalog] City data %s is not a JSON array", self.path)
            record_failure("city_catalog", DATA_SOURCE_UNAVAILABLE)
            return []

        records = [r for r in (_parse_record(row) for row in raw_rows) if r is not None]
        skipped = len(raw_rows) - len(records)
        logger.info(
            "[catalog] Loaded %d cities from %s (%d rows skipped)",
            len(records), self.path, skipped,
        )
        return records

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def cities_in_state(self, state: str) -> List[CityRecord]:
        wanted = (state or "").strip().upper()
        return [r for r in self.records() if r.state_id.upper() == wanted]

    def cities_near(
        self,
        point: Coordinate,
        radius_km: float,
        state: Optional[str] = None,
    ) -> List[CityCandidate]:
        """Cities within *radius_km* of *point*, nearest first.

        No cap on the number returned: a populous state with a large radius
        can yield hundreds of rows.
        """
        pool = self.cities_in_state(state) if state else self.records()

        within = []
        for record in pool:
            d = distance_km(point, record.location)
            if d <= radius_km:
                within.append((d, record))

        # sort() is stable: equidistant rows keep dataset order.
        within.sort(key=lambda pair: pair[0])
        return [record.to_candidate() for _, record in within]


def search_radius_km(
    max_commute_minutes: int,
    mode: str,
    config: SearchConfig = SEARCH_CONFIG,
) -> float:
    """Catalog search radius for a commute budget.

    Straight-line distance is a poor predictor of road or transit time, so
    the radius is deliberately generous; Distance Matrix does the real
    filtering.  The floor keeps sparse states from being under-covered.
    """
    factor = config.speed_factors.get(mode, 1.0)
    return max(
        config.catalog_radius_floor_km,
        config.catalog_radius_multiplier * max_commute_minutes * factor,
    )


# ---------------------------------------------------------------------------
# Process-wide default catalog
# ---------------------------------------------------------------------------

_default_catalog: Optional[CityCatalog] = None
_default_lock = threading.Lock()


def get_catalog() -> CityCatalog:
    """The shared catalog for this process (path from CITY_DATA_PATH)."""
    global _default_catalog
    if _default_catalog is None:
        with _default_lock:
            if _default_catalog is None:
                _default_catalog = CityCatalog()
    return _default_catalog


def reset_catalog() -> None:
    """Forget the shared catalog so the next get_catalog() re-reads the env."""
    global _default_catalog
    with _default_lock:
        _default_catalog = None
