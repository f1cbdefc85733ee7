"""
CityCandidate: one discovered town or neighborhood awaiting a commute check.

Candidates are built per request by place_search.py and city_catalog.py,
merged by reconciler.py and consumed by commute_filter.py.  Nothing is
persisted.
"""

from dataclasses import dataclass
from typing import Optional

from geo import Coordinate

SOURCE_PLACES = "places"
SOURCE_CATALOG = "catalog"


@dataclass(frozen=True)
class CityCandidate:
    identity: str               # place_id, or city_<Name>_<ST> for catalog rows
    display_name: str
    formatted_address: str
    location: Coordinate
    source: str = SOURCE_PLACES
    place_id: Optional[str] = None
    state: str = ""             # state code, catalog rows only


def name_key(name: str) -> str:
    """Lowercase-trimmed name, the provisional dedup key within one source."""
    return (name or "").strip().lower()
