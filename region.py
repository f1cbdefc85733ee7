"""
Administrative region lookup for the work location.

The state scopes the static catalog query and the "cities in {state}" text
searches; the county adds county-scoped text searches.  Region resolution
is best-effort: any failure yields an empty Region and discovery carries on
with coordinate-only queries.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

from geo import Coordinate
from health_monitor import record_failure
from maps_client import failure_kind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Region:
    state: str = ""         # short name, e.g. "CA"
    state_full: str = ""    # long name, e.g. "California"
    county: str = ""        # e.g. "Los Angeles County"
    city: str = ""


def _first_component(results: List[Dict], component_type: str) -> Optional[Dict]:
    """First address component of *component_type* across the ordered results."""
    for result in results:
        for component in result.get("address_components") or []:
            if component_type in (component.get("types") or []):
                return component
    return None


def region_from_results(results: List[Dict]) -> Region:
    """Pick state, county and city out of reverse-geocode results.

    Each field is taken from the first result that has it; they may come
    from different results.
    """
    state = _first_component(results, "administrative_area_level_1") or {}
    county = _first_component(results, "administrative_area_level_2") or {}
    city = _first_component(results, "locality") or {}
    return Region(
        state=state.get("short_name", "") or "",
        state_full=state.get("long_name", "") or "",
        county=county.get("long_name", "") or "",
        city=city.get("long_name", "") or "",
    )


def resolve_region(maps, point: Coordinate) -> Region:
    """Reverse-geocode *point* into a Region; never raises."""
    try:
        results = maps.reverse_geocode(point)
        return region_from_results(results)
    except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
        kind = failure_kind(e)
        logger.warning(
            "[region] Reverse geocode failed for %s (%s): %s",
            point.as_param(), kind, e,
        )
        record_failure("region", kind)
        return Region()
