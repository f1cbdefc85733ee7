"""
Place-search discovery of towns and neighborhoods around a work location.

Two query styles against Google Places:

  1. Text Search: a fixed battery of natural-language queries ("cities
     near 34.05,-118.24", "cities in California", county-scoped variants).
     Locality queries use the server-side ``type=locality`` filter; the
     neighborhood battery runs untyped and is filtered client-side.
  2. Nearby Search: an escalating ladder of radii for localities and
     neighborhoods (finder_config.NearbyPass), following next_page_token
     up to a per-pass page limit.

Pagination constraint: a next_page_token is rejected (INVALID_REQUEST) if
used immediately after it is issued.  Pages within one pass are therefore
fetched strictly in sequence with a page_token_delay sleep before each
continuation.  Separate queries and passes have no ordering dependency and
run concurrently, capped at max_concurrency workers.

Every query is independently fallible: a timeout, malformed response or
non-OK status is logged, counted, and that query contributes nothing.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import requests

from candidates import SOURCE_PLACES, CityCandidate, name_key
from cs_trace import with_trace
from finder_config import SEARCH_CONFIG, NearbyPass, SearchConfig
from geo import Coordinate
from health_monitor import record_failure
from maps_client import failure_kind
from region import Region

logger = logging.getLogger(__name__)

LOCALITY_TYPE = "locality"

# Client-side filter for the untyped text battery.
NEIGHBORHOOD_TYPES = frozenset({
    "neighborhood",
    "sublocality",
    "sublocality_level_1",
    "political",
})

# Location bias for text queries.
TEXT_SEARCH_RADIUS_METERS = 50000

_RECOVERABLE = (requests.RequestException, ValueError, KeyError, TypeError)


@dataclass(frozen=True)
class TextQuery:
    query: str
    place_type: Optional[str] = None    # server-side filter; None = filter client-side


def build_text_queries(point: Coordinate, region: Region) -> List[TextQuery]:
    """The text-search battery for a work point, localities first."""
    coords = f"{point.lat},{point.lng}"
    state_label = region.state_full or region.state
    county_label = (
        f"{region.county}, {region.state}" if region.county and region.state
        else region.county
    )

    locality = [f"cities near {coords}", f"towns near {coords}"]
    neighborhood = [f"neighborhoods near {coords}"]
    if state_label:
        locality.append(f"cities in {state_label}")
        neighborhood.append(f"neighborhoods in {state_label}")
    if county_label:
        locality.append(f"cities in {county_label}")
        locality.append(f"towns in {county_label}")
        neighborhood.append(f"neighborhoods in {county_label}")

    return (
        [TextQuery(q, LOCALITY_TYPE) for q in locality]
        + [TextQuery(q, None) for q in neighborhood]
    )


def candidate_from_place(place: Dict) -> Optional[CityCandidate]:
    """Normalize one Places result; None if it has no name or usable geometry."""
    if not isinstance(place, dict):
        return None
    try:
        name = (place.get("name") or "").strip()
        location = ((place.get("geometry") or {}).get("location")) or {}
        lat, lng = location.get("lat"), location.get("lng")
        if not name or lat is None or lng is None:
            return None
        point = Coordinate(float(lat), float(lng))
    except (AttributeError, TypeError, ValueError) as e:
        logger.debug("[places] skipping malformed hit %r: %s", place.get("name"), e)
        return None
    if not point.is_valid():
        return None
    place_id = place.get("place_id") or None
    address = place.get("vicinity") or place.get("formatted_address") or name
    return CityCandidate(
        identity=place_id or f"name:{name_key(name)}",
        display_name=name,
        formatted_address=address,
        location=point,
        source=SOURCE_PLACES,
        place_id=place_id,
    )


def _is_neighborhood(place: Dict) -> bool:
    return isinstance(place, dict) and bool(NEIGHBORHOOD_TYPES.intersection(place.get("types") or []))


def _deadline_passed(deadline: Optional[float], margin: float = 0.0) -> bool:
    return deadline is not None and time.monotonic() + margin >= deadline


# =============================================================================
# Individual queries (each runs on a worker thread)
# =============================================================================

def run_text_query(maps, text_query: TextQuery, point: Coordinate) -> List[Dict]:
    """One text search.  Returns raw places; [] on any failure."""
    try:
        places, _ = maps.text_search(
            text_query.query,
            location=point,
            radius_meters=TEXT_SEARCH_RADIUS_METERS,
            place_type=text_query.place_type,
        )
    except _RECOVERABLE as e:
        kind = failure_kind(e)
        logger.warning("[places] text search %r failed (%s): %s", text_query.query, kind, e)
        record_failure("place_search", kind)
        return []

    if text_query.place_type is None:
        places = [p for p in places if _is_neighborhood(p)]
    return places


def run_nearby_pass(
    maps,
    point: Coordinate,
    nearby_pass: NearbyPass,
    page_token_delay: float,
    deadline: Optional[float] = None,
) -> List[Dict]:
    """All pages of one nearby search, fetched in order.

    A failed page ends this pass but keeps the pages already fetched.
    """
    places: List[Dict] = []
    page_token: Optional[str] = None

    for page in range(nearby_pass.max_pages):
        if page_token:
            if _deadline_passed(deadline, page_token_delay):
                logger.info(
                    "[places] deadline reached; stopping %s pass at %skm after %d pages",
                    nearby_pass.kind, nearby_pass.radius_km, page,
                )
                break
            # The token only becomes valid a short while after it is issued.
            time.sleep(page_token_delay)
        try:
            results, page_token = maps.nearby_search(
                point,
                nearby_pass.radius_meters,
                place_type=nearby_pass.kind,
                page_token=page_token,
            )
        except _RECOVERABLE as e:
            kind = failure_kind(e)
            logger.warning(
                "[places] nearby %s pass %skm page %d failed (%s): %s",
                nearby_pass.kind, nearby_pass.radius_km, page + 1, kind, e,
            )
            record_failure("place_search", kind)
            break

        places.extend(results)
        if not page_token:
            break

    return places


# =============================================================================
# Discovery
# =============================================================================

def discover_places(
    maps,
    point: Coordinate,
    region: Region,
    config: SearchConfig = SEARCH_CONFIG,
    deadline: Optional[float] = None,
) -> List[CityCandidate]:
    """Run the text battery and every nearby pass; return unique candidates.

    Order is deterministic regardless of thread scheduling: text queries
    (localities, then neighborhoods), then nearby passes in config order.
    Duplicates by lowercase name are dropped, first seen wins.
    """
    tasks: List[Callable[[], List[Dict]]] = []
    labels: List[str] = []

    for tq in build_text_queries(point, region):
        tasks.append(lambda tq=tq: run_text_query(maps, tq, point))
        labels.append(f"text:{tq.query}")
    for np_ in config.nearby_passes:
        tasks.append(lambda np_=np_: run_nearby_pass(
            maps, point, np_, config.page_token_delay, deadline,
        ))
        labels.append(f"nearby:{np_.kind}:{np_.radius_km}km")

    pool = ThreadPoolExecutor(max_workers=config.max_concurrency)
    try:
        futures = [pool.submit(with_trace(task)) for task in tasks]
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        done, not_done = wait(futures, timeout=timeout)
        if not_done:
            logger.warning(
                "[places] deadline reached with %d of %d queries unfinished",
                len(not_done), len(futures),
            )
    finally:
        # Unstarted queries are cancelled; running ones finish in the background.
        pool.shutdown(wait=False, cancel_futures=True)

    seen: set = set()
    candidates: List[CityCandidate] = []
    raw_hits = 0
    for label, future in zip(labels, futures):
        if future not in done:
            continue
        try:
            places = future.result()
        except Exception:
            logger.exception("[places] query %s crashed", label)
            record_failure("place_search", "unexpected")
            continue
        raw_hits += len(places)
        for place in places:
            candidate = candidate_from_place(place)
            if candidate is None:
                continue
            key = name_key(candidate.display_name)
            if key in seen:
                continue
            seen.add(key)
            candidates.append(candidate)

    logger.info(
        "[places] %d queries, %d raw hits, %d unique candidates",
        len(futures), raw_hits, len(candidates),
    )
    return candidates
