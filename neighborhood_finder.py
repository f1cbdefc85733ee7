#!/usr/bin/env python3
"""
Neighborhood Finder

Given a work location, a travel mode and a maximum commute, finds the towns
and neighborhoods a person could live in.

Pipeline (linear, no retries):
  1. region    reverse-geocode the work point for state and county
  2. discover  Places text/nearby search and the static city catalog,
                 run concurrently
  3. reconcile merge and deduplicate the candidate lists
  4. filter    batched Distance Matrix queries, keep those within budget,
                 shortest commute first

Every stage degrades to partial or empty data instead of failing.  The only
exception that leaves find_neighborhoods() is InputValidationError, raised
before any network call.  An overall deadline (SEARCH_CONFIG.deadline_seconds)
bounds the whole call; on expiry whatever has been gathered is returned.
Discovery stops early enough to leave filter_reserve_fraction of that budget
for the commute filter.

Requirements:
- Google Maps API key (Geocoding, Places, Distance Matrix)
- Optional: data/us-cities.json (SimpleMaps US cities) for catalog coverage

Usage:
    python neighborhood_finder.py "1 World Way, Los Angeles, CA" --max-time 30
    python neighborhood_finder.py "Penn Station, New York" --mode train --max-time 45 --json
"""

import argparse
import dataclasses
import json
import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, List, Optional

from dotenv import load_dotenv

from candidates import CityCandidate
from city_catalog import CityCatalog, get_catalog, search_radius_km
from commute_filter import CommuteResult, TravelMode, filter_by_commute, parse_travel_mode
from cs_trace import get_trace, with_trace
from finder_config import SEARCH_CONFIG, SearchConfig
from geo import Coordinate
from place_search import discover_places
from reconciler import merge
from region import Region, resolve_region

logger = logging.getLogger(__name__)

load_dotenv()


class InputValidationError(ValueError):
    """Caller input is unusable; raised before any network call."""


@dataclass(frozen=True)
class SearchContext:
    work_location: Coordinate
    travel_mode: TravelMode
    max_commute_minutes: int
    resolved_state: str = ""
    resolved_county: str = ""


def build_search_context(
    work_location: Optional[Coordinate],
    mode: Any,
    max_commute_minutes: Any,
) -> SearchContext:
    """Validate caller input into a SearchContext.

    Raises InputValidationError for a missing or out-of-range coordinate,
    an unknown travel mode, or a non-positive commute budget.
    """
    if not isinstance(work_location, Coordinate):
        raise InputValidationError("Work location (lat, lng) is required")
    if not work_location.is_valid():
        raise InputValidationError(
            f"Work location {work_location.lat},{work_location.lng} is out of range"
        )
    if isinstance(max_commute_minutes, bool) or not isinstance(max_commute_minutes, int):
        raise InputValidationError("maxTime must be a whole number of minutes")
    if max_commute_minutes < 1:
        raise InputValidationError("maxTime must be a positive number")
    try:
        travel_mode = parse_travel_mode(mode)
    except ValueError as e:
        raise InputValidationError(str(e)) from e

    return SearchContext(
        work_location=work_location,
        travel_mode=travel_mode,
        max_commute_minutes=max_commute_minutes,
    )


# =============================================================================
# Stages
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1, exc=exc)
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0, exc_info=True)
        raise
    finally:
        if trace:
            trace.end_stage()


def _catalog_candidates(
    catalog: CityCatalog,
    context: SearchContext,
    config: SearchConfig,
) -> List[CityCandidate]:
    radius = search_radius_km(
        context.max_commute_minutes, context.travel_mode.value, config,
    )
    candidates = catalog.cities_near(
        context.work_location, radius, context.resolved_state,
    )
    logger.info(
        "[catalog] %d cities within %.0fkm in %s",
        len(candidates), radius, context.resolved_state,
    )
    return candidates


def _discover(
    maps,
    context: SearchContext,
    region: Region,
    catalog: CityCatalog,
    config: SearchConfig,
    deadline: Optional[float],
) -> List[List[CityCandidate]]:
    """Place search and catalog lookup side by side.

    Returns [place_candidates, catalog_candidates], place search first so
    its place_id-backed entries win deduplication.
    """
    with ThreadPoolExecutor(max_workers=2) as pool:
        places_future = pool.submit(
            with_trace(discover_places),
            maps, context.work_location, region, config, deadline,
        )
        catalog_future = None
        if context.resolved_state:
            catalog_future = pool.submit(
                with_trace(_catalog_candidates), catalog, context, config,
            )

        try:
            places = places_future.result()
        except Exception:
            logger.exception("[finder] place search crashed")
            places = []

        catalog_hits: List[CityCandidate] = []
        if catalog_future is not None:
            try:
                catalog_hits = catalog_future.result()
            except Exception:
                logger.exception("[finder] catalog lookup crashed")

    return [places, catalog_hits]


# =============================================================================
# Entry point
# =============================================================================

def find_neighborhoods(
    maps,
    work_location: Optional[Coordinate],
    mode: Any = TravelMode.DRIVING,
    max_commute_minutes: Any = None,
    catalog: Optional[CityCatalog] = None,
    config: SearchConfig = SEARCH_CONFIG,
) -> List[CommuteResult]:
    """Towns and neighborhoods within the commute budget, shortest first.

    *maps* is a GoogleMapsClient (or anything with the same methods).
    Returns an empty list, not an error, when nothing qualifies.
    """
    context = build_search_context(work_location, mode, max_commute_minutes)
    catalog = catalog if catalog is not None else get_catalog()
    started = time.monotonic()
    deadline = started + config.deadline_seconds
    discover_deadline = deadline - config.deadline_seconds * config.filter_reserve_fraction

    logger.info(
        "[finder] start work=%s mode=%s max=%dmin",
        context.work_location.as_param(),
        context.travel_mode.value,
        context.max_commute_minutes,
    )

    try:
        region = _timed_stage("region", resolve_region, maps, context.work_location)
        context = dataclasses.replace(
            context,
            resolved_state=region.state,
            resolved_county=region.county,
        )

        candidate_lists = _timed_stage(
            "discover", _discover, maps, context, region, catalog, config, discover_deadline,
        )
        candidates = _timed_stage(
            "reconcile", merge, candidate_lists, config.cross_source_dedupe,
        )
        results = _timed_stage(
            "filter", filter_by_commute,
            maps,
            context.work_location,
            candidates,
            context.travel_mode,
            context.max_commute_minutes,
            config,
            deadline,
        )
    except Exception:
        logger.exception("[finder] unexpected failure; returning no results")
        return []

    logger.info(
        "[finder] done: %d results (state=%s county=%s)",
        len(results), context.resolved_state or "-", context.resolved_county or "-",
    )
    return results


# =============================================================================
# CLI
# =============================================================================

def format_results(results: List[CommuteResult], work_address: str, mode: TravelMode, max_minutes: int) -> str:
    """Format finder results as a readable table"""
    lines = []
    lines.append("=" * 70)
    lines.append(f"WORK: {work_address}")
    lines.append(f"MODE: {mode.value}   MAX COMMUTE: {max_minutes} min")
    lines.append("=" * 70)

    if not results:
        lines.append("\nNo towns found within the commute budget.")
        return "\n".join(lines)

    lines.append(f"\n{len(results)} places within {max_minutes} min:\n")
    for r in results:
        lines.append(
            f"  {r.commute_minutes:>4} min  {r.name:<30.30} {r.distance_text:>10}  "
            f"{r.candidate.formatted_address}"
        )
    return "\n".join(lines)


def main():
    from maps_client import GoogleMapsClient, MapsAPIError

    parser = argparse.ArgumentParser(
        description="Find towns and neighborhoods within a commute of a work address"
    )
    parser.add_argument(
        "address",
        nargs="?",
        help="Work address"
    )
    parser.add_argument(
        "--max-time",
        type=int,
        default=30,
        help="Maximum one-way commute in minutes (default 30)"
    )
    parser.add_argument(
        "--mode",
        default="driving",
        help="driving, walking, bicycling, transit, bus or train"
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("GOOGLE_MAPS_API_KEY"),
        help="Google Maps API key (or set GOOGLE_MAPS_API_KEY env var)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON instead of formatted text"
    )

    args = parser.parse_args()

    if not args.address:
        parser.print_help()
        sys.exit(1)

    if not args.api_key:
        print("Error: Google Maps API key required. Set GOOGLE_MAPS_API_KEY or use --api-key")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO)
    maps = GoogleMapsClient(args.api_key)

    try:
        work = maps.geocode(args.address)
    except MapsAPIError as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        results = find_neighborhoods(maps, work.location, args.mode, args.max_time)
    except InputValidationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    mode = parse_travel_mode(args.mode)
    if args.json:
        output = {
            "workAddress": work.formatted_address,
            "workLocation": work.location.to_dict(),
            "mode": mode.value,
            "maxTime": args.max_time,
            "cities": [r.to_dict() for r in results],
        }
        print(json.dumps(output, indent=2))
    else:
        print(format_results(results, work.formatted_address, mode, args.max_time))


if __name__ == "__main__":
    main()
