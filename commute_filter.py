"""
Commute-time filter: turn candidates into ranked CommuteResults.

Candidates are split into consecutive batches of at most 25 (the Distance
Matrix per-request destination limit) and each batch is one request from
the work location.  Batches are independent and run concurrently.

Failure policy is per unit of work:
  - An element that is not OK or has no usable duration drops that one candidate.
  - A batch whose request fails drops that batch; sibling batches continue.
  - Batches still running at the deadline are dropped.
A total failure is an empty list, never an exception.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import requests

from candidates import CityCandidate
from cs_trace import with_trace
from finder_config import SEARCH_CONFIG, SearchConfig
from geo import Coordinate
from health_monitor import record_failure
from maps_client import DISTANCE_MATRIX_MAX_DESTINATIONS, failure_kind

logger = logging.getLogger(__name__)


class TravelMode(Enum):
    DRIVING = "driving"
    WALKING = "walking"
    BICYCLING = "bicycling"
    TRANSIT = "transit"
    BUS = "bus"
    TRAIN = "train"

    @property
    def provider_mode(self) -> str:
        """The Distance Matrix ``mode`` parameter."""
        if self in (TravelMode.TRANSIT, TravelMode.BUS, TravelMode.TRAIN):
            return "transit"
        return self.value

    @property
    def transit_mode(self) -> Optional[str]:
        """The Distance Matrix ``transit_mode`` filter, if any."""
        return _TRANSIT_SUBMODES.get(self)

    @property
    def is_transit(self) -> bool:
        return self.provider_mode == "transit"


_TRANSIT_SUBMODES = {
    TravelMode.TRANSIT: "bus|rail",
    TravelMode.BUS: "bus",
    TravelMode.TRAIN: "rail",
}

_MODE_ALIASES = {
    "transit-bus": TravelMode.BUS,
    "transit_bus": TravelMode.BUS,
    "transit-train": TravelMode.TRAIN,
    "transit_train": TravelMode.TRAIN,
    "rail": TravelMode.TRAIN,
}


def parse_travel_mode(value: Any) -> TravelMode:
    """Parse a mode string ("driving", "bus", "transit-train", ...)."""
    if isinstance(value, TravelMode):
        return value
    raw = str(value or "").strip().lower()
    if raw in _MODE_ALIASES:
        return _MODE_ALIASES[raw]
    try:
        return TravelMode(raw)
    except ValueError:
        valid = ", ".join(m.value for m in TravelMode)
        raise ValueError(f"Unknown travel mode {value!r}; expected one of: {valid}")


def seconds_to_minutes(seconds: int) -> int:
    """Round to the nearest minute, halves up.

    Uses floor(x + 0.5) instead of round() to avoid banker's rounding
    (round(2.5) == 2), which would pull 150 s down to 2 min.
    """
    return int(seconds / 60 + 0.5)


@dataclass(frozen=True)
class CommuteResult:
    """A candidate with its computed commute from the work location."""
    candidate: CityCandidate
    commute_minutes: int
    commute_text: str
    distance_text: str = "Unknown"
    distance_meters: int = 0

    @property
    def name(self) -> str:
        return self.candidate.display_name

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape returned by /api/neighborhood-finder."""
        c = self.candidate
        return {
            "name": c.display_name,
            "address": c.formatted_address,
            "location": c.location.to_dict(),
            "commuteTime": self.commute_minutes,
            "commuteTimeText": self.commute_text,
            "distance": self.distance_text,
            "distanceValue": self.distance_meters,
            "placeId": c.place_id,
        }


def partition(items: Sequence, size: int = DISTANCE_MATRIX_MAX_DESTINATIONS) -> List[List]:
    """Consecutive chunks of at most *size* items."""
    if size < 1:
        raise ValueError("batch size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _is_seconds(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def run_batch(
    maps,
    origin: Coordinate,
    batch: List[CityCandidate],
    mode: TravelMode,
    max_minutes: int,
    batch_index: int = 0,
) -> List[CommuteResult]:
    """One Distance Matrix request; the within-budget results in batch order."""
    try:
        elements = maps.distance_matrix_batch(
            origin,
            [c.location for c in batch],
            mode.provider_mode,
            transit_mode=mode.transit_mode,
        )
    except (requests.RequestException, ValueError, KeyError, TypeError, IndexError) as e:
        kind = failure_kind(e)
        logger.warning(
            "[commute] batch %d (%d destinations) failed (%s): %s",
            batch_index, len(batch), kind, e,
        )
        record_failure("commute_filter", kind)
        return []

    results: List[CommuteResult] = []
    for candidate, element in zip(batch, elements):
        seconds = getattr(element, "duration_seconds", None)
        if getattr(element, "status", None) != "OK" or not _is_seconds(seconds):
            continue
        minutes = seconds_to_minutes(seconds)
        if minutes > max_minutes:
            continue
        results.append(CommuteResult(
            candidate=candidate,
            commute_minutes=minutes,
            commute_text=element.duration_text or f"{minutes} mins",
            distance_text=element.distance_text or "Unknown",
            distance_meters=element.distance_meters or 0,
        ))
    return results


def filter_by_commute(
    maps,
    origin: Coordinate,
    candidates: Sequence[CityCandidate],
    mode: TravelMode,
    max_minutes: int,
    config: SearchConfig = SEARCH_CONFIG,
    deadline: Optional[float] = None,
) -> List[CommuteResult]:
    """Candidates reachable within *max_minutes*, shortest commute first.

    Ties keep batch/candidate order (sorted() is stable).
    """
    batches = partition(candidates, config.matrix_batch_size)
    if not batches:
        return []

    pool = ThreadPoolExecutor(max_workers=min(config.max_concurrency, len(batches)))
    try:
        futures = [
            pool.submit(with_trace(run_batch), maps, origin, batch, mode, max_minutes, i)
            for i, batch in enumerate(batches)
        ]
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        done, not_done = wait(futures, timeout=timeout)
        if not_done:
            logger.warning(
                "[commute] deadline reached with %d of %d batches unfinished",
                len(not_done), len(futures),
            )
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    kept: List[CommuteResult] = []
    for i, future in enumerate(futures):
        if future not in done:
            continue
        try:
            kept.extend(future.result())
        except Exception:
            logger.exception("[commute] batch %d crashed", i)
            record_failure("commute_filter", "unexpected")

    ranked = sorted(kept, key=lambda r: r.commute_minutes)
    logger.info(
        "[commute] %d candidates in %d batches, %d within %d min (%s)",
        len(candidates), len(batches), len(ranked), max_minutes, mode.value,
    )
    return ranked
