"""
Merge candidate lists from place search and the static catalog.

Deduplication is by identity, first seen wins, so callers pass the
place-search list first: its entries carry a verifiable place_id.

Place-search identities (place_id) and catalog identities
(city_<Name>_<ST>) never coincide, so by default the same town found by
both sources survives twice.  cross_source=True adds a secondary key of
lowercase name plus coordinates rounded to ~1 km to collapse those.
"""

import dataclasses
import logging
from typing import Iterable, List, Sequence, Tuple

from candidates import CityCandidate, name_key

logger = logging.getLogger(__name__)

UNKNOWN_CITY = "Unknown City"

# 2 decimal places is roughly 1.1 km of latitude.
_COORD_BUCKET_DECIMALS = 2


def normalize_candidate(candidate: CityCandidate) -> CityCandidate:
    """Fill an empty display name from the address, else "Unknown City"."""
    if candidate.display_name and candidate.display_name.strip():
        return candidate
    first_segment = (candidate.formatted_address or "").split(",")[0].strip()
    return dataclasses.replace(candidate, display_name=first_segment or UNKNOWN_CITY)


def _bucket_key(candidate: CityCandidate) -> Tuple[str, float, float]:
    return (
        name_key(candidate.display_name),
        round(candidate.location.lat, _COORD_BUCKET_DECIMALS),
        round(candidate.location.lng, _COORD_BUCKET_DECIMALS),
    )


def merge(
    candidate_lists: Iterable[Sequence[CityCandidate]],
    cross_source: bool = False,
) -> List[CityCandidate]:
    """Flatten, normalize and deduplicate candidate lists in input order."""
    seen_identities: set = set()
    seen_buckets: set = set()
    merged: List[CityCandidate] = []
    total = 0

    for candidates in candidate_lists:
        for candidate in candidates:
            total += 1
            if candidate.identity in seen_identities:
                continue
            candidate = normalize_candidate(candidate)
            if cross_source:
                bucket = _bucket_key(candidate)
                if bucket in seen_buckets:
                    continue
                seen_buckets.add(bucket)
            seen_identities.add(candidate.identity)
            merged.append(candidate)

    logger.info("[reconcile] %d candidates in, %d unique out", total, len(merged))
    return merged
