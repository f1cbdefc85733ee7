"""
Search configuration for the neighborhood finder.

Owns every numeric constant that shapes a discovery pass: nearby-search
radii and page limits, the page-token delay, Distance Matrix batch size,
catalog radius policy, concurrency cap, and the overall deadline.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  A handful of operational
knobs can be overridden from the environment (see load_search_config).
"""

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Dict, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class NearbyPass:
    """One radius step of a paginated nearby search.

    kind is the Places ``type`` filter ("locality" or "neighborhood").
    """
    kind: str
    radius_km: float
    max_pages: int

    @property
    def radius_meters(self) -> int:
        return int(self.radius_km * 1000)


def _nearby_passes(kind: str, radii_km: Tuple[float, ...], max_pages: int) -> Tuple[NearbyPass, ...]:
    return tuple(NearbyPass(kind=kind, radius_km=r, max_pages=max_pages) for r in radii_km)


# Straight-line km covered per commute minute, relative to driving.
DEFAULT_SPEED_FACTORS: Dict[str, float] = {
    "driving": 1.0,
    "transit": 0.5,
    "bus": 0.5,
    "train": 0.5,
    "bicycling": 0.2,
    "walking": 0.1,
}


@dataclass(frozen=True)
class SearchConfig:
    """Top-level container for all search parameters.

    A single module-level instance (SEARCH_CONFIG) is the default; tests
    build their own with dataclasses.replace().
    """
    locality_passes: Tuple[NearbyPass, ...] = _nearby_passes(
        "locality", (1, 5, 10, 25, 50, 100, 160), max_pages=5,
    )
    neighborhood_passes: Tuple[NearbyPass, ...] = _nearby_passes(
        "neighborhood", (1, 5, 10, 25, 50, 100), max_pages=3,
    )
    # Google rejects a next_page_token used immediately after it is issued.
    page_token_delay: float = 2.0

    # Distance Matrix hard limit: 25 destinations per request.
    matrix_batch_size: int = 25

    # Catalog radius = max(floor, multiplier * max_minutes * speed_factor)
    catalog_radius_floor_km: float = 200.0
    catalog_radius_multiplier: float = 2.0
    speed_factors: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_SPEED_FACTORS)
    )

    # Outbound calls in flight at once, per request.
    max_concurrency: int = 10
    # Wall-clock budget for a whole find_neighborhoods() call.
    deadline_seconds: float = 30.0
    # Share of deadline_seconds reserved for the commute filter stage.
    filter_reserve_fraction: float = 0.25

    # Collapse catalog/place-search duplicates on (name, rounded coords).
    cross_source_dedupe: bool = False

    @property
    def nearby_passes(self) -> Tuple[NearbyPass, ...]:
        return self.locality_passes + self.neighborhood_passes


_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        value = float("nan")
    if not math.isfinite(value) or value < 0:
        logger.warning("[config] ignoring %s=%r; using default %s", name, raw, default)
        return default
    return value


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def load_search_config() -> SearchConfig:
    """Build a SearchConfig from defaults plus environment overrides.

    Malformed numbers fall back to the default with a warning so a typo in
    the environment cannot stop the app from importing.
    """
    return SearchConfig(
        page_token_delay=_env_float("FINDER_PAGE_TOKEN_DELAY", 2.0),
        max_concurrency=max(1, int(_env_float("FINDER_MAX_CONCURRENCY", 10))),
        deadline_seconds=_env_float("FINDER_DEADLINE_SECONDS", 30.0),
        filter_reserve_fraction=min(0.9, _env_float("FINDER_FILTER_RESERVE", 0.25)),
        cross_source_dedupe=_env_flag("FINDER_CROSS_SOURCE_DEDUPE"),
    )


SEARCH_CONFIG = load_search_config()
