"""
Google Maps Platform client.

Thin wrapper over the Geocoding, Places (Text Search, Nearby Search) and
Distance Matrix web services.  Every request goes through _traced_get so
it shows up in the request trace and in passive health tracking.

Error contract:
  - Transport failures surface as requests.RequestException, unchanged.
  - A non-OK provider status raises MapsAPIError (a ValueError), except
    ZERO_RESULTS on search-style endpoints, which is an empty result.
Callers in the finder decide whether to recover; this module never
swallows anything.
"""

import os
import time
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from cs_trace import get_trace
from geo import Coordinate
from health_monitor import (
    MALFORMED_RESPONSE,
    UPSTREAM_STATUS,
    UPSTREAM_TRANSPORT,
    record_call,
)

logger = logging.getLogger(__name__)

# Distance Matrix allows up to 25 origins x 25 destinations per request.
# The finder always uses one origin, so 25 destinations is the cap.
DISTANCE_MATRIX_MAX_DESTINATIONS = 25

_ACCEPTABLE_STATUSES = ("OK", "ZERO_RESULTS")


class MapsAPIError(ValueError):
    """A Google Maps response with a non-OK top-level status."""

    def __init__(self, api_name: str, status: str, endpoint: str = ""):
        super().__init__(f"{api_name} failed: {status}")
        self.status = status
        self.endpoint = endpoint


def failure_kind(exc: BaseException) -> str:
    """Map an exception raised by this client to a health failure kind."""
    if isinstance(exc, requests.exceptions.JSONDecodeError):
        return MALFORMED_RESPONSE
    if isinstance(exc, requests.RequestException):
        return UPSTREAM_TRANSPORT
    if isinstance(exc, MapsAPIError):
        return UPSTREAM_STATUS
    return MALFORMED_RESPONSE


def resolve_api_key(user_key: Optional[str] = None) -> Optional[str]:
    """Pick the API key for a request.

    A key supplied by the caller wins over the server's GOOGLE_MAPS_API_KEY.
    Returns None when neither is available.
    """
    if user_key and user_key.strip():
        return user_key.strip()
    env_key = os.environ.get("GOOGLE_MAPS_API_KEY")
    if env_key:
        return env_key
    return None


@dataclass(frozen=True)
class GeocodeResult:
    formatted_address: str
    location: Coordinate
    place_id: str


@dataclass(frozen=True)
class MatrixElement:
    """One destination's entry in a Distance Matrix row."""
    status: str
    duration_seconds: Optional[int] = None
    duration_text: str = ""
    distance_text: Optional[str] = None
    distance_meters: Optional[int] = None


class GoogleMapsClient:
    """Client for Google Maps APIs"""

    # Per-call timeout in seconds.  Keeps any single request from hanging
    # the whole discovery pass.
    DEFAULT_TIMEOUT = 10

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        # requests.Session is not thread-safe; the finder calls this client
        # from a thread pool, so each thread gets its own session.
        self._local = threading.local()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.trust_env = False
            self._local.session = session
        return session

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with trace recording and passive health tracking."""
        trace = get_trace()
        t0 = time.time()
        try:
            response = self._session().get(url, params=params, timeout=self.DEFAULT_TIMEOUT)
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError(f"{endpoint_name} returned non-object JSON")
        except (requests.RequestException, ValueError) as e:
            elapsed_ms = int((time.time() - t0) * 1000)
            self._record_health(False, elapsed_ms, type(e).__name__)
            if trace:
                # http_status 0: no usable response came back
                trace.record_call(endpoint_name, elapsed_ms, 0, type(e).__name__)
            raise

        elapsed_ms = int((time.time() - t0) * 1000)
        provider_status = data.get("status", "")
        ok = response.status_code == 200 and provider_status in _ACCEPTABLE_STATUSES
        self._record_health(
            ok, elapsed_ms,
            None if ok else (provider_status or f"HTTP {response.status_code}"),
        )
        if trace:
            trace.record_call(
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                http_status=response.status_code,
                provider_status=provider_status,
            )
        return data

    @staticmethod
    def _record_health(ok: bool, elapsed_ms: int, error: Optional[str]) -> None:
        try:
            record_call("google_maps", ok, elapsed_ms, error)
        except Exception:
            logger.debug("health tracking failed", exc_info=True)

    # ------------------------------------------------------------------
    # Geocoding
    # ------------------------------------------------------------------

    def geocode(self, address: str) -> GeocodeResult:
        """Convert an address to a formatted address, coordinate and place id."""
        url = f"{self.base_url}/geocode/json"
        params = {"address": address, "key": self.api_key}
        data = self._traced_get("geocode", url, params)

        if data.get("status") != "OK" or not data.get("results"):
            raise MapsAPIError("Geocoding", data.get("status", "UNKNOWN"), "geocode")

        result = data["results"][0]
        location = result["geometry"]["location"]
        return GeocodeResult(
            formatted_address=result.get("formatted_address", address),
            location=Coordinate(location["lat"], location["lng"]),
            place_id=result.get("place_id", ""),
        )

    def reverse_geocode(self, point: Coordinate) -> List[Dict]:
        """Ordered reverse-geocode results for a coordinate.

        Each result carries ``formatted_address`` and ``address_components``
        (each with ``types``, ``short_name``, ``long_name``).
        """
        url = f"{self.base_url}/geocode/json"
        params = {"latlng": point.as_param(), "key": self.api_key}
        data = self._traced_get("reverse_geocode", url, params)

        status = data.get("status")
        if status == "ZERO_RESULTS":
            return []
        if status != "OK":
            raise MapsAPIError("Reverse geocoding", status or "UNKNOWN", "reverse_geocode")
        return data.get("results", [])

    # ------------------------------------------------------------------
    # Places
    # ------------------------------------------------------------------

    def text_search(
        self,
        query: str,
        location: Optional[Coordinate] = None,
        radius_meters: Optional[int] = None,
        place_type: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> Tuple[List[Dict], Optional[str]]:
        """Search for places with a free-text query.

        Returns (results, next_page_token).  A page_token request ignores
        every other search parameter.
        """
        url = f"{self.base_url}/place/textsearch/json"
        if page_token:
            params: Dict[str, Any] = {"pagetoken": page_token, "key": self.api_key}
        else:
            params = {"query": query, "key": self.api_key}
            if location is not None:
                params["location"] = location.as_param()
            if radius_meters is not None:
                params["radius"] = radius_meters
            if place_type:
                params["type"] = place_type

        data = self._traced_get("text_search", url, params)

        if data.get("status") not in _ACCEPTABLE_STATUSES:
            raise MapsAPIError("Text Search API", data.get("status", "UNKNOWN"), "text_search")

        return data.get("results", []), data.get("next_page_token")

    def nearby_search(
        self,
        location: Coordinate,
        radius_meters: int,
        place_type: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> Tuple[List[Dict], Optional[str]]:
        """Search for places near a location.

        Returns (results, next_page_token).  The token is not valid until a
        couple of seconds after it is issued; pacing is the caller's job.
        """
        url = f"{self.base_url}/place/nearbysearch/json"
        if page_token:
            params: Dict[str, Any] = {"pagetoken": page_token, "key": self.api_key}
        else:
            params = {
                "location": location.as_param(),
                "radius": radius_meters,
                "key": self.api_key,
            }
            if place_type:
                params["type"] = place_type

        data = self._traced_get("nearby_search", url, params)

        if data.get("status") not in _ACCEPTABLE_STATUSES:
            raise MapsAPIError("Places API", data.get("status", "UNKNOWN"), "nearby_search")

        return data.get("results", []), data.get("next_page_token")

    # ------------------------------------------------------------------
    # Distance Matrix
    # ------------------------------------------------------------------

    def distance_matrix_batch(
        self,
        origin: Coordinate,
        destinations: List[Coordinate],
        mode: str,
        transit_mode: Optional[str] = None,
    ) -> List[MatrixElement]:
        """Travel time from one origin to up to 25 destinations.

        Returns one MatrixElement per destination, in input order.  Chunking
        larger sets is the caller's job (see commute_filter.partition).
        """
        if not destinations:
            return []
        if len(destinations) > DISTANCE_MATRIX_MAX_DESTINATIONS:
            raise ValueError(
                f"Distance Matrix accepts at most {DISTANCE_MATRIX_MAX_DESTINATIONS} "
                f"destinations per request, got {len(destinations)}"
            )

        url = f"{self.base_url}/distancematrix/json"
        params: Dict[str, Any] = {
            "origins": origin.as_param(),
            "destinations": "|".join(d.as_param() for d in destinations),
            "mode": mode,
            "units": "imperial",
            "key": self.api_key,
        }
        if transit_mode:
            params["transit_mode"] = transit_mode

        data = self._traced_get("distance_matrix", url, params)

        if data.get("status") != "OK":
            raise MapsAPIError("Distance Matrix API", data.get("status", "UNKNOWN"), "distance_matrix")

        elements = data["rows"][0]["elements"]
        if len(elements) != len(destinations):
            raise ValueError(
                f"Distance Matrix returned {len(elements)} elements "
                f"for {len(destinations)} destinations"
            )

        out: List[MatrixElement] = []
        for elem in elements:
            if not isinstance(elem, dict):
                # Keeps positions aligned; the filter drops non-OK elements.
                out.append(MatrixElement(status="MALFORMED_ELEMENT"))
                continue
            duration = elem.get("duration")
            duration = duration if isinstance(duration, dict) else {}
            distance = elem.get("distance")
            distance = distance if isinstance(distance, dict) else {}
            out.append(MatrixElement(
                status=elem.get("status", ""),
                duration_seconds=duration.get("value"),
                duration_text=duration.get("text", ""),
                distance_text=distance.get("text"),
                distance_meters=distance.get("value"),
            ))
        return out
