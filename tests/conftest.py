"""Shared fixtures for the CommuteScout test suite.

Points the static city catalog at a nonexistent file by default so no test
depends on a real dataset, and resets process-wide singletons (catalog,
health counters, trace) between tests.
"""

import json
import os

import pytest

# Set env BEFORE importing app modules (some read it at import time)
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")
os.environ["CITY_DATA_PATH"] = os.path.join(
    os.path.dirname(__file__), "_no_such_city_file.json"
)

from city_catalog import reset_catalog  # noqa: E402
from cs_trace import clear_trace  # noqa: E402
from health_monitor import get_monitor  # noqa: E402


# Five cities around (40.0, -75.0).  Distances from that point:
#   Bensalem ~12 km, Camden (NJ) ~13 km, Philadelphia ~15 km,
#   Norristown ~32 km, Allentown ~78 km.
FIXTURE_CITIES = [
    {"city": "Philadelphia", "state_id": "PA", "state_name": "Pennsylvania",
     "lat": 39.9526, "lng": -75.1652, "population": 1603797},
    {"city": "Allentown", "state_id": "PA", "state_name": "Pennsylvania",
     "lat": 40.6023, "lng": -75.4714, "population": 125845},
    {"city": "Camden", "state_id": "NJ", "state_name": "New Jersey",
     "lat": 39.9259, "lng": -75.1196, "population": 71791},
    {"city": "Norristown", "state_id": "PA", "state_name": "Pennsylvania",
     "lat": "40.1215", "lng": "-75.3399", "population": "35748"},
    {"city": "Bensalem", "state_id": "PA", "state_name": "Pennsylvania",
     "lat": 40.1046, "lng": -74.9510},
]


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_catalog()
    get_monitor().reset()
    clear_trace()
    yield
    reset_catalog()
    clear_trace()


@pytest.fixture()
def city_data_file(tmp_path):
    """Path to a JSON file holding FIXTURE_CITIES."""
    path = tmp_path / "us-cities.json"
    path.write_text(json.dumps(FIXTURE_CITIES), encoding="utf-8")
    return str(path)
