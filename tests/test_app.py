"""Tests for the Flask routes: /api/neighborhood-finder and /healthz."""

import os
from unittest.mock import MagicMock, patch

import pytest

from app import app, limiter
from candidates import CityCandidate
from commute_filter import CommuteResult, TravelMode
from geo import Coordinate


@pytest.fixture()
def client():
    app.config["TESTING"] = True
    limiter.enabled = False
    with app.test_client() as c:
        yield c
    limiter.enabled = True


def _result(name, minutes, place_id=None):
    return CommuteResult(
        candidate=CityCandidate(
            identity=place_id or f"city_{name}_PA",
            display_name=name,
            formatted_address=f"{name}, PA",
            location=Coordinate(40.1, -75.1),
            place_id=place_id,
        ),
        commute_minutes=minutes,
        commute_text=f"{minutes} mins",
        distance_text="9.1 mi",
        distance_meters=14645,
    )


FINDER = "/api/neighborhood-finder"


class TestFinderValidation:
    @pytest.mark.parametrize("query", [
        "",
        "?lat=40.0&lng=-75.0",
        "?lat=40.0&maxTime=30",
        "?lng=-75.0&maxTime=30",
    ])
    def test_missing_params(self, client, query):
        resp = client.get(FINDER + query)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == (
            "Work location (lat, lng) and maxTime parameters are required"
        )

    @pytest.mark.parametrize("max_time", ["abc", "12.5", "30.5"])
    def test_non_integer_max_time(self, client, max_time):
        resp = client.get(f"{FINDER}?lat=40&lng=-75&maxTime={max_time}")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "maxTime must be a positive number"

    def test_non_positive_max_time(self, client):
        resp = client.get(f"{FINDER}?lat=40&lng=-75&maxTime=0")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "maxTime must be a positive number"

    def test_non_numeric_coordinates(self, client):
        resp = client.get(f"{FINDER}?lat=north&lng=-75&maxTime=30")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "lat and lng must be numbers"

    def test_out_of_range_coordinates(self, client):
        resp = client.get(f"{FINDER}?lat=95&lng=-75&maxTime=30")
        assert resp.status_code == 400
        assert "out of range" in resp.get_json()["error"]

    def test_unknown_mode(self, client):
        resp = client.get(f"{FINDER}?lat=40&lng=-75&maxTime=30&mode=hovercraft")
        assert resp.status_code == 400
        assert "Unknown travel mode" in resp.get_json()["error"]

    @patch("app.find_neighborhoods")
    def test_invalid_input_makes_no_search(self, mock_find, client):
        client.get(f"{FINDER}?lat=40&lng=-75&maxTime=-1")
        mock_find.assert_not_called()


class TestFinderKey:
    @patch("app.find_neighborhoods")
    def test_missing_key_is_500(self, mock_find, client):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("GOOGLE_MAPS_API_KEY", None)
            resp = client.get(f"{FINDER}?lat=40&lng=-75&maxTime=30")
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "Google Maps API key not configured"
        mock_find.assert_not_called()

    @patch("app.find_neighborhoods", return_value=[])
    @patch("app.GoogleMapsClient")
    def test_header_key_used(self, mock_client_cls, mock_find, client):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("GOOGLE_MAPS_API_KEY", None)
            resp = client.get(
                f"{FINDER}?lat=40&lng=-75&maxTime=30",
                headers={"X-Maps-Api-Key": "caller-key"},
            )
        assert resp.status_code == 200
        mock_client_cls.assert_called_once_with("caller-key")

    @patch("app.find_neighborhoods", return_value=[])
    @patch("app.GoogleMapsClient")
    def test_query_key_beats_env(self, mock_client_cls, mock_find, client):
        with patch.dict(os.environ, {"GOOGLE_MAPS_API_KEY": "server-key"}):
            client.get(f"{FINDER}?lat=40&lng=-75&maxTime=30&apiKey=param-key")
        mock_client_cls.assert_called_once_with("param-key")


class TestFinderResults:
    @patch("app.find_neighborhoods", return_value=[])
    @patch("app.GoogleMapsClient")
    def test_empty_is_200(self, mock_client_cls, mock_find, client):
        resp = client.get(f"{FINDER}?lat=40&lng=-75&maxTime=30")
        assert resp.status_code == 200
        assert resp.get_json() == {
            "cities": [],
            "workLocation": {"lat": 40.0, "lng": -75.0},
            "mode": "driving",
            "maxTime": 30,
        }

    @patch("app.GoogleMapsClient")
    def test_results_serialized_in_order(self, mock_client_cls, client):
        results = [_result("Bensalem", 12), _result("Media", 22, place_id="pid-media")]
        with patch("app.find_neighborhoods", return_value=results) as mock_find:
            resp = client.get(f"{FINDER}?lat=40&lng=-75&maxTime=30&mode=bus")

        body = resp.get_json()
        assert resp.status_code == 200
        assert body["mode"] == "bus"
        assert [c["name"] for c in body["cities"]] == ["Bensalem", "Media"]
        assert body["cities"][1] == {
            "name": "Media",
            "address": "Media, PA",
            "location": {"lat": 40.1, "lng": -75.1},
            "commuteTime": 22,
            "commuteTimeText": "22 mins",
            "distance": "9.1 mi",
            "distanceValue": 14645,
            "placeId": "pid-media",
        }
        args = mock_find.call_args[0]
        assert args[1] == Coordinate(40.0, -75.0)
        assert args[2] is TravelMode.BUS
        assert args[3] == 30


class TestHealthzRoute:
    def test_healthz_ok(self, client):
        with patch.dict(os.environ, {"GOOGLE_MAPS_API_KEY": "fake-key"}):
            resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "ok"
        assert body["missing_keys"] == []
        assert "google_maps" in body["services"]
        # conftest points the catalog at a missing file
        assert body["city_catalog"] == {"records": 0}
        assert body["recovered_failures"]["city_catalog"]["data_source_unavailable"] == 1

    def test_healthz_counts_loaded_catalog(self, client, city_data_file, monkeypatch):
        monkeypatch.setenv("CITY_DATA_PATH", city_data_file)
        from city_catalog import reset_catalog
        reset_catalog()
        body = client.get("/healthz").get_json()
        assert body["city_catalog"] == {"records": 5}
        assert body["recovered_failures"] == {}

    def test_healthz_missing_key(self, client):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("GOOGLE_MAPS_API_KEY", None)
            resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["GOOGLE_MAPS_API_KEY"]


def test_unknown_route_is_json_404(client):
    resp = client.get("/no-such-page")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Not found"}


def test_gunicorn_post_fork_warms_catalog(city_data_file, monkeypatch):
    import gunicorn_config
    from city_catalog import get_catalog, reset_catalog

    monkeypatch.setenv("CITY_DATA_PATH", city_data_file)
    reset_catalog()
    gunicorn_config.post_fork(MagicMock(), MagicMock(pid=123))
    with patch("city_catalog.json.load") as mock_load:
        assert len(get_catalog().records()) == 5
    mock_load.assert_not_called()
