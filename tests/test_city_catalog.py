"""Tests for city_catalog.py: loading, proximity queries, radius policy."""

import json
from unittest.mock import patch

import pytest

from city_catalog import (
    CityCatalog,
    CityRecord,
    format_city_for_geocoding,
    get_catalog,
    reset_catalog,
    search_radius_km,
)
from finder_config import SearchConfig
from geo import Coordinate, distance_km
from health_monitor import get_failure_counts

WORK = Coordinate(40.0, -75.0)


class TestCitiesNear:
    def test_pa_within_50km_sorted(self, city_data_file):
        """Only PA rows within 50 km, nearest first."""
        catalog = CityCatalog(city_data_file)
        result = catalog.cities_near(WORK, 50, "PA")
        assert [c.display_name for c in result] == ["Bensalem", "Philadelphia", "Norristown"]

    def test_state_filter_case_insensitive(self, city_data_file):
        catalog = CityCatalog(city_data_file)
        upper = catalog.cities_near(WORK, 50, "PA")
        lower = catalog.cities_near(WORK, 50, "pa")
        assert [c.identity for c in upper] == [c.identity for c in lower]

    def test_no_state_filter_includes_other_states(self, city_data_file):
        catalog = CityCatalog(city_data_file)
        result = catalog.cities_near(WORK, 50)
        assert [c.display_name for c in result] == [
            "Bensalem", "Camden", "Philadelphia", "Norristown",
        ]

    def test_results_within_radius_and_sorted(self, city_data_file):
        catalog = CityCatalog(city_data_file)
        for radius in (5, 13, 20, 40, 100, 500):
            result = catalog.cities_near(WORK, radius, "PA")
            distances = [distance_km(WORK, c.location) for c in result]
            assert all(d <= radius for d in distances)
            assert distances == sorted(distances)
            assert all(c.state.upper() == "PA" for c in result)

    def test_large_radius_returns_everything(self, city_data_file):
        catalog = CityCatalog(city_data_file)
        assert len(catalog.cities_near(WORK, 10000)) == 5

    def test_candidate_shape(self, city_data_file):
        catalog = CityCatalog(city_data_file)
        philly = [c for c in catalog.cities_near(WORK, 50, "PA") if c.display_name == "Philadelphia"][0]
        assert philly.identity == "city_Philadelphia_PA"
        assert philly.formatted_address == "Philadelphia, Pennsylvania"
        assert philly.source == "catalog"
        assert philly.place_id is None
        assert philly.location == Coordinate(39.9526, -75.1652)

    def test_string_coordinates_parsed(self, city_data_file):
        catalog = CityCatalog(city_data_file)
        norristown = [r for r in catalog.records() if r.city == "Norristown"][0]
        assert norristown.lat == pytest.approx(40.1215)
        assert norristown.population == 35748

    def test_unknown_state_returns_empty(self, city_data_file):
        assert CityCatalog(city_data_file).cities_near(WORK, 500, "CA") == []


class TestLoading:
    def test_missing_file_returns_empty(self, tmp_path):
        catalog = CityCatalog(str(tmp_path / "absent.json"))
        assert catalog.cities_near(WORK, 200, "PA") == []
        assert get_failure_counts()["city_catalog"]["data_source_unavailable"] == 1

    def test_corrupt_file_returns_empty(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        assert CityCatalog(str(path)).cities_near(WORK, 200) == []

    def test_non_array_returns_empty(self, tmp_path):
        path = tmp_path / "obj.json"
        path.write_text(json.dumps({"city": "X"}), encoding="utf-8")
        assert CityCatalog(str(path)).records() == []

    def test_bad_rows_skipped(self, tmp_path):
        path = tmp_path / "rows.json"
        path.write_text(json.dumps([
            {"city": "Good", "state_id": "PA", "state_name": "Pennsylvania", "lat": 40.0, "lng": -75.0},
            {"city": "NoLat", "state_id": "PA", "lng": -75.0},
            {"city": "", "state_id": "PA", "lat": 40.0, "lng": -75.0},
            {"city": "Junk", "state_id": "PA", "lat": "abc", "lng": -75.0},
            "not a dict",
        ]), encoding="utf-8")
        assert [r.city for r in CityCatalog(str(path)).records()] == ["Good"]

    def test_loaded_once(self, city_data_file):
        catalog = CityCatalog(city_data_file)
        catalog.records()
        with patch("city_catalog.json.load") as mock_load:
            catalog.cities_near(WORK, 50)
            catalog.cities_near(WORK, 100)
        mock_load.assert_not_called()

    def test_reload_picks_up_new_data(self, tmp_path):
        path = tmp_path / "cities.json"
        path.write_text("[]", encoding="utf-8")
        catalog = CityCatalog(str(path))
        assert catalog.records() == []

        path.write_text(json.dumps([
            {"city": "Bensalem", "state_id": "PA", "state_name": "Pennsylvania",
             "lat": 40.1046, "lng": -74.9510},
        ]), encoding="utf-8")
        assert catalog.records() == []  # still cached
        assert catalog.reload() == 1
        assert catalog.records()[0].city == "Bensalem"


class TestDefaultCatalog:
    def test_uses_env_path(self, city_data_file, monkeypatch):
        monkeypatch.setenv("CITY_DATA_PATH", city_data_file)
        reset_catalog()
        assert get_catalog().path == city_data_file
        assert len(get_catalog().records()) == 5

    def test_singleton(self):
        assert get_catalog() is get_catalog()


class TestSearchRadius:
    def test_floor_applies(self):
        assert search_radius_km(30, "driving") == 200.0

    def test_driving_above_floor(self):
        assert search_radius_km(120, "driving") == 240.0

    def test_transit_factor(self):
        assert search_radius_km(300, "bus") == 300.0
        assert search_radius_km(300, "train") == 300.0

    def test_walking_and_bicycling_hit_floor(self):
        assert search_radius_km(120, "walking") == 200.0
        assert search_radius_km(120, "bicycling") == 200.0

    def test_custom_config(self):
        config = SearchConfig(catalog_radius_floor_km=10.0)
        assert search_radius_km(30, "bicycling", config) == pytest.approx(12.0)


def test_format_city_for_geocoding_falls_back_to_state_id():
    record = CityRecord(city="Springfield", state_id="IL", state_name="", lat=39.8, lng=-89.6)
    assert format_city_for_geocoding(record) == "Springfield, IL"
