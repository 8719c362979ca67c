"""
Tests for reference cities, distance estimation and deterministic ids.
"""

import math

import pytest

from tripgraph.data.records import StopRecord
from tripgraph.geo.cities import CityDirectory, ReferenceCity, default_directory, normalize_city_name
from tripgraph.geo.geometry import EARTH_RADIUS_KM, estimate_duration_minutes, haversine_km, stop_distance_km
from tripgraph.geo.ids import (
    connectivity_route_id, hash_payload, virtual_flight_id, virtual_route_id, virtual_stop_id
)


def spherical_law_of_cosines_km(lat1, lon1, lat2, lon2):
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_lambda = math.radians(lon2 - lon1)
    cos_angle = math.sin(phi1) * math.sin(phi2) + math.cos(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return EARTH_RADIUS_KM * math.acos(min(1.0, max(-1.0, cos_angle)))


class TestHaversine:

    def test_identical_points_are_zero(self):
        assert haversine_km(62.0355, 129.6755, 62.0355, 129.6755) == 0.0

    @pytest.mark.parametrize("a, b", [
        ((62.0355, 129.6755), (62.5354, 113.9564)),  # Yakutsk - Mirny
        ((62.0355, 129.6755), (56.6669, 124.7164)),  # Yakutsk - Neryungri
        ((55.7558, 37.6173), (59.9343, 30.3351)),    # Moscow - Saint Petersburg
    ])
    def test_matches_great_circle_distance(self, a, b):
        expected = spherical_law_of_cosines_km(*a, *b)
        assert haversine_km(*a, *b) == pytest.approx(expected, abs=0.5)

    def test_symmetric(self):
        assert haversine_km(62.0, 129.0, 60.0, 120.0) == pytest.approx(haversine_km(60.0, 120.0, 62.0, 129.0))

    def test_unplaced_stop_distance_is_zero(self):
        placed = StopRecord(id="a", name="A", latitude=62.0, longitude=129.0)
        unplaced = StopRecord(id="b", name="B", latitude=None, longitude=None)
        assert stop_distance_km(placed, unplaced) == 0.0


class TestDurationEstimate:

    def test_floored_at_one_hour(self):
        assert estimate_duration_minutes(0) == 60
        assert estimate_duration_minutes(30) == 60

    def test_one_minute_per_km_at_60kmh(self):
        assert estimate_duration_minutes(120) == 120
        assert estimate_duration_minutes(820.4) == 820

    def test_custom_speed_and_floor(self):
        assert estimate_duration_minutes(300, average_speed_kmh=600, min_minutes=20) == 30
        assert estimate_duration_minutes(100, average_speed_kmh=600, min_minutes=20) == 20


class TestCityDirectory:

    def test_normalization_ignores_case_diacritics_and_spacing(self):
        assert normalize_city_name("Олёкминск") == normalize_city_name("  олекминск ")
        assert normalize_city_name("ЯКУТСК") == normalize_city_name("якутск")
        assert normalize_city_name("") == ""

    def test_membership_accepts_synonyms(self):
        directory = default_directory()
        assert directory.is_reference_city("Якутск")
        assert directory.is_reference_city("yakutsk")
        assert directory.is_reference_city("ОЛЕКМИНСК")
        assert not directory.is_reference_city("Москва")

    def test_canonical_key_maps_synonym_to_reference_name(self):
        directory = default_directory()
        assert directory.canonical_key("Yakutsk") == normalize_city_name("Якутск")
        assert directory.canonical_key("Москва") is None

    def test_match_city_in_stop_name(self):
        directory = default_directory()
        assert directory.match_city_in_text("Аэропорт Якутск").name == "Якутск"
        assert directory.match_city_in_text("г. Мирный").name == "Мирный"
        assert directory.match_city_in_text("Остановка 5") is None

    def test_from_mapping(self):
        directory = CityDirectory.from_mapping({"Якутск": {"latitude": 62.0, "longitude": 129.7}}, version="t")
        assert len(directory) == 1
        assert directory.version == "t"
        assert directory.get("якутск") == ReferenceCity("Якутск", 62.0, 129.7)


class TestDeterministicIds:

    def test_virtual_stop_id_depends_on_normalized_city_only(self):
        assert virtual_stop_id("Ленск") == virtual_stop_id(" ленск ")
        assert virtual_stop_id("Ленск") != virtual_stop_id("Алдан")
        assert virtual_stop_id("Ленск").startswith("virtual-stop-")

    def test_route_ids_are_directional(self):
        assert virtual_route_id("a", "b", "hub-based") == virtual_route_id("a", "b", "hub-based")
        assert virtual_route_id("a", "b", "hub-based") != virtual_route_id("b", "a", "hub-based")
        assert virtual_route_id("a", "b", "hub-based") != virtual_route_id("a", "b", "direct")
        assert connectivity_route_id("Якутск", "Ленск") != connectivity_route_id("Ленск", "Якутск")
        assert connectivity_route_id("Якутск", "Ленск").startswith("virtual-route-connectivity-")

    def test_flight_id_covers_day_and_slot(self):
        ids = {virtual_flight_id("r", day, slot) for day in range(3) for slot in range(2)}
        assert len(ids) == 6
        assert virtual_flight_id("r", 1, 0) == virtual_flight_id("r", 1, 0)

    def test_hash_payload_ignores_key_order(self):
        assert hash_payload({"a": 1, "b": [1, 2]}) == hash_payload({"b": [1, 2], "a": 1})
        assert hash_payload({"a": 1}) != hash_payload({"a": 2})
