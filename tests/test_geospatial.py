import pytest

from src.batching.services.geospatial import centroid, haversine_km, point_distance_km


def test_haversine_zero_for_same_point():
    assert haversine_km(3.1, 101.6, 3.1, 101.6) == 0.0


def test_haversine_known_distance():
    # One degree of latitude is ~111.2 km on a 6371 km sphere.
    assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)


def test_point_distance_is_symmetric():
    a, b = (3.10, 101.60), (3.30, 101.80)
    assert point_distance_km(a, b) == pytest.approx(point_distance_km(b, a))
    assert point_distance_km(a, b) == pytest.approx(31.4, abs=0.05)


def test_centroid_of_points():
    assert centroid([(0.0, 0.0), (2.0, 4.0)]) == (1.0, 2.0)


def test_centroid_requires_points():
    with pytest.raises(ValueError):
        centroid([])
