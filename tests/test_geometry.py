import math

from geometry import R_EARTH, haversine


def test_zero_distance():
    assert haversine((51.5, -0.12), (51.5, -0.12)) == 0.0


def test_one_degree_of_latitude():
    expected = R_EARTH * math.pi / 180
    assert math.isclose(haversine((0.0, 0.0), (1.0, 0.0)), expected, rel_tol=1e-9)


def test_symmetric():
    a = (-33.8688, 151.2093)
    b = (-33.8731, 151.2065)
    assert math.isclose(haversine(a, b), haversine(b, a))


def test_short_distance_in_meters():
    # ~20m north
    d = haversine((0.0, 0.0), (20 / 111195.0, 0.0))
    assert 19.9 < d < 20.1


def test_antipodal_points():
    d = haversine((0.0, 0.0), (0.0, 180.0))
    assert math.isclose(d, math.pi * R_EARTH, rel_tol=1e-9)
