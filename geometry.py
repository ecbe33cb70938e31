"""Geometry helpers."""

from __future__ import annotations

import math
from typing import Tuple

# (latitude, longitude) in decimal degrees
Coordinate = Tuple[float, float]

R_EARTH = 6371000.0


def haversine(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates in meters."""
    lat1, lon1 = a
    lat2, lon2 = b
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    s = math.sin(dlat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    # Rounding can push s a hair past 1.0 for antipodal points
    return 2 * R_EARTH * math.asin(math.sqrt(min(1.0, s)))


__all__ = ["Coordinate", "R_EARTH", "haversine"]
