"""Polygon helpers for farm boundaries.

Boundaries are GeoJSON-style mappings ``{"type": "Polygon", "coordinates":
[ring, ...]}`` where each ring is a list of ``[lng, lat]`` positions. Only the
outer (first) ring is considered anywhere in this module.
"""
from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

from shapely.errors import GEOSException
from shapely.geometry import shape

logger = logging.getLogger(__name__)

# metres per degree at the equator
METERS_PER_DEGREE = 111_320
SQ_METERS_PER_HECTARE = 10_000

Bounds = tuple[float, float, float, float]


def _outer_ring(boundary: Optional[dict]) -> list:
    if not boundary or not isinstance(boundary, dict):
        return []
    coords = boundary.get("coordinates")
    if not isinstance(coords, (list, tuple)) or not coords:
        return []
    ring = coords[0]
    return list(ring) if isinstance(ring, (list, tuple)) else []


def _is_position(p) -> bool:
    # [lng, lat] or [lng, lat, alt], finite, no bools
    return (
        isinstance(p, (list, tuple))
        and len(p) in (2, 3)
        and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in p)
        and all(math.isfinite(v) for v in p)
    )


def calculate_farm_area(boundary: Optional[dict]) -> float:
    """Area of the outer ring in hectares, rounded to 2 decimals.

    Planar shoelace in degrees scaled by a fixed equatorial metres-per-degree
    factor. Good enough for small fields near the equator; it overestimates
    east-west extent as latitude grows and ignores curvature on large rings.
    """
    ring = _outer_ring(boundary)
    if not ring:
        return 0

    area = 0.0
    for i in range(len(ring) - 1):
        x1, y1 = ring[i][0], ring[i][1]
        x2, y2 = ring[i + 1][0], ring[i + 1][1]
        area += (x1 * y2) - (x2 * y1)

    area_m2 = abs(area / 2) * (METERS_PER_DEGREE ** 2)
    return round(area_m2 / SQ_METERS_PER_HECTARE, 2)


def validate_polygon(boundary: Optional[dict]) -> bool:
    """Closed single-ring check: Polygon type, >= 4 finite positions of one
    dimension, first == last.

    Winding order and self-intersection are not checked.
    """
    if not boundary or not isinstance(boundary, dict):
        return False
    if boundary.get("type") != "Polygon":
        return False

    ring = _outer_ring(boundary)
    if len(ring) < 4:
        return False
    if not all(_is_position(p) for p in ring):
        return False
    if len({len(p) for p in ring}) != 1:
        return False

    first, last = ring[0], ring[-1]
    return first[0] == last[0] and first[1] == last[1]


def ring_bounds(boundary: dict) -> Bounds:
    """(min_lng, min_lat, max_lng, max_lat) of the outer ring."""
    ring = _outer_ring(boundary)
    if not ring:
        raise ValueError("Boundary has no coordinates")
    lngs = [float(p[0]) for p in ring]
    lats = [float(p[1]) for p in ring]
    return min(lngs), min(lats), max(lngs), max(lats)


def validate_bounds(bounds: Sequence[float]) -> Bounds:
    if len(bounds) != 4:
        raise ValueError("Bounds must be exactly 4 numbers [minLng, minLat, maxLng, maxLat]")
    try:
        min_lng, min_lat, max_lng, max_lat = (float(v) for v in bounds)
    except (TypeError, ValueError):
        raise ValueError("Bounds must be numeric")
    if min_lng > max_lng or min_lat > max_lat:
        raise ValueError("Bounds minimums must not exceed maximums")
    return min_lng, min_lat, max_lng, max_lat


def bounds_polygon(bounds: Sequence[float]) -> dict:
    min_lng, min_lat, max_lng, max_lat = validate_bounds(bounds)
    return {
        "type": "Polygon",
        "coordinates": [[
            [min_lng, min_lat],
            [max_lng, min_lat],
            [max_lng, max_lat],
            [min_lng, max_lat],
            [min_lng, min_lat],
        ]],
    }


def boundary_intersects(boundary: dict, bounds: Sequence[float]) -> bool:
    """Exact intersection between a valid boundary and a bounds rectangle."""
    if not validate_polygon(boundary):
        return False
    # only the outer ring in 2D takes part, same as area and bbox
    outer = {"type": "Polygon", "coordinates": [[list(p[:2]) for p in _outer_ring(boundary)]]}
    rect = bounds_polygon(bounds)
    try:
        return shape(outer).intersects(shape(rect))
    except (ValueError, GEOSException) as e:
        logger.warning("Skipping boundary shapely cannot build: %s", e)
        return False
