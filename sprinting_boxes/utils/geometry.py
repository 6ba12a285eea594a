"""
Geometry helper functions for zone polygons and crop rectangles.

Polygons are lists of ``Point`` (normalized) or ``(x, y)`` tuples (pixels).
Calibrated zones are convex quadrilaterals in practice, so buffering,
intersection and union are done with OpenCV's convex-polygon primitives.
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..data_structures import BBox, PixelPoint, Point

# Vertices sampled per corner when rounding a buffered polygon.
_BUFFER_ARC_SAMPLES = 16


def _as_array(points: Sequence[Point]) -> np.ndarray:
    return np.array([[p.x, p.y] for p in points], dtype=np.float32)


def _from_array(arr: Optional[np.ndarray]) -> List[Point]:
    if arr is None or len(arr) == 0:
        return []
    flat = arr.reshape(-1, 2)
    return [Point(float(x), float(y)) for x, y in flat]


def polygon_bounds(points: Sequence[Point]) -> Tuple[float, float, float, float]:
    """
    Axis-aligned bounds ``(min_x, min_y, max_x, max_y)`` of a polygon.
    """
    xs = [p.x for p in points]
    ys = [p.y for p in points]
    return min(xs), min(ys), max(xs), max(ys)


def compute_buffer_distance(points: Sequence[Point], buffer_pct: float) -> float:
    """
    Buffer distance as a fraction of the polygon's own bounding-box diagonal.
    """
    if not points:
        return 0.0
    min_x, min_y, max_x, max_y = polygon_bounds(points)
    return math.hypot(max_x - min_x, max_y - min_y) * buffer_pct


def compute_bbox_with_padding(points: Sequence[Point], padding: float) -> Optional[BBox]:
    """
    Padded bounding box of ``points`` clamped to the unit square.

    Returns None when the polygon is empty or the clamped box has no area.
    """
    if not points:
        return None
    min_x, min_y, max_x, max_y = polygon_bounds(points)
    x1 = max(min_x - padding, 0.0)
    y1 = max(min_y - padding, 0.0)
    x2 = min(max_x + padding, 1.0)
    y2 = min(max_y + padding, 1.0)
    w = max(x2 - x1, 0.0)
    h = max(y2 - y1, 0.0)
    if w <= 0.0 or h <= 0.0:
        return None
    return BBox(x=x1, y=y1, w=w, h=h)


def buffer_convex_polygon(points: Sequence[Point], distance: float) -> List[Point]:
    """
    Grow a convex polygon outward by ``distance`` (rounded corners).

    Computed as the convex hull of a small circle around every vertex, which
    is the Minkowski sum of the polygon and a disc.
    """
    if not points or distance <= 0.0:
        return list(points)
    angles = np.linspace(0.0, 2.0 * np.pi, _BUFFER_ARC_SAMPLES, endpoint=False)
    ring = np.stack([np.cos(angles), np.sin(angles)], axis=1) * distance
    base = _as_array(points)
    cloud = (base[:, None, :] + ring[None, :, :]).reshape(-1, 2).astype(np.float32)
    hull = cv2.convexHull(cloud)
    return _from_array(hull)


def intersect_convex_polygons(a: Sequence[Point], b: Sequence[Point]) -> List[Point]:
    """
    Intersection of two convex polygons (empty list when disjoint).
    """
    if len(a) < 3 or len(b) < 3:
        return []
    hull_a = cv2.convexHull(_as_array(a))
    hull_b = cv2.convexHull(_as_array(b))
    area, inter = cv2.intersectConvexConvex(hull_a, hull_b)
    if area <= 0.0:
        return []
    return _from_array(inter)


def compute_effective_polygon(
    zone: Sequence[Point],
    field: Sequence[Point],
    buffer_distance: float,
) -> List[Point]:
    """
    Counting polygon of an end zone: original zone plus the buffered strip inside the field.

    Players standing on the zone line are detected slightly inside the field;
    the buffer keeps them counted without reaching into the stands. The union
    is taken as a convex hull, which matches the exact union for the
    adjacent convex quads produced by calibration.
    """
    if not zone:
        return []
    buffered = buffer_convex_polygon(zone, buffer_distance)
    strip = intersect_convex_polygons(buffered, field) if field else []
    merged = _as_array(list(zone) + strip)
    return _from_array(cv2.convexHull(merged))


def transform_polygon(
    points: Sequence[Point],
    bbox: BBox,
    crop_w: float,
    crop_h: float,
) -> List[PixelPoint]:
    """
    Map global normalized points into the pixel space of a crop of ``bbox``.
    """
    if bbox.w <= 0.0 or bbox.h <= 0.0:
        return []
    return [
        (((p.x - bbox.x) / bbox.w) * crop_w, ((p.y - bbox.y) / bbox.h) * crop_h)
        for p in points
    ]


def point_in_polygon(point: PixelPoint, polygon: Sequence[PixelPoint]) -> bool:
    """
    True when ``point`` lies inside or on the edge of ``polygon``.
    """
    if len(polygon) < 3:
        return False
    contour = np.array(polygon, dtype=np.float32).reshape(-1, 1, 2)
    x, y = point
    return cv2.pointPolygonTest(contour, (float(x), float(y)), False) >= 0
