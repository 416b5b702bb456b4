"""
Spatial analysis helper functions.

Provides utilities for:
- KD-Tree spatial indexing
- Plot centroid resolution from boundaries
- Cluster centroids and distances
- Group boundary union
"""
from typing import Optional, Sequence
import logging

import numpy as np
from scipy.spatial import KDTree
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform, unary_union

from app.utils.geo_projection import utm_transformers

logger = logging.getLogger(__name__)


def build_kdtree(coordinates: Sequence[tuple[float, float]]) -> KDTree:
    """
    Build a KD-Tree for efficient spatial queries.

    Args:
        coordinates: List of (x, y) coordinate tuples

    Returns:
        KDTree instance
    """
    points = np.array(coordinates, dtype=float)
    return KDTree(points)


def boundary_polygon(boundary: Optional[Sequence[Sequence[float]]]) -> Optional[Polygon]:
    """
    Build a shapely polygon from [lon, lat] pairs.

    Returns None when the boundary is missing, too short, or not a valid
    polygon (self-intersecting, zero area).
    """
    if not boundary or len(boundary) < 3:
        return None

    try:
        polygon = Polygon([(float(p[0]), float(p[1])) for p in boundary])
    except (ValueError, TypeError, IndexError) as e:
        logger.debug(f"Could not build polygon from boundary: {e}")
        return None

    if polygon.is_empty or not polygon.is_valid or polygon.area <= 0:
        return None
    return polygon


def polygon_centroid(boundary: Optional[Sequence[Sequence[float]]]) -> Optional[tuple[float, float]]:
    """
    Centroid of a plot boundary.

    Args:
        boundary: List of [lon, lat] pairs

    Returns:
        (latitude, longitude) of the centroid, or None if the boundary is unusable
    """
    polygon = boundary_polygon(boundary)
    if polygon is None:
        return None
    centroid = polygon.centroid
    return (centroid.y, centroid.x)


def mean_point(points: Sequence[tuple[float, float]]) -> tuple[float, float]:
    """Arithmetic mean of a set of planar points."""
    arr = np.array(points, dtype=float)
    mean = arr.mean(axis=0)
    return (float(mean[0]), float(mean[1]))


def distance(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Euclidean distance between two planar points."""
    return float(np.hypot(a[0] - b[0], a[1] - b[1]))


def smooth_outline(geometry: BaseGeometry, buffer_m: float) -> BaseGeometry:
    """
    Grow a lon/lat outline by ``buffer_m`` meters, then shrink it by 30% of that.

    Gaps narrower than twice the buffer between neighboring plots close up,
    and the outline ends slightly outside the plots it encloses.
    """
    center = geometry.centroid
    to_utm, to_wgs84 = utm_transformers(center.x, center.y)
    projected = transform(to_utm.transform, geometry)
    smoothed = projected.buffer(buffer_m).buffer(-buffer_m * 0.3)
    return transform(to_wgs84.transform, smoothed)


def union_boundary(
    boundaries: Sequence[Optional[Sequence[Sequence[float]]]],
    buffer_m: float = 0.0,
) -> Optional[str]:
    """
    Union of plot boundaries as WKT.

    With a positive ``buffer_m`` the union is smoothed first (see
    ``smooth_outline``). A union that is still disjoint is replaced by its
    convex hull so a group always has a single outline.

    Args:
        boundaries: Plot boundaries as lists of [lon, lat] pairs
        buffer_m: Border buffer in meters, 0 for the plain union

    Returns:
        WKT polygon, or None when no member has a usable boundary
    """
    polygons = [p for p in (boundary_polygon(b) for b in boundaries) if p is not None]
    if not polygons:
        return None

    union = unary_union(polygons)
    if buffer_m > 0:
        smoothed = smooth_outline(union, buffer_m)
        if not smoothed.is_empty:
            union = smoothed
    if isinstance(union, MultiPolygon):
        union = union.convex_hull
    return union.wkt
