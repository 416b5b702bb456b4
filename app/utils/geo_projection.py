"""
Geospatial projection utilities for plot coordinates.

Plot centroids arrive as WGS84 lat/lon. Proximity thresholds are in meters,
so centroids are projected to a UTM zone before any distance is measured.
"""
from functools import lru_cache
from typing import List, Tuple

from pyproj import Transformer

WGS84 = "EPSG:4326"


def get_utm_zone(longitude: float) -> int:
    """UTM zone number (1-60) containing a longitude."""
    return min(int((longitude + 180) // 6) + 1, 60)


def get_utm_crs(longitude: float, latitude: float) -> str:
    """
    EPSG code of the WGS84 UTM zone for a location.

    Northern zones are 326xx, southern zones 327xx.
    """
    base = 32600 if latitude >= 0 else 32700
    return f"EPSG:{base + get_utm_zone(longitude)}"


@lru_cache(maxsize=16)
def _transformer(utm_crs: str) -> Transformer:
    return Transformer.from_crs(WGS84, utm_crs, always_xy=True)


@lru_cache(maxsize=16)
def _inverse_transformer(utm_crs: str) -> Transformer:
    return Transformer.from_crs(utm_crs, WGS84, always_xy=True)


def utm_transformers(longitude: float, latitude: float) -> Tuple[Transformer, Transformer]:
    """(WGS84 -> UTM, UTM -> WGS84) transformers for the zone of a location, both (x, y) ordered."""
    utm_crs = get_utm_crs(longitude, latitude)
    return _transformer(utm_crs), _inverse_transformer(utm_crs)


def project_to_meters(
    coordinates: List[Tuple[float, float]]
) -> Tuple[List[Tuple[float, float]], str]:
    """
    Project lat/lon coordinates to UTM meters.

    A cluster spans a few kilometers, so all of its plots share the zone of
    their mean position.

    Args:
        coordinates: List of (latitude, longitude) tuples in degrees

    Returns:
        Tuple of:
            - List of (x, y) coordinates in meters, same order as the input
            - The UTM CRS used

    Raises:
        ValueError: If no coordinates are given
    """
    if not coordinates:
        raise ValueError("Coordinates list cannot be empty")

    lats = [c[0] for c in coordinates]
    lons = [c[1] for c in coordinates]
    utm_crs = get_utm_crs(sum(lons) / len(lons), sum(lats) / len(lats))

    xs, ys = _transformer(utm_crs).transform(lons, lats)
    return [(float(x), float(y)) for x, y in zip(xs, ys)], utm_crs
