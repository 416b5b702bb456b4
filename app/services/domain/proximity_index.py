"""
Domain service: spatial index over plot centroids.

Built fresh for every formation run and discarded afterwards.
"""
from typing import Optional, Sequence
import logging

import numpy as np
from scipy.spatial import KDTree

from app.domain.models import PlotCandidate
from app.utils.geo_projection import project_to_meters
from app.utils.spatial_helpers import build_kdtree, polygon_centroid

logger = logging.getLogger(__name__)

# Distances closer than this are treated as ties (meters)
DISTANCE_TIE_PRECISION = 3


def resolve_centroid(plot: PlotCandidate) -> Optional[tuple[float, float]]:
    """
    Centroid of a plot as (latitude, longitude).

    Uses the precomputed centroid when present, otherwise the centroid of a
    valid boundary polygon. Returns None when neither is usable.
    """
    if plot.centroid is not None:
        return (plot.centroid.lat, plot.centroid.lng)
    return polygon_centroid(plot.boundary)


class ProximityIndex:
    """
    Answers "which plots lie within d meters of this point".

    Results are ordered by ascending distance, ties broken by plot id, so
    identical input always gives identical output.
    """

    def __init__(
        self,
        entries: Sequence[tuple[str, tuple[float, float]]],
        latlon: Optional[dict[str, tuple[float, float]]] = None,
    ):
        """
        Args:
            entries: (plot_id, (x, y)) pairs in projected meters
            latlon: Optional original (lat, lon) per plot id
        """
        ordered = sorted(entries, key=lambda e: e[0])
        self._ids: list[str] = [plot_id for plot_id, _ in ordered]
        self._positions: dict[str, tuple[float, float]] = dict(ordered)
        self._latlon = latlon or {}
        self._points = np.array([pos for _, pos in ordered], dtype=float).reshape(-1, 2)
        self._kdtree: Optional[KDTree] = build_kdtree(self._points) if ordered else None

    @classmethod
    def from_plots(
        cls, plots: Sequence[PlotCandidate]
    ) -> tuple["ProximityIndex", list[PlotCandidate]]:
        """
        Build an index from candidate plots.

        Returns:
            Tuple of:
                - The index over every plot with a usable centroid
                - Plots left out because they have no usable geometry
        """
        located: list[tuple[str, tuple[float, float]]] = []
        missing: list[PlotCandidate] = []

        for plot in plots:
            centroid = resolve_centroid(plot)
            if centroid is None:
                missing.append(plot)
            else:
                located.append((plot.id, centroid))

        if missing:
            logger.warning(f"{len(missing)} plots have no usable centroid and are excluded from the index")

        if not located:
            return cls([]), missing

        projected, utm_crs = project_to_meters([latlon for _, latlon in located])
        logger.debug(f"Projected {len(projected)} plot centroids to {utm_crs}")

        entries = [(plot_id, xy) for (plot_id, _), xy in zip(located, projected)]
        return cls(entries, latlon=dict(located)), missing

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, plot_id: object) -> bool:
        return plot_id in self._positions

    @property
    def plot_ids(self) -> list[str]:
        return list(self._ids)

    def position(self, plot_id: str) -> tuple[float, float]:
        """Projected (x, y) of a plot in meters."""
        return self._positions[plot_id]

    def coordinate(self, plot_id: str) -> Optional[tuple[float, float]]:
        """Original (lat, lon) of a plot, when known."""
        return self._latlon.get(plot_id)

    def neighbors_with_distance(
        self,
        point: tuple[float, float],
        radius: float,
    ) -> list[tuple[str, float]]:
        """
        Plots within ``radius`` meters of ``point``.

        Args:
            point: (x, y) in projected meters
            radius: Search radius in meters (inclusive)

        Returns:
            List of (plot_id, distance) ordered by distance, then plot id
        """
        if self._kdtree is None:
            return []

        indices = self._kdtree.query_ball_point(point, r=radius)
        if not indices:
            return []

        hits = self._points[indices]
        distances = np.hypot(hits[:, 0] - point[0], hits[:, 1] - point[1])
        results = [
            (self._ids[i], float(d))
            for i, d in zip(indices, distances)
        ]
        results.sort(key=lambda r: (round(r[1], DISTANCE_TIE_PRECISION), r[0]))
        return results

    def neighbors(self, point: tuple[float, float], radius: float) -> list[str]:
        """Plot ids within ``radius`` meters of ``point``, nearest first."""
        return [plot_id for plot_id, _ in self.neighbors_with_distance(point, radius)]
