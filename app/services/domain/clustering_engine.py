"""
Domain service: partition candidate plots into group proposals.

The algorithm is a deterministic greedy seed-and-grow:
- Plots are seeded in plot id order
- A cluster grows by pulling the nearest compatible plot within the
  proximity threshold of its current centroid
- Undersized clusters get a bounded number of merge attempts with the
  nearest undersized neighbor cluster
- Whatever is still undersized flows through as an exception proposal
  (or is reported as ungroupable, depending on configuration)
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional
import logging

from app.config import settings
from app.domain.models import (
    Coordinate,
    GroupingParameters,
    GroupProposal,
    PlotCandidate,
    UngroupablePlot,
    UngroupReason,
)
from app.services.domain.candidate_set import PlotCandidateSet
from app.services.domain.proximity_index import DISTANCE_TIE_PRECISION, ProximityIndex
from app.utils.spatial_helpers import distance, mean_point, union_boundary

logger = logging.getLogger(__name__)

# Ungrouped plots closer than this to a group get a manual-assignment suggestion
SUGGESTION_RADIUS_M = 5000.0


@dataclass
class ClusteringConfig:
    """Policy knobs of the clustering engine."""

    merge_attempts: int = 1
    """Merge attempts for an undersized cluster before giving up on it"""

    undersized_as_exception: bool = True
    """Emit undersized clusters as exception proposals rather than ungroupable plots"""

    @classmethod
    def from_settings(cls) -> "ClusteringConfig":
        return cls(
            merge_attempts=settings.clustering_merge_attempts,
            undersized_as_exception=settings.clustering_undersized_as_exception,
        )


@dataclass
class ClusteringOutcome:
    """Proposals plus every candidate that did not make it into one."""
    proposals: list[GroupProposal] = field(default_factory=list)
    ungroupable: list[UngroupablePlot] = field(default_factory=list)

    @property
    def plots_grouped(self) -> int:
        return sum(p.plot_count for p in self.proposals)


@dataclass
class _WorkingCluster:
    variety: str
    members: list[PlotCandidate] = field(default_factory=list)
    positions: list[tuple[float, float]] = field(default_factory=list)
    merge_attempts: int = 0
    absorbed: bool = False

    def add(self, plot: PlotCandidate, position: tuple[float, float]) -> None:
        self.members.append(plot)
        self.positions.append(position)

    def absorb(self, other: "_WorkingCluster") -> None:
        self.members.extend(other.members)
        self.positions.extend(other.positions)
        other.absorbed = True

    @property
    def centroid(self) -> tuple[float, float]:
        return mean_point(self.positions)

    @property
    def total_area(self) -> Decimal:
        return sum((p.area for p in self.members), Decimal("0"))

    @property
    def window(self) -> tuple[date, date]:
        dates = [p.planting_date for p in self.members]
        return min(dates), max(dates)

    @property
    def median_date(self) -> date:
        start, end = self.window
        return start + timedelta(days=(end - start).days // 2)

    @property
    def span_days(self) -> int:
        start, end = self.window
        return (end - start).days

    def fits(self, plots: list[PlotCandidate], parameters: GroupingParameters) -> bool:
        """Whether adding ``plots`` keeps the cluster within its upper bounds."""
        if len(self.members) + len(plots) > parameters.max_plots_per_group:
            return False
        if self.total_area + sum((p.area for p in plots), Decimal("0")) > parameters.max_group_area:
            return False
        dates = [p.planting_date for p in self.members] + [p.planting_date for p in plots]
        return (max(dates) - min(dates)).days <= parameters.max_planting_span_days

    def is_full(self, parameters: GroupingParameters) -> bool:
        return (
            len(self.members) >= parameters.max_plots_per_group
            or self.total_area >= parameters.max_group_area
        )

    def is_undersized(self, parameters: GroupingParameters) -> bool:
        return (
            len(self.members) < parameters.min_plots_per_group
            or self.total_area < parameters.min_group_area
        )


class ClusteringEngine:
    """
    Domain service that turns a candidate set into group proposals.

    Every candidate ends up in exactly one proposal or exactly one
    ungroupable entry. Identical input gives identical output.
    """

    def __init__(self, config: Optional[ClusteringConfig] = None):
        self.config = config or ClusteringConfig.from_settings()
        logger.debug(
            f"Initialized ClusteringEngine with merge_attempts={self.config.merge_attempts}, "
            f"undersized_as_exception={self.config.undersized_as_exception}"
        )

    def form_clusters(
        self,
        candidate_set: PlotCandidateSet,
        parameters: GroupingParameters,
    ) -> ClusteringOutcome:
        """
        Partition the candidate set into proposals.

        Args:
            candidate_set: Eligible and excluded plots of one run
            parameters: Grouping constraints

        Returns:
            ClusteringOutcome with numbered proposals and ungroupable plots
        """
        outcome = ClusteringOutcome(ungroupable=list(candidate_set.excluded))
        if not candidate_set.eligible:
            logger.info(f"No eligible plots in cluster {candidate_set.cluster_id}")
            return outcome

        logger.info(
            f"Clustering {len(candidate_set)} plots for cluster {candidate_set.cluster_id} "
            f"(threshold={parameters.proximity_threshold_m}m, "
            f"tolerance={parameters.planting_date_tolerance_days}d)"
        )

        # Step 1: Spatial index; plots without geometry are reported, not fatal
        index, missing = ProximityIndex.from_plots(candidate_set.eligible)
        for plot in missing:
            outcome.ungroupable.append(UngroupablePlot(
                plot_id=plot.id,
                farmer_id=plot.farmer_id,
                reason=UngroupReason.NO_GEOMETRY,
                reason_description="Plot boundary/coordinate missing or invalid",
                suggestions=["Assign a valid polygon boundary to the plot before grouping"],
            ))

        by_id = {plot.id: plot for plot in candidate_set.eligible if plot.id in index}

        # Step 2: Seed and grow
        clusters = self._grow_clusters(index, by_id, parameters)
        logger.info(f"Grew {len(clusters)} clusters")

        # Step 3: Merge undersized clusters
        clusters = self._merge_undersized(clusters, parameters)

        # Step 4: Proposals (exception or ungroupable for what is still undersized)
        located: list[tuple[GroupProposal, tuple[float, float]]] = []
        for cluster in clusters:
            if cluster.is_undersized(parameters) and not self.config.undersized_as_exception:
                outcome.ungroupable.extend(self._isolated(cluster, parameters))
                continue
            proposal = self._to_proposal(
                len(outcome.proposals) + 1, candidate_set.cluster_id, cluster, index, parameters
            )
            outcome.proposals.append(proposal)
            located.append((proposal, cluster.centroid))

        # Step 5: Point ungrouped plots at the nearest compatible proposal
        self._analyze_ungrouped(outcome.ungroupable, located, index, candidate_set)

        exceptions = sum(1 for p in outcome.proposals if p.is_exception)
        logger.info(
            f"Formed {len(outcome.proposals)} proposals ({exceptions} exceptions), "
            f"{len(outcome.ungroupable)} ungroupable plots"
        )
        return outcome

    def _grow_clusters(
        self,
        index: ProximityIndex,
        by_id: dict[str, PlotCandidate],
        parameters: GroupingParameters,
    ) -> list[_WorkingCluster]:
        assigned: set[str] = set()
        clusters: list[_WorkingCluster] = []

        for seed_id in index.plot_ids:
            if seed_id in assigned:
                continue

            seed = by_id[seed_id]
            cluster = _WorkingCluster(variety=seed.rice_variety_id)
            cluster.add(seed, index.position(seed_id))
            assigned.add(seed_id)

            while not cluster.is_full(parameters):
                plot = self._next_member(cluster, index, by_id, assigned, parameters)
                if plot is None:
                    break
                cluster.add(plot, index.position(plot.id))
                assigned.add(plot.id)

            logger.debug(
                f"Cluster seeded at {seed_id}: {len(cluster.members)} plots, "
                f"{cluster.total_area} ha"
            )
            clusters.append(cluster)

        return clusters

    def _next_member(
        self,
        cluster: _WorkingCluster,
        index: ProximityIndex,
        by_id: dict[str, PlotCandidate],
        assigned: set[str],
        parameters: GroupingParameters,
    ) -> Optional[PlotCandidate]:
        """
        Nearest unassigned plot that keeps the cluster within bounds.

        Ties on distance go to the plot whose planting date is closest to
        the cluster median, then to the lowest plot id.
        """
        median = cluster.median_date
        best_key = None
        best_plot = None

        for plot_id, dist in index.neighbors_with_distance(
            cluster.centroid, parameters.proximity_threshold_m
        ):
            rounded = round(dist, DISTANCE_TIE_PRECISION)
            if best_key is not None and rounded > best_key[0]:
                break
            if plot_id in assigned:
                continue

            plot = by_id[plot_id]
            if plot.rice_variety_id != cluster.variety:
                continue
            if not cluster.fits([plot], parameters):
                continue

            key = (rounded, abs((plot.planting_date - median).days), plot_id)
            if best_key is None or key < best_key:
                best_key = key
                best_plot = plot

        return best_plot

    def _merge_undersized(
        self,
        clusters: list[_WorkingCluster],
        parameters: GroupingParameters,
    ) -> list[_WorkingCluster]:
        merges = 0
        for cluster in clusters:
            while (
                not cluster.absorbed
                and cluster.is_undersized(parameters)
                and cluster.merge_attempts < self.config.merge_attempts
            ):
                cluster.merge_attempts += 1
                partner = self._nearest_mergeable(cluster, clusters, parameters)
                if partner is None:
                    break
                cluster.absorb(partner)
                merges += 1

        if merges:
            logger.info(f"Merged {merges} undersized cluster pairs")
        return [c for c in clusters if not c.absorbed]

    def _nearest_mergeable(
        self,
        cluster: _WorkingCluster,
        clusters: list[_WorkingCluster],
        parameters: GroupingParameters,
    ) -> Optional[_WorkingCluster]:
        centroid = cluster.centroid
        best_key = None
        best = None

        for other in clusters:
            if other is cluster or other.absorbed:
                continue
            if other.variety != cluster.variety or not other.is_undersized(parameters):
                continue

            dist = distance(centroid, other.centroid)
            if dist > parameters.proximity_threshold_m:
                continue
            if not cluster.fits(other.members, parameters):
                continue

            key = (round(dist, DISTANCE_TIE_PRECISION), other.members[0].id)
            if best_key is None or key < best_key:
                best_key = key
                best = other

        return best

    def _to_proposal(
        self,
        number: int,
        cluster_id: str,
        cluster: _WorkingCluster,
        index: ProximityIndex,
        parameters: GroupingParameters,
    ) -> GroupProposal:
        start, end = cluster.window
        reasons = []

        if cluster.is_undersized(parameters):
            reasons.append(self._undersized_reason(cluster, parameters))
        if cluster.total_area > parameters.max_group_area:
            reasons.append(
                f"{cluster.total_area:.2f} ha exceeds maximum group area ({parameters.max_group_area} ha)"
            )
        if cluster.span_days > parameters.max_planting_span_days:
            reasons.append(
                f"Planting dates span {cluster.span_days} days "
                f"(maximum {parameters.max_planting_span_days})"
            )

        latlons = [index.coordinate(p.id) for p in cluster.members]
        lat, lng = mean_point([c for c in latlons if c is not None])

        return GroupProposal(
            group_number=number,
            cluster_id=cluster_id,
            rice_variety_id=cluster.variety,
            plot_ids=[p.id for p in cluster.members],
            planting_window_start=start,
            planting_window_end=end,
            median_planting_date=cluster.median_date,
            total_area=cluster.total_area,
            is_exception=bool(reasons),
            exception_reason="; ".join(reasons) if reasons else None,
            centroid=Coordinate(lat=lat, lng=lng),
            boundary_wkt=union_boundary(
                [p.boundary for p in cluster.members], parameters.border_buffer_m
            ),
        )

    @staticmethod
    def _undersized_reason(cluster: _WorkingCluster, parameters: GroupingParameters) -> str:
        parts = []
        if len(cluster.members) < parameters.min_plots_per_group:
            parts.append(f"{len(cluster.members)} plots (minimum {parameters.min_plots_per_group})")
        if cluster.total_area < parameters.min_group_area:
            parts.append(f"{cluster.total_area:.2f} ha (minimum {parameters.min_group_area} ha)")
        return "Undersized after merge attempts: " + ", ".join(parts)

    def _isolated(
        self, cluster: _WorkingCluster, parameters: GroupingParameters
    ) -> list[UngroupablePlot]:
        description = self._undersized_reason(cluster, parameters)
        return [
            UngroupablePlot(
                plot_id=plot.id,
                farmer_id=plot.farmer_id,
                reason=UngroupReason.ISOLATED_UNDERSIZED,
                reason_description=description,
            )
            for plot in cluster.members
        ]

    @staticmethod
    def _analyze_ungrouped(
        ungroupable: list[UngroupablePlot],
        located: list[tuple[GroupProposal, tuple[float, float]]],
        index: ProximityIndex,
        candidate_set: PlotCandidateSet,
    ) -> None:
        plots = candidate_set.by_id

        for entry in ungroupable:
            if entry.plot_id not in index:
                continue

            plot = plots[entry.plot_id]
            position = index.position(entry.plot_id)
            same_variety = [
                (distance(position, centroid), proposal.group_number)
                for proposal, centroid in located
                if proposal.rice_variety_id == plot.rice_variety_id
            ]

            if same_variety:
                nearest_distance, group_number = min(same_variety)
                entry.distance_to_nearest_group = round(nearest_distance, 1)
                entry.nearest_group_number = group_number
                if nearest_distance < SUGGESTION_RADIUS_M:
                    entry.suggestions.append(
                        f"Assign to Group {group_number} manually ({nearest_distance:.0f}m away)"
                    )

            if entry.reason == UngroupReason.ISOLATED_UNDERSIZED:
                entry.suggestions.append("Create exception group if multiple isolated plots exist nearby")
                entry.suggestions.append("Consider adjusting proximity threshold parameter")
