"""
Domain service: the set of plots a formation run may group.
"""
from dataclasses import dataclass, field
from typing import Iterable
import logging

from app.domain.models import (
    FarmerStatus,
    PlotCandidate,
    PlotStatus,
    UngroupablePlot,
    UngroupReason,
)

logger = logging.getLogger(__name__)


@dataclass
class PlotCandidateSet:
    """
    Read-only view of the plots eligible for one (cluster, season, year) run.

    Plots of other clusters, inactive plots and plots already in a group
    are not candidates at all. Plots that are candidates but cannot be
    grouped (ineligible farmer, no variety selected) are kept in
    ``excluded`` so they can be reported.
    """
    cluster_id: str
    eligible: list[PlotCandidate] = field(default_factory=list)
    excluded: list[UngroupablePlot] = field(default_factory=list)

    @classmethod
    def from_plots(cls, cluster_id: str, plots: Iterable[PlotCandidate]) -> "PlotCandidateSet":
        candidate_set = cls(cluster_id=cluster_id)
        skipped = 0

        for plot in sorted(plots, key=lambda p: p.id):
            if (
                plot.cluster_id != cluster_id
                or plot.status != PlotStatus.ACTIVE
                or plot.group_id is not None
            ):
                skipped += 1
                continue

            if plot.farmer_status == FarmerStatus.NOT_ALLOWED:
                candidate_set.excluded.append(UngroupablePlot(
                    plot_id=plot.id,
                    farmer_id=plot.farmer_id,
                    reason=UngroupReason.FARMER_INELIGIBLE,
                    reason_description=f"Farmer {plot.farmer_id} is not allowed to join groups",
                    suggestions=["Resolve the farmer's status before grouping this plot"],
                ))
            elif plot.rice_variety_id is None:
                candidate_set.excluded.append(UngroupablePlot(
                    plot_id=plot.id,
                    farmer_id=plot.farmer_id,
                    reason=UngroupReason.VARIETY_MISMATCH,
                    reason_description="No rice variety selected for this season",
                    suggestions=["Farmer must select a rice variety before grouping"],
                ))
            else:
                candidate_set.eligible.append(plot)

        logger.debug(
            f"Candidate set for cluster {cluster_id}: {len(candidate_set.eligible)} eligible, "
            f"{len(candidate_set.excluded)} excluded, {skipped} not candidates"
        )
        return candidate_set

    @property
    def by_id(self) -> dict[str, PlotCandidate]:
        return {plot.id: plot for plot in self.eligible}

    @property
    def total_candidates(self) -> int:
        return len(self.eligible) + len(self.excluded)

    def __len__(self) -> int:
        return len(self.eligible)

    def __contains__(self, plot_id: object) -> bool:
        return any(plot.id == plot_id for plot in self.eligible)
