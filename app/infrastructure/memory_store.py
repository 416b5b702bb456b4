"""
Infrastructure layer: in-memory farm store.

Implements both the plot read port and the group write port. Writes are
serialized by an ``asyncio.Lock`` and guarded by an optimistic version per
(cluster, season, year), so two runs racing on the same plots cannot both
commit.
"""
import asyncio
import logging
from typing import Optional, Sequence

from app.domain.exceptions import ConcurrencyConflictError
from app.domain.models import FarmerStatus, Group, PlotCandidate, Supervisor
from app.domain.ports import CandidateSnapshot, ReferenceNames

logger = logging.getLogger(__name__)

SeasonKey = tuple[str, int]
RunKey = tuple[str, str, int]


class InMemoryFarmStore:
    """Plots, supervisors and groups held in process memory."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._plots: dict[SeasonKey, dict[str, PlotCandidate]] = {}
        self._assignments: dict[SeasonKey, dict[str, str]] = {}
        self._farmer_status: dict[str, FarmerStatus] = {}
        self._versions: dict[RunKey, int] = {}
        self._groups: dict[str, Group] = {}
        self._supervisors: dict[str, Supervisor] = {}
        self._cluster_names: dict[str, str] = {}
        self._season_names: dict[str, str] = {}
        self._variety_names: dict[str, str] = {}

    # ------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------

    def add_plot(self, season_id: str, year: int, plot: PlotCandidate) -> None:
        """Register a plot's cultivation for a season."""
        self._plots.setdefault((season_id, year), {})[plot.id] = plot
        if plot.group_id is not None:
            self._assignments.setdefault((season_id, year), {})[plot.id] = plot.group_id

    def set_farmer_status(self, farmer_id: str, status: FarmerStatus) -> None:
        self._farmer_status[farmer_id] = status

    def add_supervisor(self, supervisor: Supervisor) -> None:
        self._supervisors[supervisor.id] = supervisor

    def set_names(
        self,
        clusters: Optional[dict[str, str]] = None,
        seasons: Optional[dict[str, str]] = None,
        varieties: Optional[dict[str, str]] = None,
    ) -> None:
        self._cluster_names.update(clusters or {})
        self._season_names.update(seasons or {})
        self._variety_names.update(varieties or {})

    # ------------------------------------------------------------
    # Read port
    # ------------------------------------------------------------

    def _current(self, season_id: str, year: int, plot: PlotCandidate) -> PlotCandidate:
        assignments = self._assignments.get((season_id, year), {})
        return plot.model_copy(update={
            "group_id": assignments.get(plot.id),
            "farmer_status": self._farmer_status.get(plot.farmer_id, plot.farmer_status),
        })

    async def load_candidates(self, cluster_id: str, season_id: str, year: int) -> CandidateSnapshot:
        plots = self._plots.get((season_id, year), {})
        snapshot = CandidateSnapshot(
            version=self._versions.get((cluster_id, season_id, year), 0),
            plots=[
                self._current(season_id, year, plot)
                for plot in plots.values()
                if plot.cluster_id == cluster_id
            ],
        )
        logger.debug(
            f"Loaded {len(snapshot.plots)} plots for cluster {cluster_id}, "
            f"season {season_id}, year {year} at version {snapshot.version}"
        )
        return snapshot

    async def get_plots(self, plot_ids: Sequence[str], season_id: str, year: int) -> list[PlotCandidate]:
        plots = self._plots.get((season_id, year), {})
        return [
            self._current(season_id, year, plots[pid])
            for pid in dict.fromkeys(plot_ids)
            if pid in plots
        ]

    async def list_supervisors(self, cluster_id: str) -> list[Supervisor]:
        return sorted(
            (s for s in self._supervisors.values() if s.cluster_id in (None, cluster_id)),
            key=lambda s: s.id,
        )

    async def get_reference_names(
        self, cluster_id: str, season_id: str, variety_ids: Sequence[str]
    ) -> ReferenceNames:
        return ReferenceNames(
            cluster_name=self._cluster_names.get(cluster_id, cluster_id),
            season_name=self._season_names.get(season_id, season_id),
            variety_names={vid: self._variety_names.get(vid, vid) for vid in variety_ids},
        )

    # ------------------------------------------------------------
    # Write port
    # ------------------------------------------------------------

    async def count_groups(self, cluster_id: str, season_id: str, year: int) -> int:
        return len(self.list_groups(cluster_id, season_id, year))

    async def persist_groups(
        self,
        cluster_id: str,
        season_id: str,
        year: int,
        groups: Sequence[Group],
        expected_version: Optional[int] = None,
    ) -> list[Group]:
        key = (cluster_id, season_id, year)

        async with self._lock:
            current = self._versions.get(key, 0)
            assignments = self._assignments.setdefault((season_id, year), {})

            conflicting = sorted({
                pid for group in groups for pid in group.plot_ids if pid in assignments
            })
            if conflicting:
                logger.warning(f"Conflict persisting groups for {key}: {len(conflicting)} plots already assigned")
                raise ConcurrencyConflictError(
                    f"{len(conflicting)} plot(s) were assigned to a group by another run",
                    conflicting_plot_ids=conflicting,
                )
            if expected_version is not None and expected_version != current:
                logger.warning(f"Conflict persisting groups for {key}: version {expected_version} != {current}")
                raise ConcurrencyConflictError(
                    f"Candidate plots changed since they were loaded (version {expected_version}, now {current})"
                )

            for group in groups:
                self._groups[group.id] = group
                for pid in group.plot_ids:
                    assignments[pid] = group.id
            self._versions[key] = current + 1

        logger.info(f"Persisted {len(groups)} groups for cluster {cluster_id}, season {season_id}, year {year}")
        return list(groups)

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    def list_groups(self, cluster_id: str, season_id: str, year: int) -> list[Group]:
        return [
            g for g in self._groups.values()
            if g.cluster_id == cluster_id and g.season_id == season_id and g.year == year
        ]


# Singleton instance
_farm_store: Optional[InMemoryFarmStore] = None


def get_farm_store() -> InMemoryFarmStore:
    """
    Get or create the process-wide farm store.

    Returns:
        InMemoryFarmStore instance
    """
    global _farm_store
    if _farm_store is None:
        _farm_store = InMemoryFarmStore()
    return _farm_store
