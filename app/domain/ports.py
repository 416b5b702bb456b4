"""
Ports the group formation services depend on.

The services never touch a concrete store, message bus or HTTP client;
implementations live in ``app.infrastructure`` and are injected.
"""
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

from app.domain.models import Group, GroupChangeEvent, PlotCandidate, Supervisor


@dataclass
class CandidateSnapshot:
    """Plots of one (cluster, season, year) at a given store version."""
    version: int
    plots: list[PlotCandidate] = field(default_factory=list)


@dataclass
class ReferenceNames:
    """Display names used to generate group names."""
    cluster_name: str = ""
    season_name: str = ""
    variety_names: dict[str, str] = field(default_factory=dict)


class PlotRepository(Protocol):
    """Read side: candidate plots and reference data."""

    async def load_candidates(self, cluster_id: str, season_id: str, year: int) -> CandidateSnapshot:
        ...

    async def get_plots(self, plot_ids: Sequence[str], season_id: str, year: int) -> list[PlotCandidate]:
        ...

    async def list_supervisors(self, cluster_id: str) -> list[Supervisor]:
        ...

    async def get_reference_names(
        self, cluster_id: str, season_id: str, variety_ids: Sequence[str]
    ) -> ReferenceNames:
        ...


class GroupRepository(Protocol):
    """Write side: atomic persistence of a batch of groups."""

    async def count_groups(self, cluster_id: str, season_id: str, year: int) -> int:
        """Groups already formed for the (cluster, season, year)."""
        ...

    async def persist_groups(
        self,
        cluster_id: str,
        season_id: str,
        year: int,
        groups: Sequence[Group],
        expected_version: Optional[int] = None,
    ) -> list[Group]:
        """
        Persist all groups and assign their plots, or nothing.

        Raises:
            ConcurrencyConflictError: If the version moved since the snapshot
                or a plot is already assigned for the season
        """
        ...


class EventSink(Protocol):
    """Outbound channel for group change notifications."""

    async def publish(self, event: GroupChangeEvent) -> None:
        ...


class SupervisorAssigner(Protocol):
    """Picks a supervisor for a group; None leaves the group unassigned."""

    async def assign(
        self, group_id: str, cluster_id: str, candidates: Sequence[Supervisor]
    ) -> Optional[str]:
        ...
