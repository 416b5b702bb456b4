"""
Domain service: turn validated proposals into persisted groups.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from app.domain.exceptions import ExternalServiceError, FormationCancelledError, InputError
from app.domain.models import (
    Group,
    GroupChangeEvent,
    GroupProposal,
    GroupStatus,
    Supervisor,
)
from app.domain.ports import EventSink, GroupRepository, SupervisorAssigner

logger = logging.getLogger(__name__)


@dataclass
class MaterializationResult:
    groups: list[Group] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class GroupMaterializer:
    """
    Persists validated proposals as groups, all or nothing.

    In preview mode proposals are handed back untouched. In commit mode
    each proposal becomes a ``Draft`` (or ``Active``) group, supervisors
    are optionally assigned, the whole batch is written in one call to the
    group repository, and one change event per group goes to the sink.
    """

    def __init__(
        self,
        group_repository: GroupRepository,
        event_sink: EventSink,
        supervisor_assigner: Optional[SupervisorAssigner] = None,
    ):
        self.group_repository = group_repository
        self.event_sink = event_sink
        self.supervisor_assigner = supervisor_assigner

    def preview(self, proposals: Sequence[GroupProposal]) -> list[GroupProposal]:
        """Return proposals for review without persisting anything."""
        return [p.model_copy(deep=True) for p in proposals]

    async def materialize(
        self,
        cluster_id: str,
        season_id: str,
        year: int,
        proposals: Sequence[GroupProposal],
        create_immediately: bool = False,
        expected_version: Optional[int] = None,
        supervisors: Optional[Sequence[Supervisor]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MaterializationResult:
        """
        Persist proposals as groups.

        Args:
            cluster_id: Cluster of the run
            season_id: Season of the run
            year: Year of the run
            proposals: Proposals that passed validation
            create_immediately: Create groups as Active instead of Draft
            expected_version: Snapshot version the proposals were built from
            supervisors: Candidates for auto-assignment; None disables it
            cancel_event: When set before the write, nothing is persisted

        Returns:
            MaterializationResult with the persisted groups and warnings

        Raises:
            InputError: If a proposal has not passed validation
            FormationCancelledError: If the run was cancelled
            ConcurrencyConflictError: If another run assigned the same plots first
        """
        unvalidated = [
            p.group_number for p in proposals
            if p.validation is None or not p.validation.ok
        ]
        if unvalidated:
            raise InputError(f"Proposals {unvalidated} have not passed validation")

        status = GroupStatus.ACTIVE if create_immediately else GroupStatus.DRAFT
        result = MaterializationResult()

        for proposal in proposals:
            result.groups.append(Group(
                id=str(uuid.uuid4()),
                cluster_id=cluster_id,
                season_id=season_id,
                year=year,
                group_name=proposal.group_name,
                status=status,
                rice_variety_id=proposal.rice_variety_id,
                planting_date=proposal.median_planting_date,
                planting_window_start=proposal.planting_window_start,
                planting_window_end=proposal.planting_window_end,
                total_area=proposal.total_area,
                supervisor_id=proposal.supervisor_id,
                is_exception=proposal.is_exception,
                exception_reason=proposal.exception_reason,
                plot_ids=list(proposal.plot_ids),
                boundary_wkt=proposal.boundary_wkt,
            ))

        if supervisors is not None:
            await self._assign_supervisors(cluster_id, result, supervisors)

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Formation run for cluster {cluster_id} cancelled before persisting")
            raise FormationCancelledError("Group formation was cancelled; nothing was persisted")

        persisted = await self.group_repository.persist_groups(
            cluster_id, season_id, year, result.groups, expected_version=expected_version
        )
        result.groups = list(persisted)

        for group in result.groups:
            await self.event_sink.publish(GroupChangeEvent(
                group_id=group.id,
                change_type="created",
                cluster_id=cluster_id,
                season_id=season_id,
                year=year,
            ))

        logger.info(
            f"Materialized {len(result.groups)} groups ({status.value}) for cluster {cluster_id}"
        )
        return result

    async def _assign_supervisors(
        self,
        cluster_id: str,
        result: MaterializationResult,
        supervisors: Sequence[Supervisor],
    ) -> None:
        if self.supervisor_assigner is None:
            result.warnings.append("Supervisor auto-assignment requested but no assigner is configured")
            return

        for group in result.groups:
            if group.supervisor_id is not None:
                continue
            try:
                supervisor_id = await self.supervisor_assigner.assign(group.id, cluster_id, supervisors)
            except ExternalServiceError as e:
                logger.warning(f"Supervisor assignment failed for group {group.id}: {e.message}")
                supervisor_id = None

            if supervisor_id is None:
                result.warnings.append(
                    f"Group '{group.group_name or group.id}' with {len(group.plot_ids)} plots "
                    f"created without supervisor - no supervisor available"
                )
            else:
                group.supervisor_id = supervisor_id
