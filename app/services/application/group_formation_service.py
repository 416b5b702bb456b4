"""
Application service: Orchestration layer for group formation.
"""
import asyncio
from collections import Counter
from datetime import date, timedelta
from decimal import Decimal
import logging
from typing import Optional, Sequence

from app.domain.exceptions import InputError
from app.domain.models import (
    FormationResult,
    FormationSummary,
    GroupingParameters,
    GroupProposal,
    PlotCandidate,
    ProposalEdit,
    Severity,
    UngroupablePlot,
    ValidationResult,
    Violation,
    ViolationKind,
)
from app.domain.ports import GroupRepository, PlotRepository
from app.services.domain.candidate_set import PlotCandidateSet
from app.services.domain.clustering_engine import ClusteringEngine
from app.services.domain.group_materializer import GroupMaterializer
from app.services.domain.group_naming import GroupNameGenerator
from app.services.domain.group_validator import GroupValidator
from app.utils.spatial_helpers import union_boundary

logger = logging.getLogger(__name__)


class GroupFormationService:
    """
    Application service for group formation.

    Orchestrates the formation modes. Follows the application layer
    pattern - no grouping rules here, only coordination between the
    ports and the domain services:
    candidate set -> clustering engine -> validator -> preview or materializer.
    """

    def __init__(
        self,
        plot_repository: PlotRepository,
        group_repository: GroupRepository,
        materializer: GroupMaterializer,
        engine: Optional[ClusteringEngine] = None,
        validator: Optional[GroupValidator] = None,
        name_generator: Optional[GroupNameGenerator] = None,
    ):
        """
        Initialize the service with dependencies.

        Args:
            plot_repository: Read port for candidate plots and reference data
            group_repository: Write port, used here for group numbering
            materializer: Persists validated proposals
            engine: Clustering engine (default configuration when omitted)
            validator: Proposal validator
            name_generator: Generates names for unnamed groups
        """
        self.plot_repository = plot_repository
        self.group_repository = group_repository
        self.materializer = materializer
        self.engine = engine or ClusteringEngine()
        self.validator = validator or GroupValidator()
        self.name_generator = name_generator or GroupNameGenerator()

    async def form_groups(
        self,
        cluster_id: str,
        season_id: str,
        year: int,
        parameters=None,
        auto_assign_supervisors: bool = False,
        create_immediately: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> FormationResult:
        """
        Form and persist groups for a cluster automatically.

        This method orchestrates:
        1. Loading the candidate snapshot
        2. Clustering it into proposals
        3. Validating and naming the proposals
        4. Materializing them in one atomic write

        Args:
            cluster_id: Cluster to group
            season_id: Season of the run
            year: Year of the run
            parameters: Optional parameter overrides
            auto_assign_supervisors: Assign a supervisor to each new group
            create_immediately: Create groups as Active instead of Draft
            cancel_event: Cancels the run when set before persisting

        Returns:
            FormationResult with the persisted groups and ungroupable plots

        Raises:
            InputError: If the parameters are invalid or there are no candidates
            FormationCancelledError: If the run was cancelled
            ConcurrencyConflictError: If another run assigned the same plots first
        """
        params = GroupingParameters.from_overrides(parameters)
        version, candidate_set = await self._load_candidate_set(cluster_id, season_id, year)

        outcome = self.engine.form_clusters(candidate_set, params)
        result = self._result(cluster_id, season_id, year, params, candidate_set, outcome.ungroupable)

        if not outcome.proposals:
            result.success = False
            result.message = "No groups could be formed from the candidate plots"
            return result

        await self._name_proposals(outcome.proposals, cluster_id, season_id, year)
        self._validate_all(outcome.proposals, params, candidate_set.by_id)
        result.proposals = outcome.proposals

        failed = [p for p in outcome.proposals if not p.validation.ok]
        if failed:
            result.success = False
            result.message = f"{len(failed)} of {len(outcome.proposals)} proposals failed validation"
            logger.warning(f"Formation for cluster {cluster_id} aborted: {result.message}")
            return result

        supervisors = None
        if auto_assign_supervisors:
            supervisors = await self.plot_repository.list_supervisors(cluster_id)

        materialized = await self.materializer.materialize(
            cluster_id,
            season_id,
            year,
            outcome.proposals,
            create_immediately=create_immediately,
            expected_version=version,
            supervisors=supervisors,
            cancel_event=cancel_event,
        )
        result.groups = materialized.groups
        result.warnings.extend(materialized.warnings)
        result.warnings.extend(self._exception_warnings(outcome.proposals))
        result.summary = self._summary(candidate_set.total_candidates, outcome.proposals, result.ungroupable)
        result.message = (
            f"Formed {len(result.groups)} groups with {result.summary.plots_grouped} plots; "
            f"{len(result.ungroupable)} plots ungrouped"
        )
        logger.info(f"Cluster {cluster_id}, season {season_id}/{year}: {result.message}")
        return result

    async def preview_groups(
        self,
        cluster_id: str,
        season_id: str,
        year: int,
        parameters=None,
    ) -> FormationResult:
        """
        Run the clustering engine and return the proposals without persisting.

        Raises:
            InputError: If the parameters are invalid or there are no candidates
        """
        params = GroupingParameters.from_overrides(parameters)
        _, candidate_set = await self._load_candidate_set(cluster_id, season_id, year)

        outcome = self.engine.form_clusters(candidate_set, params)
        await self._name_proposals(outcome.proposals, cluster_id, season_id, year)
        self._validate_all(outcome.proposals, params, candidate_set.by_id)

        result = self._result(cluster_id, season_id, year, params, candidate_set, outcome.ungroupable)
        result.proposals = self.materializer.preview(outcome.proposals)
        result.summary = self._summary(candidate_set.total_candidates, result.proposals, result.ungroupable)
        result.success = bool(result.proposals)
        result.warnings.extend(self._exception_warnings(outcome.proposals))
        result.message = (
            f"Preview: {len(result.proposals)} proposed groups, {len(result.ungroupable)} plots ungrouped"
            if result.proposals
            else "No groups could be formed from the candidate plots"
        )
        return result

    async def form_groups_from_preview(
        self,
        cluster_id: str,
        season_id: str,
        year: int,
        edited_proposals: Sequence[ProposalEdit],
        create_immediately: bool = False,
        parameters=None,
    ) -> FormationResult:
        """
        Re-validate user-edited preview proposals and persist them.

        The batch is all or nothing: if any proposal has a hard violation,
        every proposal is returned with its violations and nothing is written.

        Raises:
            InputError: If no proposals were given or the parameters are invalid
            ConcurrencyConflictError: If another run assigned the same plots first
        """
        if not edited_proposals:
            raise InputError("At least one proposal is required")
        params = GroupingParameters.from_overrides(parameters)

        snapshot = await self.plot_repository.load_candidates(cluster_id, season_id, year)
        referenced = [pid for edit in edited_proposals for pid in edit.plot_ids]
        plots = {
            p.id: p for p in await self.plot_repository.get_plots(referenced, season_id, year)
        }

        proposals = [
            self._proposal_from_edit(number, cluster_id, edit, plots, params)
            for number, edit in enumerate(edited_proposals, start=1)
        ]
        window_warnings = self._window_warnings(edited_proposals, proposals)
        await self._name_proposals(proposals, cluster_id, season_id, year)

        supervisor_ids = await self._supervisor_ids(cluster_id, proposals)
        self._validate_all(proposals, params, plots, supervisor_ids)
        self._flag_shared_plots(proposals)

        result = FormationResult(
            success=False,
            cluster_id=cluster_id,
            season_id=season_id,
            year=year,
            parameters=params,
            proposals=proposals,
            warnings=window_warnings,
        )

        failed = [p for p in proposals if not p.validation.ok]
        if failed:
            result.message = (
                f"{len(failed)} of {len(proposals)} proposals failed validation; nothing was persisted"
            )
            logger.warning(f"Formation from preview for cluster {cluster_id} rejected: {result.message}")
            return result

        materialized = await self.materializer.materialize(
            cluster_id,
            season_id,
            year,
            proposals,
            create_immediately=create_immediately,
            expected_version=snapshot.version,
        )
        result.success = True
        result.groups = materialized.groups
        result.warnings.extend(materialized.warnings)
        result.warnings.extend(self._exception_warnings(proposals))
        result.summary = self._summary(len(set(referenced)), proposals, [])
        result.message = f"Formed {len(result.groups)} groups from preview"
        logger.info(f"Cluster {cluster_id}, season {season_id}/{year}: {result.message}")
        return result

    async def create_group_manually(
        self,
        cluster_id: str,
        rice_variety_id: str,
        season_id: str,
        year: int,
        planting_date: date,
        plot_ids: Sequence[str],
        is_exception: bool = False,
        exception_reason: Optional[str] = None,
        supervisor_id: Optional[str] = None,
        group_name: Optional[str] = None,
        parameters=None,
    ) -> FormationResult:
        """
        Validate and persist a single operator-assembled group as Draft.

        Raises:
            InputError: If an exception group has no reason, no plots were
                given or the parameters are invalid
            ConcurrencyConflictError: If a plot was assigned by another run first
        """
        if is_exception and not (exception_reason or "").strip():
            raise InputError("Exception reason is required for exception groups")
        if not plot_ids:
            raise InputError("At least one plot is required")
        params = GroupingParameters.from_overrides(parameters)

        snapshot = await self.plot_repository.load_candidates(cluster_id, season_id, year)
        plots = {
            p.id: p for p in await self.plot_repository.get_plots(plot_ids, season_id, year)
        }
        dates = [p.planting_date for p in plots.values()] or [planting_date]
        edit = ProposalEdit(
            group_name=group_name,
            rice_variety_id=rice_variety_id,
            planting_window_start=min(dates),
            planting_window_end=max(dates),
            median_planting_date=planting_date,
            plot_ids=list(plot_ids),
            supervisor_id=supervisor_id,
            is_exception=is_exception,
            exception_reason=exception_reason,
        )
        proposal = self._proposal_from_edit(
            1, cluster_id, edit, plots, params, median_planting_date=planting_date
        )
        await self._name_proposals([proposal], cluster_id, season_id, year)

        supervisor_ids = await self._supervisor_ids(cluster_id, [proposal])
        self._validate_all([proposal], params, plots, supervisor_ids)

        result = FormationResult(
            success=False,
            cluster_id=cluster_id,
            season_id=season_id,
            year=year,
            parameters=params,
            proposals=[proposal],
        )
        if not proposal.validation.ok:
            result.message = "; ".join(
                f"{v.message}: {v.detail}" if v.detail else v.message
                for v in proposal.validation.errors
            )
            logger.warning(f"Manual group for cluster {cluster_id} rejected: {result.message}")
            return result

        materialized = await self.materializer.materialize(
            cluster_id, season_id, year, [proposal], expected_version=snapshot.version
        )
        result.success = True
        result.groups = materialized.groups
        result.warnings.extend(self._exception_warnings([proposal]))
        result.summary = self._summary(len(proposal.plot_ids), [proposal], [])
        result.message = f"Created group {proposal.group_name} with {proposal.plot_count} plots"
        logger.info(result.message)
        return result

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    async def _load_candidate_set(
        self, cluster_id: str, season_id: str, year: int
    ) -> tuple[int, PlotCandidateSet]:
        snapshot = await self.plot_repository.load_candidates(cluster_id, season_id, year)
        candidate_set = PlotCandidateSet.from_plots(cluster_id, snapshot.plots)
        if candidate_set.total_candidates == 0:
            raise InputError(
                f"No candidate plots in cluster {cluster_id} for season {season_id}/{year}"
            )
        return snapshot.version, candidate_set

    @staticmethod
    def _proposal_from_edit(
        number: int,
        cluster_id: str,
        edit: ProposalEdit,
        plots: dict[str, PlotCandidate],
        parameters: GroupingParameters,
        median_planting_date: Optional[date] = None,
    ) -> GroupProposal:
        """
        Build a proposal from an edit.

        The planting window always comes from the member plots in the current
        snapshot; the median is the window midpoint unless one is given.
        """
        members = [plots[pid] for pid in dict.fromkeys(edit.plot_ids) if pid in plots]
        dates = sorted(p.planting_date for p in members)
        if dates:
            start, end = dates[0], dates[-1]
        else:
            start, end = edit.planting_window_start, edit.planting_window_end
        return GroupProposal(
            group_number=number,
            group_name=edit.group_name,
            cluster_id=cluster_id,
            rice_variety_id=edit.rice_variety_id,
            plot_ids=list(edit.plot_ids),
            planting_window_start=start,
            planting_window_end=end,
            median_planting_date=(
                median_planting_date or start + timedelta(days=(end - start).days // 2)
            ),
            total_area=sum((p.area for p in members), Decimal("0")),
            supervisor_id=edit.supervisor_id,
            is_exception=edit.is_exception,
            exception_reason=edit.exception_reason,
            boundary_wkt=union_boundary(
                [p.boundary for p in members], parameters.border_buffer_m
            ),
        )

    @staticmethod
    def _window_warnings(
        edits: Sequence[ProposalEdit], proposals: Sequence[GroupProposal]
    ) -> list[str]:
        warnings = []
        for edit, proposal in zip(edits, proposals):
            if (
                edit.planting_window_start != proposal.planting_window_start
                or edit.planting_window_end != proposal.planting_window_end
                or edit.median_planting_date != proposal.median_planting_date
            ):
                warnings.append(
                    f"Group '{edit.group_name or proposal.group_number}': planting window "
                    f"recomputed from member plots (was {edit.planting_window_start} to "
                    f"{edit.planting_window_end}, median {edit.median_planting_date})"
                )
        return warnings

    async def _name_proposals(
        self,
        proposals: Sequence[GroupProposal],
        cluster_id: str,
        season_id: str,
        year: int,
    ) -> None:
        unnamed = [p for p in proposals if not p.group_name]
        if not unnamed:
            return

        names = await self.plot_repository.get_reference_names(
            cluster_id, season_id, sorted({p.rice_variety_id for p in unnamed})
        )
        existing = await self.group_repository.count_groups(cluster_id, season_id, year)
        for proposal in unnamed:
            proposal.group_name = self.name_generator.generate(
                names.cluster_name,
                names.season_name,
                year,
                names.variety_names.get(proposal.rice_variety_id, proposal.rice_variety_id),
                existing + proposal.group_number,
            )

    async def _supervisor_ids(
        self, cluster_id: str, proposals: Sequence[GroupProposal]
    ) -> Optional[set[str]]:
        if all(p.supervisor_id is None for p in proposals):
            return None
        return {s.id for s in await self.plot_repository.list_supervisors(cluster_id)}

    def _validate_all(
        self,
        proposals: Sequence[GroupProposal],
        parameters: GroupingParameters,
        plots: dict[str, PlotCandidate],
        supervisor_ids: Optional[set[str]] = None,
    ) -> None:
        for proposal in proposals:
            proposal.validation = self.validator.validate(proposal, parameters, plots, supervisor_ids)

    @staticmethod
    def _flag_shared_plots(proposals: Sequence[GroupProposal]) -> None:
        """A plot may belong to one proposal of a batch only."""
        counts = Counter(pid for p in proposals for pid in set(p.plot_ids))
        shared = {pid for pid, n in counts.items() if n > 1}
        if not shared:
            return

        for proposal in proposals:
            overlap = sorted(shared.intersection(proposal.plot_ids))
            if not overlap:
                continue
            violations = list(proposal.validation.violations)
            violations.append(Violation(
                kind=ViolationKind.DUPLICATE_PLOT,
                severity=Severity.HARD,
                message="plot assigned to more than one group",
                detail=", ".join(overlap),
            ))
            proposal.validation = ValidationResult(ok=False, violations=violations)

    @staticmethod
    def _exception_warnings(proposals: Sequence[GroupProposal]) -> list[str]:
        return [
            f"Group '{p.group_name}' created as exception: {p.exception_reason}"
            for p in proposals
            if p.is_exception
        ]

    def _result(
        self,
        cluster_id: str,
        season_id: str,
        year: int,
        parameters: GroupingParameters,
        candidate_set: PlotCandidateSet,
        ungroupable: list[UngroupablePlot],
    ) -> FormationResult:
        return FormationResult(
            success=True,
            cluster_id=cluster_id,
            season_id=season_id,
            year=year,
            parameters=parameters,
            ungroupable=ungroupable,
            summary=self._summary(candidate_set.total_candidates, [], ungroupable),
        )

    @staticmethod
    def _summary(
        total: int,
        proposals: Sequence[GroupProposal],
        ungroupable: Sequence[UngroupablePlot],
    ) -> FormationSummary:
        return FormationSummary(
            total_eligible_plots=total,
            plots_grouped=sum(p.plot_count for p in proposals),
            ungrouped_plots=len(ungroupable),
            groups_formed=len(proposals),
            exception_groups=sum(1 for p in proposals if p.is_exception),
            total_area=sum((p.total_area for p in proposals), Decimal("0")),
        )
