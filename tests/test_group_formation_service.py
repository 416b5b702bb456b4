"""
Tests for the group formation application service.

Tests cover:
- Automatic formation and persistence
- Preview without persistence
- Confirmation of edited previews (all or nothing)
- Manual group creation
- Cancellation and concurrent runs
- Supervisor assignment and change events
"""
import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from app.domain.exceptions import (
    ConcurrencyConflictError,
    ExternalServiceError,
    FormationCancelledError,
    InputError,
)
from app.domain.models import (
    FarmerStatus,
    Group,
    GroupStatus,
    ProposalEdit,
    Supervisor,
    ViolationKind,
)
from app.services.application.group_formation_service import GroupFormationService
from app.services.domain.clustering_engine import ClusteringConfig, ClusteringEngine
from app.services.domain.group_materializer import GroupMaterializer


CLUSTER = "cluster-1"
SEASON = "winter"
YEAR = 2024


def to_edit(proposal, **overrides) -> ProposalEdit:
    values = dict(
        group_name=proposal.group_name,
        rice_variety_id=proposal.rice_variety_id,
        planting_window_start=proposal.planting_window_start,
        planting_window_end=proposal.planting_window_end,
        median_planting_date=proposal.median_planting_date,
        plot_ids=list(proposal.plot_ids),
        supervisor_id=proposal.supervisor_id,
        is_exception=proposal.is_exception,
        exception_reason=proposal.exception_reason,
    )
    values.update(overrides)
    return ProposalEdit(**values)


@pytest.fixture
def two_blocks(make_grid):
    """Two blocks of 12 plots, 9 km apart."""
    return make_grid("P", 12) + make_grid("Q", 12, origin=(9000.0, 0.0))


# ============================================================
# Automatic Formation Tests
# ============================================================

class TestFormGroups:
    """Tests for automatic formation."""

    @pytest.mark.asyncio
    async def test_forms_and_persists_draft_group(
        self, formation_service, farm_store, event_sink, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)

        result = await formation_service.form_groups(CLUSTER, SEASON, YEAR)

        assert result.success
        assert len(result.groups) == 1
        group = result.groups[0]
        assert group.status == GroupStatus.DRAFT
        assert group.group_name == "CT-W24-JAS-G01"
        assert group.total_area == Decimal("30.0")
        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == [group]

        plot = (await farm_store.get_plots(["P01"], SEASON, YEAR))[0]
        assert plot.group_id == group.id

        assert [e.group_id for e in event_sink.events] == [group.id]
        assert event_sink.events[0].change_type == "created"

        assert result.summary.total_eligible_plots == 12
        assert result.summary.plots_grouped == 12
        assert result.summary.groups_formed == 1
        assert result.summary.exception_groups == 0

    @pytest.mark.asyncio
    async def test_create_immediately_marks_groups_active(
        self, formation_service, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)

        result = await formation_service.form_groups(CLUSTER, SEASON, YEAR, create_immediately=True)

        assert result.groups[0].status == GroupStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_grouped_plots_are_not_candidates_again(
        self, formation_service, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)
        await formation_service.form_groups(CLUSTER, SEASON, YEAR)

        with pytest.raises(InputError, match="No candidate plots"):
            await formation_service.form_groups(CLUSTER, SEASON, YEAR)

    @pytest.mark.asyncio
    async def test_empty_cluster_is_input_error(self, formation_service):
        with pytest.raises(InputError):
            await formation_service.form_groups(CLUSTER, SEASON, YEAR)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parameters", [
        {"min_group_area": 60},
        {"min_plots_per_group": 20},
        {"proximity_threshold_m": 0},
        {"planting_date_tolerance_days": -1},
        {"border_buffer_m": -5},
    ])
    async def test_invalid_parameters_are_input_errors(
        self, formation_service, farm_store, seed_plots, scenario_a_plots, parameters
    ):
        seed_plots(scenario_a_plots)

        with pytest.raises(InputError, match="Invalid grouping parameters"):
            await formation_service.form_groups(CLUSTER, SEASON, YEAR, parameters=parameters)

        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == []

    @pytest.mark.asyncio
    async def test_parameter_overrides_are_applied(
        self, formation_service, seed_plots, scenario_a_plots
    ):
        """With a 50 m threshold every plot of a 100 m grid stands alone."""
        seed_plots(scenario_a_plots)

        result = await formation_service.form_groups(
            CLUSTER, SEASON, YEAR, parameters={"proximity_threshold_m": 50.0}
        )

        assert result.parameters.proximity_threshold_m == 50.0
        assert result.parameters.min_plots_per_group == 5
        assert len(result.groups) == 12
        assert result.summary.exception_groups == 12
        assert all(g.is_exception for g in result.groups)

    @pytest.mark.asyncio
    async def test_plots_without_geometry_are_reported(
        self, formation_service, seed_plots, scenario_a_plots, make_plot
    ):
        seed_plots(scenario_a_plots + [make_plot("Z01", centroid=None)])

        result = await formation_service.form_groups(CLUSTER, SEASON, YEAR)

        assert result.success
        assert [u.plot_id for u in result.ungroupable] == ["Z01"]
        assert result.summary.total_eligible_plots == 13
        assert result.summary.ungrouped_plots == 1

    @pytest.mark.asyncio
    async def test_only_ineligible_plots_forms_nothing(
        self, formation_service, farm_store, seed_plots, make_plot
    ):
        seed_plots([make_plot("P01", variety=None)])

        result = await formation_service.form_groups(CLUSTER, SEASON, YEAR)

        assert not result.success
        assert result.groups == []
        assert [u.plot_id for u in result.ungroupable] == ["P01"]
        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == []


# ============================================================
# Cancellation and Concurrency Tests
# ============================================================

class TestCancellationAndConflicts:

    @pytest.mark.asyncio
    async def test_cancelled_run_persists_nothing(
        self, formation_service, farm_store, event_sink, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(FormationCancelledError):
            await formation_service.form_groups(CLUSTER, SEASON, YEAR, cancel_event=cancel)

        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == []
        assert event_sink.events == []

    @pytest.mark.asyncio
    async def test_concurrent_run_conflicts(
        self, formation_service, farm_store, event_sink, seed_plots, scenario_a_plots, monkeypatch
    ):
        """A run whose plots were taken after its snapshot fails and writes nothing."""
        seed_plots(scenario_a_plots)
        rival = Group(
            id="rival",
            cluster_id=CLUSTER,
            season_id=SEASON,
            year=YEAR,
            rice_variety_id="jasmine",
            planting_date=date(2024, 11, 1),
            planting_window_start=date(2024, 11, 1),
            planting_window_end=date(2024, 11, 1),
            total_area=Decimal("2.5"),
            plot_ids=["P01"],
        )
        load_candidates = farm_store.load_candidates

        async def racing_load(*args):
            snapshot = await load_candidates(*args)
            await farm_store.persist_groups(CLUSTER, SEASON, YEAR, [rival])
            return snapshot

        monkeypatch.setattr(farm_store, "load_candidates", racing_load)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await formation_service.form_groups(CLUSTER, SEASON, YEAR)

        assert exc_info.value.retryable
        assert exc_info.value.conflicting_plot_ids == ["P01"]
        assert [g.id for g in farm_store.list_groups(CLUSTER, SEASON, YEAR)] == ["rival"]
        assert event_sink.events == []

    @pytest.mark.asyncio
    async def test_stale_snapshot_version_conflicts(self, farm_store, seed_plots, make_grid):
        seed_plots(make_grid("P", 2))
        snapshot = await farm_store.load_candidates(CLUSTER, SEASON, YEAR)
        group = Group(
            id="g-1",
            cluster_id=CLUSTER,
            season_id=SEASON,
            year=YEAR,
            rice_variety_id="jasmine",
            planting_date=date(2024, 11, 1),
            planting_window_start=date(2024, 11, 1),
            planting_window_end=date(2024, 11, 1),
            total_area=Decimal("2.5"),
            plot_ids=["P01"],
        )
        await farm_store.persist_groups(CLUSTER, SEASON, YEAR, [group], expected_version=snapshot.version)

        late = group.model_copy(update={"id": "g-2", "plot_ids": ["P02"]})
        with pytest.raises(ConcurrencyConflictError, match="changed since"):
            await farm_store.persist_groups(CLUSTER, SEASON, YEAR, [late], expected_version=snapshot.version)


# ============================================================
# Supervisor Assignment Tests
# ============================================================

class TestSupervisorAssignment:

    @pytest.mark.asyncio
    async def test_supervisors_spread_over_groups(
        self, formation_service, farm_store, seed_plots, two_blocks
    ):
        seed_plots(two_blocks)
        for sup_id in ("sup-1", "sup-2"):
            farm_store.add_supervisor(Supervisor(id=sup_id, cluster_id=CLUSTER, max_farmer_capacity=10))

        result = await formation_service.form_groups(
            CLUSTER, SEASON, YEAR, auto_assign_supervisors=True
        )

        assert [g.supervisor_id for g in result.groups] == ["sup-1", "sup-2"]
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_no_supervisor_available_still_commits(
        self, formation_service, farm_store, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)
        farm_store.add_supervisor(
            Supervisor(id="sup-1", cluster_id=CLUSTER, current_farmer_count=10, max_farmer_capacity=10)
        )

        result = await formation_service.form_groups(
            CLUSTER, SEASON, YEAR, auto_assign_supervisors=True
        )

        assert result.success
        assert result.groups[0].supervisor_id is None
        assert any("without supervisor" in w for w in result.warnings)
        assert len(farm_store.list_groups(CLUSTER, SEASON, YEAR)) == 1

    @pytest.mark.asyncio
    async def test_assignment_service_failure_still_commits(
        self, farm_store, event_sink, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)
        assigner = AsyncMock()
        assigner.assign.side_effect = ExternalServiceError("Supervisor service unavailable: 503")
        service = GroupFormationService(
            plot_repository=farm_store,
            group_repository=farm_store,
            materializer=GroupMaterializer(farm_store, event_sink, assigner),
            engine=ClusteringEngine(ClusteringConfig()),
        )

        result = await service.form_groups(CLUSTER, SEASON, YEAR, auto_assign_supervisors=True)

        assert result.success
        assert result.groups[0].supervisor_id is None
        assert len(result.warnings) == 1
        assigner.assign.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_assignment_unless_requested(
        self, formation_service, farm_store, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)
        farm_store.add_supervisor(Supervisor(id="sup-1", cluster_id=CLUSTER, max_farmer_capacity=10))

        result = await formation_service.form_groups(CLUSTER, SEASON, YEAR)

        assert result.groups[0].supervisor_id is None


# ============================================================
# Preview Tests
# ============================================================

class TestPreviewGroups:

    @pytest.mark.asyncio
    async def test_preview_persists_nothing(
        self, formation_service, farm_store, event_sink, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)

        result = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)

        assert result.success
        assert result.groups == []
        proposal = result.proposals[0]
        assert proposal.group_name == "CT-W24-JAS-G01"
        assert proposal.validation.ok
        assert result.summary.groups_formed == 1
        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == []
        assert event_sink.events == []

    @pytest.mark.asyncio
    async def test_preview_is_repeatable(self, formation_service, seed_plots, two_blocks):
        seed_plots(two_blocks)

        first = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)
        second = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)

        assert [p.model_dump() for p in first.proposals] == [p.model_dump() for p in second.proposals]


# ============================================================
# Form From Preview Tests
# ============================================================

class TestFormGroupsFromPreview:

    @pytest.mark.asyncio
    async def test_edited_preview_is_persisted(
        self, formation_service, farm_store, event_sink, seed_plots, two_blocks
    ):
        seed_plots(two_blocks)
        preview = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)
        edits = [
            to_edit(preview.proposals[0], group_name="North field"),
            to_edit(preview.proposals[1]),
        ]

        result = await formation_service.form_groups_from_preview(CLUSTER, SEASON, YEAR, edits)

        assert result.success
        assert [g.group_name for g in result.groups] == ["North field", "CT-W24-JAS-G02"]
        assert len(farm_store.list_groups(CLUSTER, SEASON, YEAR)) == 2
        assert len(event_sink.events) == 2

    @pytest.mark.asyncio
    async def test_moving_plots_past_maximum_fails_whole_batch(
        self, formation_service, farm_store, event_sink, seed_plots, two_blocks
    ):
        """An oversized edited proposal blocks the other, valid one too."""
        seed_plots(two_blocks)
        preview = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)
        first, second = preview.proposals
        moved = second.plot_ids[:4]
        edits = [
            to_edit(first, plot_ids=first.plot_ids + moved),
            to_edit(second, plot_ids=second.plot_ids[4:]),
        ]

        result = await formation_service.form_groups_from_preview(CLUSTER, SEASON, YEAR, edits)

        assert not result.success
        assert "nothing was persisted" in result.message
        assert result.proposals[0].validation.has(ViolationKind.PLOT_COUNT_ABOVE_MAXIMUM)
        assert result.proposals[1].validation.ok
        assert result.groups == []
        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == []
        assert event_sink.events == []

    @pytest.mark.asyncio
    async def test_plot_in_two_proposals_is_rejected(
        self, formation_service, farm_store, seed_plots, two_blocks
    ):
        seed_plots(two_blocks)
        preview = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)
        first, second = preview.proposals
        edits = [
            to_edit(first),
            to_edit(second, plot_ids=second.plot_ids[:11] + [first.plot_ids[0]]),
        ]

        result = await formation_service.form_groups_from_preview(CLUSTER, SEASON, YEAR, edits)

        assert not result.success
        for proposal in result.proposals:
            assert "plot assigned to more than one group" in [v.message for v in proposal.validation.errors]
        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == []

    @pytest.mark.asyncio
    async def test_plots_grouped_since_preview_are_rejected(
        self, formation_service, farm_store, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)
        preview = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)
        await formation_service.form_groups(CLUSTER, SEASON, YEAR)

        result = await formation_service.form_groups_from_preview(
            CLUSTER, SEASON, YEAR, [to_edit(preview.proposals[0])]
        )

        assert not result.success
        assert result.proposals[0].validation.has(ViolationKind.PLOT_NOT_ELIGIBLE)
        assert len(farm_store.list_groups(CLUSTER, SEASON, YEAR)) == 1

    @pytest.mark.asyncio
    async def test_exception_proposal_survives_round_trip(
        self, formation_service, seed_plots, make_grid
    ):
        seed_plots(make_grid("P", 3))
        preview = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)

        result = await formation_service.form_groups_from_preview(
            CLUSTER, SEASON, YEAR, [to_edit(preview.proposals[0])]
        )

        assert result.success
        assert result.groups[0].is_exception
        assert result.groups[0].exception_reason.startswith("Undersized")

    @pytest.mark.asyncio
    async def test_empty_exception_proposal_is_rejected(
        self, formation_service, farm_store, event_sink, seed_plots, scenario_a_plots
    ):
        """An exception reason does not make a group without plots acceptable."""
        seed_plots(scenario_a_plots)
        preview = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)
        edits = [
            to_edit(preview.proposals[0]),
            to_edit(
                preview.proposals[0],
                group_name="Reserved",
                plot_ids=[],
                is_exception=True,
                exception_reason="Kept for late planters",
            ),
        ]

        result = await formation_service.form_groups_from_preview(CLUSTER, SEASON, YEAR, edits)

        assert not result.success
        assert result.proposals[0].validation.ok
        assert [v.kind for v in result.proposals[1].validation.errors] == [ViolationKind.NO_MEMBERS]
        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == []
        assert event_sink.events == []

    @pytest.mark.asyncio
    async def test_planting_window_comes_from_member_plots(
        self, formation_service, seed_plots, scenario_a_plots
    ):
        """Stale or hand-typed window dates are replaced by the members' dates."""
        seed_plots(scenario_a_plots)
        preview = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)
        edit = to_edit(
            preview.proposals[0],
            planting_window_start=date(2025, 3, 9),
            planting_window_end=date(2024, 1, 1),
            median_planting_date=date(2025, 3, 9),
        )

        result = await formation_service.form_groups_from_preview(CLUSTER, SEASON, YEAR, [edit])

        assert result.success
        group = result.groups[0]
        assert group.planting_window_start == date(2024, 11, 1)
        assert group.planting_window_end == date(2024, 11, 2)
        assert group.planting_date == date(2024, 11, 1)
        assert any("planting window recomputed" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_unchanged_window_adds_no_warning(
        self, formation_service, seed_plots, scenario_a_plots
    ):
        seed_plots(scenario_a_plots)
        preview = await formation_service.preview_groups(CLUSTER, SEASON, YEAR)

        result = await formation_service.form_groups_from_preview(
            CLUSTER, SEASON, YEAR, [to_edit(preview.proposals[0])]
        )

        assert result.success
        assert not any("recomputed" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_removing_late_plots_narrows_window(
        self, formation_service, seed_plots, make_grid
    ):
        early = make_grid("P", 6, area="3")
        late = make_grid("Q", 2, area="3", origin=(0.0, 300.0), planting_date=date(2024, 11, 3))
        seed_plots(early + late)
        edit = ProposalEdit(
            rice_variety_id="jasmine",
            planting_window_start=date(2024, 11, 1),
            planting_window_end=date(2024, 11, 3),
            median_planting_date=date(2024, 11, 2),
            plot_ids=[p.id for p in early],
        )

        result = await formation_service.form_groups_from_preview(CLUSTER, SEASON, YEAR, [edit])

        assert result.success
        group = result.groups[0]
        assert (group.planting_window_start, group.planting_window_end) == (
            date(2024, 11, 1), date(2024, 11, 1)
        )
        assert group.planting_date == date(2024, 11, 1)

    @pytest.mark.asyncio
    async def test_no_proposals_is_input_error(self, formation_service):
        with pytest.raises(InputError):
            await formation_service.form_groups_from_preview(CLUSTER, SEASON, YEAR, [])


# ============================================================
# Manual Creation Tests
# ============================================================

class TestCreateGroupManually:

    @pytest.mark.asyncio
    async def test_exception_without_reason_rejected_before_validation(
        self, formation_service, farm_store, seed_plots, make_grid
    ):
        seed_plots(make_grid("P", 3))

        with pytest.raises(InputError, match="Exception reason is required"):
            await formation_service.create_group_manually(
                CLUSTER, "jasmine", SEASON, YEAR, date(2024, 11, 1),
                ["P01", "P02", "P03"], is_exception=True,
            )

        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == []

    @pytest.mark.asyncio
    async def test_exception_group_with_reason(
        self, formation_service, farm_store, event_sink, seed_plots, make_grid
    ):
        seed_plots(make_grid("P", 3))

        result = await formation_service.create_group_manually(
            CLUSTER, "jasmine", SEASON, YEAR, date(2024, 11, 1),
            ["P01", "P02", "P03"], is_exception=True, exception_reason="Isolated hamlet",
        )

        assert result.success
        group = result.groups[0]
        assert group.status == GroupStatus.DRAFT
        assert group.is_exception
        assert group.exception_reason == "Isolated hamlet"
        assert group.group_name == "CT-W24-JAS-G01"
        assert result.warnings == ["Group 'CT-W24-JAS-G01' created as exception: Isolated hamlet"]
        assert len(event_sink.events) == 1

    @pytest.mark.asyncio
    async def test_undersized_regular_group_rejected(
        self, formation_service, farm_store, seed_plots, make_grid
    ):
        seed_plots(make_grid("P", 3))

        result = await formation_service.create_group_manually(
            CLUSTER, "jasmine", SEASON, YEAR, date(2024, 11, 1), ["P01", "P02", "P03"]
        )

        assert not result.success
        assert "plot count below minimum" in result.message
        assert farm_store.list_groups(CLUSTER, SEASON, YEAR) == []

    @pytest.mark.asyncio
    async def test_ineligible_farmer_rejected_even_as_exception(
        self, formation_service, farm_store, seed_plots, make_grid
    ):
        seed_plots(make_grid("P", 3))
        farm_store.set_farmer_status("farmer-P02", FarmerStatus.NOT_ALLOWED)

        result = await formation_service.create_group_manually(
            CLUSTER, "jasmine", SEASON, YEAR, date(2024, 11, 1),
            ["P01", "P02", "P03"], is_exception=True, exception_reason="Pilot",
        )

        assert not result.success
        assert "farmer not allowed" in result.message

    @pytest.mark.asyncio
    async def test_unknown_supervisor_rejected(self, formation_service, seed_plots, make_grid):
        seed_plots(make_grid("P", 6, area="3"))

        result = await formation_service.create_group_manually(
            CLUSTER, "jasmine", SEASON, YEAR, date(2024, 11, 1),
            [f"P0{i}" for i in range(1, 7)], supervisor_id="sup-404",
        )

        assert not result.success
        assert result.proposals[0].validation.has(ViolationKind.UNKNOWN_SUPERVISOR)

    @pytest.mark.asyncio
    async def test_manual_group_named_after_existing_groups(
        self, formation_service, seed_plots, scenario_a_plots, make_grid
    ):
        seed_plots(scenario_a_plots)
        await formation_service.form_groups(CLUSTER, SEASON, YEAR)
        seed_plots(make_grid("Q", 6, area="3", origin=(9000.0, 0.0)))

        result = await formation_service.create_group_manually(
            CLUSTER, "jasmine", SEASON, YEAR, date(2024, 11, 1),
            [f"Q0{i}" for i in range(1, 7)],
        )

        assert result.success
        assert result.groups[0].group_name == "CT-W24-JAS-G02"

    @pytest.mark.asyncio
    async def test_no_plots_is_input_error(self, formation_service):
        with pytest.raises(InputError):
            await formation_service.create_group_manually(
                CLUSTER, "jasmine", SEASON, YEAR, date(2024, 11, 1), []
            )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
