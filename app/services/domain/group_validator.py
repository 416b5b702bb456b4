"""
Domain service: check a proposal against the hard grouping constraints.
"""
from collections import Counter
from datetime import timedelta
from decimal import Decimal
from typing import Collection, Mapping, Optional
import logging

from app.domain.models import (
    BOUND_VIOLATIONS,
    FarmerStatus,
    GroupingParameters,
    GroupProposal,
    PlotCandidate,
    PlotStatus,
    Severity,
    ValidationResult,
    Violation,
    ViolationKind,
)

logger = logging.getLogger(__name__)


def _ids(plots) -> str:
    return ", ".join(p if isinstance(p, str) else p.id for p in plots)


class GroupValidator:
    """
    Pure validation of a single proposal.

    All violations are collected, never just the first. On exception
    proposals, bound violations (plot count, area, planting-date spread)
    are downgraded to soft warnings; everything else stays hard.
    """

    def validate(
        self,
        proposal: GroupProposal,
        parameters: GroupingParameters,
        plots: Mapping[str, PlotCandidate],
        known_supervisor_ids: Optional[Collection[str]] = None,
    ) -> ValidationResult:
        """
        Validate a proposal.

        Args:
            proposal: The proposal to check
            parameters: Grouping constraints
            plots: Current snapshot of the plots the proposal may reference
            known_supervisor_ids: Supervisors that may be assigned; skipped when None

        Returns:
            ValidationResult with ok=False if any hard violation was found
        """
        violations: list[Violation] = []
        bound_severity = Severity.SOFT if proposal.is_exception else Severity.HARD

        def add(kind: ViolationKind, message: str, detail: str = "") -> None:
            severity = bound_severity if kind in BOUND_VIOLATIONS else Severity.HARD
            violations.append(Violation(kind=kind, severity=severity, message=message, detail=detail))

        # Membership
        duplicates = sorted(pid for pid, n in Counter(proposal.plot_ids).items() if n > 1)
        if duplicates:
            add(ViolationKind.DUPLICATE_PLOT, "duplicate plot in group", _ids(duplicates))

        unique_ids = list(dict.fromkeys(proposal.plot_ids))
        unknown = [pid for pid in unique_ids if pid not in plots]
        if unknown:
            add(ViolationKind.UNKNOWN_PLOT, "plot not found", _ids(unknown))

        members = [plots[pid] for pid in unique_ids if pid in plots]
        if not members:
            add(ViolationKind.NO_MEMBERS, "group has no plots")

        not_eligible = [
            p for p in members
            if p.status != PlotStatus.ACTIVE or p.group_id is not None
        ]
        if not_eligible:
            add(
                ViolationKind.PLOT_NOT_ELIGIBLE,
                "plot inactive or already assigned to a group this season",
                _ids(not_eligible),
            )

        # Rice variety homogeneity
        wrong_variety = [p for p in members if p.rice_variety_id != proposal.rice_variety_id]
        if wrong_variety:
            add(
                ViolationKind.VARIETY_MISMATCH,
                "rice variety mismatch",
                f"expected {proposal.rice_variety_id}: {_ids(wrong_variety)}",
            )

        # Cluster homogeneity
        wrong_cluster = [p for p in members if p.cluster_id != proposal.cluster_id]
        if wrong_cluster:
            add(
                ViolationKind.CLUSTER_MISMATCH,
                "plot belongs to another cluster",
                f"expected {proposal.cluster_id}: {_ids(wrong_cluster)}",
            )

        # Plot count bounds
        count = len(unique_ids)
        if count < parameters.min_plots_per_group:
            add(
                ViolationKind.PLOT_COUNT_BELOW_MINIMUM,
                "plot count below minimum",
                f"{count} < {parameters.min_plots_per_group}",
            )
        elif count > parameters.max_plots_per_group:
            add(
                ViolationKind.PLOT_COUNT_ABOVE_MAXIMUM,
                "plot count above maximum",
                f"{count} > {parameters.max_plots_per_group}",
            )

        # Area bounds
        total_area = sum((p.area for p in members), Decimal("0"))
        if total_area < parameters.min_group_area:
            add(
                ViolationKind.AREA_BELOW_MINIMUM,
                "area below minimum",
                f"{total_area:.2f} ha < {parameters.min_group_area} ha",
            )
        elif total_area > parameters.max_group_area:
            add(
                ViolationKind.AREA_ABOVE_MAXIMUM,
                "area above maximum",
                f"{total_area:.2f} ha > {parameters.max_group_area} ha",
            )

        # Planting date spread around the median
        if members:
            tolerance = timedelta(days=parameters.planting_date_tolerance_days)
            low = proposal.median_planting_date - tolerance
            high = proposal.median_planting_date + tolerance
            outside = [p for p in members if not low <= p.planting_date <= high]
            dates = [p.planting_date for p in members]
            span = (max(dates) - min(dates)).days
            if outside or span > parameters.max_planting_span_days:
                add(
                    ViolationKind.PLANTING_DATE_SPREAD,
                    "planting date spread exceeds tolerance",
                    f"span {span} days, window {low} to {high}"
                    + (f", outside: {_ids(outside)}" if outside else ""),
                )

        # Farmer eligibility (always hard)
        ineligible = [p for p in members if p.farmer_status == FarmerStatus.NOT_ALLOWED]
        if ineligible:
            add(
                ViolationKind.FARMER_INELIGIBLE,
                "farmer not allowed",
                ", ".join(f"{p.id} (farmer {p.farmer_id})" for p in ineligible),
            )

        if proposal.is_exception and not (proposal.exception_reason or "").strip():
            if any(v.severity == Severity.SOFT for v in violations):
                add(ViolationKind.EXCEPTION_REASON_MISSING, "exception reason required")

        if (
            known_supervisor_ids is not None
            and proposal.supervisor_id is not None
            and proposal.supervisor_id not in known_supervisor_ids
        ):
            add(ViolationKind.UNKNOWN_SUPERVISOR, "supervisor not found", proposal.supervisor_id)

        ok = not any(v.severity == Severity.HARD for v in violations)
        if not ok:
            logger.debug(
                f"Proposal {proposal.group_number} failed validation: "
                f"{[v.message for v in violations if v.severity == Severity.HARD]}"
            )
        return ValidationResult(ok=ok, violations=violations)
