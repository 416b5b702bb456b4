"""
API response models using Pydantic.
"""
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from app.domain.models import (
    FormationResult,
    Group,
    GroupProposal,
    UngroupablePlot,
)


class ViolationResponse(BaseModel):
    """Single constraint violation of a proposal."""
    kind: str
    severity: str = Field(description="Hard blocks the proposal, Soft only flags it")
    message: str
    detail: str = ""


class ProposalResponse(BaseModel):
    """An unpersisted group proposal with its validation result."""
    group_number: int
    group_name: Optional[str] = None
    rice_variety_id: str
    plot_ids: List[str]
    plot_count: int
    planting_window_start: date
    planting_window_end: date
    median_planting_date: date
    total_area: float = Field(description="Total area in hectares")
    supervisor_id: Optional[str] = None
    is_exception: bool
    exception_reason: Optional[str] = None
    centroid_latitude: Optional[float] = None
    centroid_longitude: Optional[float] = None
    boundary_wkt: Optional[str] = None
    is_valid: bool
    violations: List[ViolationResponse] = Field(default_factory=list)

    @classmethod
    def from_proposal(cls, proposal: GroupProposal) -> "ProposalResponse":
        validation = proposal.validation
        return cls(
            group_number=proposal.group_number,
            group_name=proposal.group_name,
            rice_variety_id=proposal.rice_variety_id,
            plot_ids=proposal.plot_ids,
            plot_count=proposal.plot_count,
            planting_window_start=proposal.planting_window_start,
            planting_window_end=proposal.planting_window_end,
            median_planting_date=proposal.median_planting_date,
            total_area=float(proposal.total_area),
            supervisor_id=proposal.supervisor_id,
            is_exception=proposal.is_exception,
            exception_reason=proposal.exception_reason,
            centroid_latitude=proposal.centroid.lat if proposal.centroid else None,
            centroid_longitude=proposal.centroid.lng if proposal.centroid else None,
            boundary_wkt=proposal.boundary_wkt,
            is_valid=validation.ok if validation else False,
            violations=[
                ViolationResponse(
                    kind=v.kind.value,
                    severity=v.severity.value,
                    message=v.message,
                    detail=v.detail,
                )
                for v in (validation.violations if validation else [])
            ],
        )


class GroupResponse(BaseModel):
    """A persisted group."""
    id: str
    group_name: Optional[str] = None
    status: str
    rice_variety_id: str
    planting_date: date
    planting_window_start: date
    planting_window_end: date
    total_area: float
    supervisor_id: Optional[str] = None
    is_exception: bool
    exception_reason: Optional[str] = None
    plot_ids: List[str]
    created_at: datetime

    @classmethod
    def from_group(cls, group: Group) -> "GroupResponse":
        return cls(
            id=group.id,
            group_name=group.group_name,
            status=group.status.value,
            rice_variety_id=group.rice_variety_id,
            planting_date=group.planting_date,
            planting_window_start=group.planting_window_start,
            planting_window_end=group.planting_window_end,
            total_area=float(group.total_area),
            supervisor_id=group.supervisor_id,
            is_exception=group.is_exception,
            exception_reason=group.exception_reason,
            plot_ids=group.plot_ids,
            created_at=group.created_at,
        )


class SummaryResponse(BaseModel):
    total_eligible_plots: int
    plots_grouped: int
    ungrouped_plots: int
    groups_formed: int
    exception_groups: int
    total_area: float


class FormationResponse(BaseModel):
    """Response model for every group formation endpoint."""
    success: bool
    message: str
    cluster_id: str
    season_id: str
    year: int
    proposals: List[ProposalResponse] = Field(default_factory=list)
    groups: List[GroupResponse] = Field(default_factory=list)
    ungroupable_plots: List[UngroupablePlot] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    summary: SummaryResponse

    @classmethod
    def from_result(cls, result: FormationResult) -> "FormationResponse":
        summary = result.summary
        return cls(
            success=result.success,
            message=result.message,
            cluster_id=result.cluster_id,
            season_id=result.season_id,
            year=result.year,
            proposals=[ProposalResponse.from_proposal(p) for p in result.proposals],
            groups=[GroupResponse.from_group(g) for g in result.groups],
            ungroupable_plots=result.ungroupable,
            warnings=result.warnings,
            summary=SummaryResponse(
                total_eligible_plots=summary.total_eligible_plots,
                plots_grouped=summary.plots_grouped,
                ungrouped_plots=summary.ungrouped_plots,
                groups_formed=summary.groups_formed,
                exception_groups=summary.exception_groups,
                total_area=float(summary.total_area),
            ),
        )

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "message": "Formed 1 groups with 12 plots; 0 plots ungrouped",
                "cluster_id": "cluster-1",
                "season_id": "winter",
                "year": 2024,
                "proposals": [],
                "groups": [],
                "ungroupable_plots": [],
                "warnings": [],
                "summary": {
                    "total_eligible_plots": 12,
                    "plots_grouped": 12,
                    "ungrouped_plots": 0,
                    "groups_formed": 1,
                    "exception_groups": 0,
                    "total_area": 30.0,
                },
            }
        }
