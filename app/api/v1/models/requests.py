"""
API request models using Pydantic.
"""
from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field

from app.domain.models import ProposalEdit


class GroupingParametersRequest(BaseModel):
    """Optional overrides of the grouping constraints; omitted values use the defaults."""
    proximity_threshold_m: Optional[float] = Field(
        default=None,
        description="Maximum distance in meters between a plot and its group centroid",
        examples=[2000.0]
    )
    planting_date_tolerance_days: Optional[int] = Field(
        default=None,
        description="Allowed deviation in days from the group's median planting date",
        examples=[2]
    )
    min_group_area: Optional[float] = Field(
        default=None,
        description="Minimum total group area in hectares",
        examples=[15.0]
    )
    max_group_area: Optional[float] = Field(
        default=None,
        description="Maximum total group area in hectares",
        examples=[50.0]
    )
    min_plots_per_group: Optional[int] = Field(default=None, examples=[5])
    max_plots_per_group: Optional[int] = Field(default=None, examples=[15])
    border_buffer_m: Optional[float] = Field(
        default=None,
        description="Meters the group outline is grown around its member plots",
        examples=[10.0]
    )


class PreviewGroupsRequest(BaseModel):
    """Request body for the preview endpoint."""
    season_id: str
    year: int
    parameters: Optional[GroupingParametersRequest] = None


class FormGroupsRequest(BaseModel):
    """Request body for automatic group formation."""
    season_id: str
    year: int
    parameters: Optional[GroupingParametersRequest] = None
    auto_assign_supervisors: bool = Field(
        default=False,
        description="Assign a supervisor to each new group"
    )
    create_groups_immediately: bool = Field(
        default=False,
        description="Create groups as Active instead of Draft"
    )


class FormGroupsFromPreviewRequest(BaseModel):
    """Request body for confirming an edited preview."""
    season_id: str
    year: int
    proposals: List[ProposalEdit] = Field(
        description="Preview proposals as edited by the user"
    )
    parameters: Optional[GroupingParametersRequest] = None
    create_groups_immediately: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "season_id": "winter",
                "year": 2024,
                "proposals": [
                    {
                        "group_name": "CLS-W24-JAS-G01",
                        "rice_variety_id": "jasmine",
                        "planting_window_start": "2024-11-01",
                        "planting_window_end": "2024-11-02",
                        "median_planting_date": "2024-11-01",
                        "plot_ids": ["P001", "P002", "P003", "P004", "P005"],
                    }
                ],
            }
        }


class CreateGroupManuallyRequest(BaseModel):
    """Request body for an operator-assembled group."""
    season_id: str
    year: int
    rice_variety_id: str
    planting_date: date
    plot_ids: List[str]
    is_exception: bool = False
    exception_reason: Optional[str] = Field(
        default=None,
        description="Required when is_exception is true"
    )
    supervisor_id: Optional[str] = None
    group_name: Optional[str] = None
    parameters: Optional[GroupingParametersRequest] = None
