"""
Domain models for plots, grouping parameters, proposals and groups.

These models represent the core domain entities and should be independent
of any infrastructure concerns (stores, HTTP clients, etc.).
"""
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from app.config import settings
from app.domain.exceptions import InputError


class PlotStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    EMERGENCY = "Emergency"
    LOCKED = "Locked"


class FarmerStatus(str, Enum):
    NORMAL = "Normal"
    WARNED = "Warned"
    NOT_ALLOWED = "NotAllowed"
    RESIGNED = "Resigned"


class GroupStatus(str, Enum):
    DRAFT = "Draft"
    ACTIVE = "Active"
    READY_FOR_OPTIMIZATION = "ReadyForOptimization"
    LOCKED = "Locked"
    EXCEPTION = "Exception"
    COMPLETED = "Completed"


class UngroupReason(str, Enum):
    NO_GEOMETRY = "no-geometry"
    VARIETY_MISMATCH = "variety-mismatch"
    FARMER_INELIGIBLE = "farmer-ineligible"
    ISOLATED_UNDERSIZED = "isolated-undersized"


class Severity(str, Enum):
    HARD = "Hard"
    SOFT = "Soft"


class ViolationKind(str, Enum):
    UNKNOWN_PLOT = "unknown_plot"
    NO_MEMBERS = "no_members"
    PLOT_NOT_ELIGIBLE = "plot_not_eligible"
    DUPLICATE_PLOT = "duplicate_plot"
    VARIETY_MISMATCH = "variety_mismatch"
    CLUSTER_MISMATCH = "cluster_mismatch"
    PLOT_COUNT_BELOW_MINIMUM = "plot_count_below_minimum"
    PLOT_COUNT_ABOVE_MAXIMUM = "plot_count_above_maximum"
    AREA_BELOW_MINIMUM = "area_below_minimum"
    AREA_ABOVE_MAXIMUM = "area_above_maximum"
    PLANTING_DATE_SPREAD = "planting_date_spread"
    FARMER_INELIGIBLE = "farmer_ineligible"
    EXCEPTION_REASON_MISSING = "exception_reason_missing"
    UNKNOWN_SUPERVISOR = "unknown_supervisor"


# Violations that an exception flag downgrades to warnings
BOUND_VIOLATIONS = frozenset({
    ViolationKind.PLOT_COUNT_BELOW_MINIMUM,
    ViolationKind.PLOT_COUNT_ABOVE_MAXIMUM,
    ViolationKind.AREA_BELOW_MINIMUM,
    ViolationKind.AREA_ABOVE_MAXIMUM,
    ViolationKind.PLANTING_DATE_SPREAD,
})


class Coordinate(BaseModel):
    """A WGS84 coordinate."""
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class PlotCandidate(BaseModel):
    """Snapshot of a plot as seen by one formation run."""
    id: str
    farmer_id: str
    cluster_id: str
    area: Decimal = Field(gt=0, description="Plot area in hectares")
    centroid: Optional[Coordinate] = None
    boundary: Optional[List[List[float]]] = Field(
        default=None,
        description="Polygon as a list of [lon, lat] pairs"
    )
    soil_type: Optional[str] = None
    status: PlotStatus = PlotStatus.ACTIVE
    rice_variety_id: Optional[str] = Field(
        default=None,
        description="Rice variety the farmer selected for the season"
    )
    planting_date: date
    farmer_status: FarmerStatus = FarmerStatus.NORMAL
    group_id: Optional[str] = Field(
        default=None,
        description="Group the plot already belongs to for this season"
    )

    class Config:
        frozen = True


def _default_area(value: float) -> Decimal:
    return Decimal(str(value))


class GroupingParameters(BaseModel):
    """Grouping constraints for one formation run."""
    proximity_threshold_m: float = Field(
        default_factory=lambda: settings.default_proximity_threshold_m, gt=0
    )
    planting_date_tolerance_days: int = Field(
        default_factory=lambda: settings.default_planting_date_tolerance_days, gt=0
    )
    min_group_area: Decimal = Field(
        default_factory=lambda: _default_area(settings.default_min_group_area), gt=0
    )
    max_group_area: Decimal = Field(
        default_factory=lambda: _default_area(settings.default_max_group_area), gt=0
    )
    min_plots_per_group: int = Field(
        default_factory=lambda: settings.default_min_plots_per_group, gt=0
    )
    max_plots_per_group: int = Field(
        default_factory=lambda: settings.default_max_plots_per_group, gt=0
    )
    border_buffer_m: float = Field(
        default_factory=lambda: settings.default_border_buffer_m, ge=0,
        description="Meters the group outline is grown around its member plots"
    )

    @model_validator(mode="after")
    def check_bounds(self) -> "GroupingParameters":
        if self.min_group_area > self.max_group_area:
            raise ValueError(
                f"min_group_area ({self.min_group_area}) exceeds max_group_area ({self.max_group_area})"
            )
        if self.min_plots_per_group > self.max_plots_per_group:
            raise ValueError(
                f"min_plots_per_group ({self.min_plots_per_group}) exceeds "
                f"max_plots_per_group ({self.max_plots_per_group})"
            )
        return self

    @property
    def max_planting_span_days(self) -> int:
        return 2 * self.planting_date_tolerance_days

    @classmethod
    def from_overrides(
        cls,
        overrides: Union["GroupingParameters", BaseModel, dict, None] = None,
    ) -> "GroupingParameters":
        """
        Build parameters from optional overrides, applying defaults for absent values.

        Raises:
            InputError: If a value is not positive or a min exceeds its max
        """
        if overrides is None:
            return cls()
        if isinstance(overrides, GroupingParameters):
            return overrides
        if isinstance(overrides, BaseModel):
            overrides = overrides.model_dump()

        values = {key: value for key, value in overrides.items() if value is not None}
        try:
            return cls(**values)
        except ValidationError as e:
            details = "; ".join(error["msg"] for error in e.errors())
            raise InputError(f"Invalid grouping parameters: {details}") from e


class Violation(BaseModel):
    """A single constraint violation found by the validator."""
    kind: ViolationKind
    severity: Severity
    message: str
    detail: str = ""


class ValidationResult(BaseModel):
    """Outcome of validating one proposal. ``ok`` is false only for hard violations."""
    ok: bool
    violations: List[Violation] = Field(default_factory=list)

    @property
    def errors(self) -> List[Violation]:
        return [v for v in self.violations if v.severity == Severity.HARD]

    @property
    def warnings(self) -> List[Violation]:
        return [v for v in self.violations if v.severity == Severity.SOFT]

    def has(self, kind: ViolationKind) -> bool:
        return any(v.kind == kind for v in self.violations)


class GroupProposal(BaseModel):
    """A candidate group that has not been persisted yet."""
    group_number: int = 0
    group_name: Optional[str] = None
    cluster_id: str
    rice_variety_id: str
    plot_ids: List[str]
    planting_window_start: date
    planting_window_end: date
    median_planting_date: date
    total_area: Decimal = Decimal("0")
    supervisor_id: Optional[str] = None
    is_exception: bool = False
    exception_reason: Optional[str] = None
    centroid: Optional[Coordinate] = None
    boundary_wkt: Optional[str] = None
    validation: Optional[ValidationResult] = None

    @property
    def plot_count(self) -> int:
        return len(self.plot_ids)


class ProposalEdit(BaseModel):
    """A preview proposal as edited by the user before confirming."""
    group_name: Optional[str] = None
    rice_variety_id: str
    planting_window_start: date
    planting_window_end: date
    median_planting_date: date
    plot_ids: List[str]
    supervisor_id: Optional[str] = None
    is_exception: bool = False
    exception_reason: Optional[str] = None


class Group(BaseModel):
    """A persisted cultivation group."""
    id: str
    cluster_id: str
    season_id: str
    year: int
    group_name: Optional[str] = None
    status: GroupStatus = GroupStatus.DRAFT
    rice_variety_id: str
    planting_date: date
    planting_window_start: date
    planting_window_end: date
    total_area: Decimal
    supervisor_id: Optional[str] = None
    is_exception: bool = False
    exception_reason: Optional[str] = None
    plot_ids: List[str]
    boundary_wkt: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Supervisor(BaseModel):
    """A supervisor that may be assigned to groups."""
    id: str
    full_name: str = ""
    cluster_id: Optional[str] = None
    is_active: bool = True
    current_farmer_count: int = 0
    max_farmer_capacity: int = 0

    @property
    def has_capacity(self) -> bool:
        return self.current_farmer_count < self.max_farmer_capacity


class UngroupablePlot(BaseModel):
    """A candidate plot left out of every proposal, with the reason."""
    plot_id: str
    farmer_id: str
    reason: UngroupReason
    reason_description: str = ""
    distance_to_nearest_group: Optional[float] = None
    nearest_group_number: Optional[int] = None
    suggestions: List[str] = Field(default_factory=list)


class GroupChangeEvent(BaseModel):
    """Outbound notification emitted after a group is materialized."""
    group_id: str
    change_type: str = "created"
    cluster_id: str
    season_id: str
    year: int
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FormationSummary(BaseModel):
    total_eligible_plots: int = 0
    plots_grouped: int = 0
    ungrouped_plots: int = 0
    groups_formed: int = 0
    exception_groups: int = 0
    total_area: Decimal = Decimal("0")


class FormationResult(BaseModel):
    """Structured result of any formation mode."""
    success: bool
    message: str = ""
    cluster_id: str
    season_id: str
    year: int
    parameters: Optional[GroupingParameters] = None
    proposals: List[GroupProposal] = Field(default_factory=list)
    groups: List[Group] = Field(default_factory=list)
    ungroupable: List[UngroupablePlot] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    summary: FormationSummary = Field(default_factory=FormationSummary)
