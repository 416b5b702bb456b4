"""
API router for group formation endpoints.
"""
from fastapi import APIRouter, Path, Response, status
from typing import Annotated

from app.api.dependencies import GroupFormationServiceDep
from app.api.v1.models.requests import (
    CreateGroupManuallyRequest,
    FormGroupsFromPreviewRequest,
    FormGroupsRequest,
    PreviewGroupsRequest,
)
from app.api.v1.models.responses import FormationResponse
from app.domain.models import FormationResult


router = APIRouter(
    prefix="/clusters",
    tags=["groups"],
)

ClusterId = Annotated[str, Path(description="Cluster whose plots are grouped")]

_FORMATION_RESPONSES = {
    400: {"description": "Invalid parameters or no candidate plots"},
    409: {"description": "Plots were assigned by a concurrent run; safe to retry"},
    422: {"description": "At least one proposal failed validation; nothing was persisted"},
}


def _respond(result: FormationResult, response: Response) -> FormationResponse:
    if any(p.validation is not None and not p.validation.ok for p in result.proposals):
        response.status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return FormationResponse.from_result(result)


@router.post(
    "/{cluster_id}/groups/preview",
    response_model=FormationResponse,
    summary="Preview group formation",
    description="""
    Run the clustering engine over the cluster's candidate plots and return
    the proposed groups without persisting anything. Each proposal carries
    its validation result; ungroupable plots are listed with a reason.
    """,
    responses={400: _FORMATION_RESPONSES[400]},
)
async def preview_groups(
    cluster_id: ClusterId,
    request: PreviewGroupsRequest,
    service: GroupFormationServiceDep,
) -> FormationResponse:
    result = await service.preview_groups(
        cluster_id, request.season_id, request.year, parameters=request.parameters
    )
    return FormationResponse.from_result(result)


@router.post(
    "/{cluster_id}/groups/form",
    response_model=FormationResponse,
    summary="Form groups automatically",
    description="""
    Cluster the candidate plots and persist every proposal as a group in
    one atomic write. Groups are created as Draft unless
    `create_groups_immediately` is set.
    """,
    responses=_FORMATION_RESPONSES,
)
async def form_groups(
    cluster_id: ClusterId,
    request: FormGroupsRequest,
    service: GroupFormationServiceDep,
    response: Response,
) -> FormationResponse:
    result = await service.form_groups(
        cluster_id,
        request.season_id,
        request.year,
        parameters=request.parameters,
        auto_assign_supervisors=request.auto_assign_supervisors,
        create_immediately=request.create_groups_immediately,
    )
    return _respond(result, response)


@router.post(
    "/{cluster_id}/groups/from-preview",
    response_model=FormationResponse,
    summary="Confirm an edited preview",
    description="""
    Re-validate user-edited proposals and persist them. If any proposal is
    invalid the whole batch is rejected with every violation listed.
    """,
    responses=_FORMATION_RESPONSES,
)
async def form_groups_from_preview(
    cluster_id: ClusterId,
    request: FormGroupsFromPreviewRequest,
    service: GroupFormationServiceDep,
    response: Response,
) -> FormationResponse:
    result = await service.form_groups_from_preview(
        cluster_id,
        request.season_id,
        request.year,
        request.proposals,
        create_immediately=request.create_groups_immediately,
        parameters=request.parameters,
    )
    return _respond(result, response)


@router.post(
    "/{cluster_id}/groups/manual",
    response_model=FormationResponse,
    summary="Create a group manually",
    responses=_FORMATION_RESPONSES,
)
async def create_group_manually(
    cluster_id: ClusterId,
    request: CreateGroupManuallyRequest,
    service: GroupFormationServiceDep,
    response: Response,
) -> FormationResponse:
    """Validate and persist one operator-assembled group as Draft."""
    result = await service.create_group_manually(
        cluster_id,
        request.rice_variety_id,
        request.season_id,
        request.year,
        request.planting_date,
        request.plot_ids,
        is_exception=request.is_exception,
        exception_reason=request.exception_reason,
        supervisor_id=request.supervisor_id,
        group_name=request.group_name,
        parameters=request.parameters,
    )
    return _respond(result, response)
