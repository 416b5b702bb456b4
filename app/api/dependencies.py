"""
Dependency injection for FastAPI.
"""
from typing import Annotated
from fastapi import Depends

from app.config import settings
from app.domain.ports import EventSink, SupervisorAssigner
from app.infrastructure.event_sink import LoggingEventSink
from app.infrastructure.memory_store import InMemoryFarmStore, get_farm_store
from app.infrastructure.supervisor_client import get_supervisor_client
from app.services.application.group_formation_service import GroupFormationService
from app.services.domain.clustering_engine import ClusteringEngine
from app.services.domain.group_materializer import GroupMaterializer
from app.services.domain.supervisor_assignment import LeastLoadedSupervisorAssigner


def get_event_sink() -> EventSink:
    return LoggingEventSink()


def get_supervisor_assigner() -> SupervisorAssigner:
    """
    Dependency factory for supervisor assignment.

    Returns:
        The external service client when SUPERVISOR_SERVICE_URL is set,
        otherwise a fresh least-loaded assigner for this request
    """
    if settings.supervisor_service_url:
        return get_supervisor_client()
    return LeastLoadedSupervisorAssigner()


def get_clustering_engine() -> ClusteringEngine:
    return ClusteringEngine()


def get_group_materializer(
    store: Annotated[InMemoryFarmStore, Depends(get_farm_store)],
    event_sink: Annotated[EventSink, Depends(get_event_sink)],
    assigner: Annotated[SupervisorAssigner, Depends(get_supervisor_assigner)],
) -> GroupMaterializer:
    return GroupMaterializer(
        group_repository=store,
        event_sink=event_sink,
        supervisor_assigner=assigner,
    )


def get_group_formation_service(
    store: Annotated[InMemoryFarmStore, Depends(get_farm_store)],
    materializer: Annotated[GroupMaterializer, Depends(get_group_materializer)],
    engine: Annotated[ClusteringEngine, Depends(get_clustering_engine)],
) -> GroupFormationService:
    """
    Dependency factory for GroupFormationService.

    Args:
        store: Farm store serving both the read and write ports (injected)
        materializer: Group materializer (injected)
        engine: Clustering engine (injected)

    Returns:
        GroupFormationService instance
    """
    return GroupFormationService(
        plot_repository=store,
        group_repository=store,
        materializer=materializer,
        engine=engine,
    )


# Type aliases for cleaner route signatures
GroupFormationServiceDep = Annotated[GroupFormationService, Depends(get_group_formation_service)]
