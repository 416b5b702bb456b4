"""
Shared pytest fixtures for all tests.

This module provides common fixtures including:
- Plot factories laid out in meters around a base point
- A seeded in-memory farm store
- The group formation service wired to in-memory adapters
- FastAPI test client
"""
import pytest
from datetime import date
from decimal import Decimal
from typing import Iterator, Optional
from fastapi.testclient import TestClient
from pyproj import Transformer

from app.main import app
from app.api.dependencies import get_supervisor_assigner
from app.domain.models import Coordinate, PlotCandidate
from app.infrastructure.event_sink import InMemoryEventSink
from app.infrastructure.memory_store import InMemoryFarmStore, get_farm_store
from app.services.application.group_formation_service import GroupFormationService
from app.services.domain.clustering_engine import ClusteringConfig, ClusteringEngine
from app.services.domain.group_materializer import GroupMaterializer
from app.services.domain.supervisor_assignment import LeastLoadedSupervisorAssigner


CLUSTER_ID = "cluster-1"
SEASON_ID = "winter"
YEAR = 2024
PLANTING_DATE = date(2024, 11, 1)

# Base point in the Mekong delta, UTM zone 48N
BASE_LAT, BASE_LON = 10.0, 105.5
_TO_UTM = Transformer.from_crs("EPSG:4326", "EPSG:32648", always_xy=True)
_TO_WGS84 = Transformer.from_crs("EPSG:32648", "EPSG:4326", always_xy=True)
_BASE_X, _BASE_Y = _TO_UTM.transform(BASE_LON, BASE_LAT)


def offset_to_latlon(east_m: float, north_m: float) -> tuple[float, float]:
    """(lat, lon) of a point ``east_m``/``north_m`` meters from the base point."""
    lon, lat = _TO_WGS84.transform(_BASE_X + east_m, _BASE_Y + north_m)
    return lat, lon


def square_boundary(east_m: float, north_m: float, side_m: float = 100.0) -> list[list[float]]:
    """Closed square polygon as [lon, lat] pairs centered on an offset."""
    half = side_m / 2
    corners = [(-half, -half), (half, -half), (half, half), (-half, half), (-half, -half)]
    boundary = []
    for dx, dy in corners:
        lat, lon = offset_to_latlon(east_m + dx, north_m + dy)
        boundary.append([lon, lat])
    return boundary


def build_plot(
    plot_id: str,
    east_m: float = 0.0,
    north_m: float = 0.0,
    area: str = "2.5",
    variety: Optional[str] = "jasmine",
    planting_date: date = PLANTING_DATE,
    farmer_id: Optional[str] = None,
    cluster_id: str = CLUSTER_ID,
    with_boundary: bool = False,
    **overrides,
) -> PlotCandidate:
    lat, lon = offset_to_latlon(east_m, north_m)
    values = dict(
        id=plot_id,
        farmer_id=farmer_id or f"farmer-{plot_id}",
        cluster_id=cluster_id,
        area=Decimal(area),
        centroid=Coordinate(lat=lat, lng=lon),
        rice_variety_id=variety,
        planting_date=planting_date,
    )
    if with_boundary:
        values["boundary"] = square_boundary(east_m, north_m)
    values.update(overrides)
    return PlotCandidate(**values)


def build_grid(
    prefix: str,
    count: int,
    columns: int = 4,
    spacing_m: float = 100.0,
    origin: tuple[float, float] = (0.0, 0.0),
    **kwargs,
) -> list[PlotCandidate]:
    """``count`` plots on a regular grid, ids ``{prefix}01``, ``{prefix}02``..."""
    return [
        build_plot(
            f"{prefix}{i + 1:02d}",
            east_m=origin[0] + (i % columns) * spacing_m,
            north_m=origin[1] + (i // columns) * spacing_m,
            **kwargs,
        )
        for i in range(count)
    ]


# ============================================================
# Plot Factory Fixtures
# ============================================================

@pytest.fixture
def make_plot():
    """Factory for a plot placed in meters relative to the base point."""
    return build_plot


@pytest.fixture
def make_grid():
    """Factory for a regular grid of plots."""
    return build_grid


@pytest.fixture
def scenario_a_plots() -> list[PlotCandidate]:
    """12 plots within 500m, same variety, dates within 1 day, 30 ha in total."""
    plots = build_grid("P", 12, columns=4, spacing_m=100.0)
    return [
        p.model_copy(update={"planting_date": date(2024, 11, 1 + i % 2)})
        for i, p in enumerate(plots)
    ]


# ============================================================
# Store and Service Fixtures
# ============================================================

@pytest.fixture
def farm_store() -> InMemoryFarmStore:
    """Empty store with display names for the test cluster, season and varieties."""
    store = InMemoryFarmStore()
    store.set_names(
        clusters={CLUSTER_ID: "Can Tho"},
        seasons={SEASON_ID: "Winter Spring"},
        varieties={"jasmine": "Jasmine", "st25": "ST25"},
    )
    return store


@pytest.fixture
def seed_plots(farm_store):
    """Adds plots to the farm store for a season."""
    def seed(plots, season_id: str = SEASON_ID, year: int = YEAR) -> None:
        for plot in plots:
            farm_store.add_plot(season_id, year, plot)
    return seed


@pytest.fixture
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def formation_service(farm_store, event_sink) -> GroupFormationService:
    """Service over the in-memory store with the default clustering policy."""
    materializer = GroupMaterializer(
        group_repository=farm_store,
        event_sink=event_sink,
        supervisor_assigner=LeastLoadedSupervisorAssigner(),
    )
    return GroupFormationService(
        plot_repository=farm_store,
        group_repository=farm_store,
        materializer=materializer,
        engine=ClusteringEngine(ClusteringConfig()),
    )


# ============================================================
# FastAPI Test Client Fixtures
# ============================================================

@pytest.fixture
def test_client(farm_store) -> Iterator[TestClient]:
    """Synchronous test client backed by the test's farm store."""
    app.dependency_overrides[get_farm_store] = lambda: farm_store
    app.dependency_overrides[get_supervisor_assigner] = LeastLoadedSupervisorAssigner
    app.state.limiter.reset()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
