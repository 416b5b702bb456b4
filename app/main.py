"""
FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.config import settings
from app.middleware.error_handler import ErrorHandlerMiddleware
from app.api.v1.routers import groups
from app.infrastructure.supervisor_client import close_supervisor_client

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Rate limiter, applied per client address to every route not marked exempt
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_requests}/minute"],
)


def _assignment_mode() -> str:
    return "external" if settings.supervisor_service_url else "least-loaded"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log the effective grouping defaults on startup; close the supervisor client on shutdown."""
    logger.info(f"{settings.app_name} v{settings.app_version} starting (log level {settings.log_level})")
    logger.info(
        f"Grouping defaults: threshold={settings.default_proximity_threshold_m}m, "
        f"tolerance={settings.default_planting_date_tolerance_days}d, "
        f"area={settings.default_min_group_area}-{settings.default_max_group_area}ha, "
        f"plots={settings.default_min_plots_per_group}-{settings.default_max_plots_per_group}"
    )
    logger.info(
        f"Clustering: merge_attempts={settings.clustering_merge_attempts}, "
        f"undersized_as_exception={settings.clustering_undersized_as_exception}"
    )
    if settings.supervisor_service_url:
        logger.info(f"Supervisor assignment via {settings.supervisor_service_url}")
    else:
        logger.info("Supervisor assignment via local least-loaded heuristic")
    logger.info(f"Rate limit: {settings.rate_limit_requests} requests/minute")

    yield

    await close_supervisor_client()
    logger.info(f"{settings.app_name} stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    Production Group Formation API for rice cultivation

    This API partitions a cluster's ungrouped, active plots for a season into
    production groups that are spatially coherent, planting-date compatible,
    single-variety and bounded in area and plot count.

    ## Modes

    - **Preview**: Propose groups without persisting anything
    - **Form**: Cluster and persist groups in one atomic write
    - **From preview**: Re-validate an edited preview and persist it
    - **Manual**: Validate and persist one operator-assembled group

    ## Formation Algorithm

    1. Projects plot centroids to UTM and builds a KD-Tree
    2. Seeds clusters in plot id order and grows each with the nearest
       compatible plot within the proximity threshold
    3. Merges undersized clusters with their nearest undersized neighbor
    4. Flags whatever is still undersized as an exception group
    5. Validates every proposal and reports ungroupable plots with a reason
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ErrorHandlerMiddleware)

app.include_router(groups.router, prefix="/api/v1")


@app.get("/", tags=["health"])
@limiter.exempt
async def root():
    """Service identity and liveness."""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
    }


@app.get("/health", tags=["health"])
@limiter.exempt
async def health_check():
    return {
        "status": "healthy",
        "service": settings.app_name,
        "supervisor_assignment": _assignment_mode(),
    }
