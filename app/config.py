"""
Application configuration using Pydantic settings.
"""
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Grouping defaults (applied when a request omits a parameter)
    default_proximity_threshold_m: float = Field(
        default=2000.0,
        description="Maximum distance in meters between a plot and its group centroid"
    )
    default_planting_date_tolerance_days: int = Field(
        default=2,
        description="Allowed deviation in days from a group's median planting date"
    )
    default_min_group_area: float = Field(
        default=15.0,
        description="Minimum total group area in hectares"
    )
    default_max_group_area: float = Field(
        default=50.0,
        description="Maximum total group area in hectares"
    )
    default_min_plots_per_group: int = Field(
        default=5,
        description="Minimum number of plots in a group"
    )
    default_max_plots_per_group: int = Field(
        default=15,
        description="Maximum number of plots in a group"
    )
    default_border_buffer_m: float = Field(
        default=10.0,
        description="Meters a group outline is grown around its plots before smoothing (0 disables)"
    )

    # Clustering policy
    clustering_merge_attempts: int = Field(
        default=1,
        description="Merge attempts for an undersized cluster before it becomes an exception"
    )
    clustering_undersized_as_exception: bool = Field(
        default=True,
        description="Emit undersized clusters as exception proposals instead of ungrouped plots"
    )

    # External supervisor assignment service
    supervisor_service_url: Optional[str] = Field(
        default=None,
        description="Base URL of the supervisor assignment service (local heuristic when unset)"
    )
    supervisor_service_api_key: str = Field(
        default="",
        description="API key for the supervisor assignment service"
    )

    # Retry Configuration
    max_retry_attempts: int = Field(
        default=3,
        description="Maximum number of retry attempts for external calls"
    )
    retry_backoff_multiplier: int = Field(
        default=1,
        description="Multiplier for exponential backoff"
    )
    retry_min_wait: int = Field(
        default=1,
        description="Minimum wait time in seconds between retries"
    )
    retry_max_wait: int = Field(
        default=10,
        description="Maximum wait time in seconds between retries"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # CORS Configuration
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins (use specific origins in production)"
    )

    # Rate Limiting
    rate_limit_requests: int = Field(
        default=100,
        description="Maximum requests per minute per client"
    )

    # Application Settings
    app_name: str = Field(
        default="Rice Production Group Formation Service",
        description="Application name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    debug: bool = Field(
        default=False,
        description="Debug mode"
    )

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
