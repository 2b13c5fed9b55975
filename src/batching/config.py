"""Application configuration and settings management."""

from typing import Any, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="BATCHING_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Multi-Order Batching API"
    api_prefix: str = "/api"
    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    # Supabase configuration
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )

    # Store access
    store_timeout_seconds: float = Field(default=10.0, gt=0.0)
    store_max_retries: int = Field(default=1, ge=0)
    store_backoff_seconds: float = Field(default=0.5, ge=0.0)
    conflict_max_retries: int = Field(default=2, ge=0)

    # Batch shape
    default_max_orders: int = Field(default=3, ge=1)
    default_max_deviation_km: float = Field(default=5.0, gt=0.0)
    max_distance_between_orders_km: float = Field(
        default=10.0,
        gt=0.0,
        description="Absolute cap on the spread of any two orders in one batch.",
    )

    # Compatibility scoring
    preparation_window_minutes: float = Field(default=30.0, gt=0.0)
    preparation_span_penalty: float = Field(default=0.3, ge=0.0, le=1.0)
    multi_vendor_score: float = Field(default=0.8, ge=0.0, le=1.0)
    compatibility_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    # Route metrics
    average_speed_kmh: float = Field(default=40.0, gt=0.0)
    route_score_base: float = Field(default=100.0, ge=0.0)
    route_score_distance_penalty: float = Field(default=2.0, ge=0.0)

    # Driver assignment
    driver_search_radius_km: float = Field(default=15.0, gt=0.0)
    weight_distance: float = Field(default=0.4, ge=0.0)
    weight_workload: float = Field(default=0.3, ge=0.0)
    weight_performance: float = Field(default=0.2, ge=0.0)
    weight_batch_fit: float = Field(default=0.1, ge=0.0)
    max_driver_workload: int = Field(default=5, ge=1)
    default_performance_score: float = Field(default=0.7, ge=0.0, le=1.0)
    reject_zero_score_candidates: bool = Field(
        default=False,
        description="Fail assignment instead of returning the arg-max when every candidate scores 0.",
    )
    candidate_selection_retries: int = Field(default=2, ge=0)

    # Workload balancing
    overload_factor: float = Field(default=1.5, gt=0.0)
    underload_factor: float = Field(default=0.5, ge=0.0)

    # Grouping sweep
    max_parallel_groups: int = Field(default=4, ge=1)

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            # Try JSON first
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            # Try comma-separated
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            # Single value
            if value.strip():
                return (value.strip(),)
        # Return empty tuple if value is None or empty
        return tuple()


settings = Settings()
