"""Application configuration using Pydantic settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database (operational store)
    database_url: str = "postgresql+asyncpg://localhost:5432/tablesync"
    default_schema: str = "public"

    # Warehouse (analytical source)
    warehouse_base_url: str = "http://localhost:9050"
    warehouse_token: str | None = None
    warehouse_source_table: str = "search_query_performance_export"
    warehouse_max_retries: int = 3
    warehouse_timeout_seconds: float = 60.0

    # Worker dispatch
    dispatch_mode: Literal["local", "http"] = "local"
    worker_base_url: str = "http://localhost:8000"
    worker_invoke_token: str | None = None

    # Worker time budget
    worker_time_budget_seconds: float = 300.0
    worker_safety_margin_seconds: float = 30.0
    checkpoint_ttl_seconds: int = 3600
    max_chain_depth: int | None = 200  # None disables the ceiling

    # Orchestration
    sweep_interval_minutes: int = 15
    checkpoint_cleanup_interval_minutes: int = 60
    materialized_views: list[str] = ["search_performance_summary"]

    # Environment
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
