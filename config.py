"""
Configuration settings for the explore-cache service.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Database
    # ========================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./explore_cache.db",
        description="Keyed store connection string (postgresql:// or sqlite+aiosqlite://)",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )

    # ========================================
    # Knowledge Cache
    # ========================================
    cache_max_questions_per_topic: int = Field(
        default=60,
        ge=1,
        description="Maximum questions kept in one shared pool (newest win the cap)",
    )
    cache_min_hit_count: int = Field(
        default=3,
        ge=1,
        description="Minimum cached questions for a lookup to count as a hit",
    )
    cache_alias_limit: int = Field(
        default=20,
        ge=1,
        description="Maximum raw topic aliases remembered per cache identity",
    )

    # ========================================
    # Generation Service
    # ========================================
    generation_api_url: str = Field(
        default="http://localhost:8090",
        description="Base URL of the external question generation service",
    )
    generation_api_key: str = Field(
        default="",
        description="Bearer token for the generation service (empty = no auth header)",
    )
    generation_timeout_ms: int = Field(
        default=45000,
        description="Per-request HTTP timeout for the generation service",
    )
    generation_retry_attempts: int = Field(
        default=2,
        ge=1,
        description="Attempts per generation request on timeouts and 5xx errors",
    )

    # ========================================
    # Backfill Worker
    # ========================================
    backfill_time_budget_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Total time budget for one backfill generation call",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
