"""
Configuration management using Pydantic Settings.
Environment values provide defaults; every coordinator instance may override them.
"""

from dataclasses import dataclass, fields, replace
from enum import Enum
from functools import lru_cache
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DataSourceMode(str, Enum):
    """Which collaborator variant backs a coordinator."""
    LIVE = "live"            # Supabase / PostgREST backend
    FALLBACK = "fallback"    # In-memory demo data


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CRM_",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Cache Configuration
    # ===================
    list_cache_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="TTL for list query results (5 minutes)"
    )
    aggregate_cache_ttl_seconds: float = Field(
        default=600.0,
        gt=0,
        description="TTL for aggregate dashboard metrics (10 minutes)"
    )
    staleness_max_age_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Age after which a view is reported as stale"
    )

    # ===================
    # Refresh Configuration
    # ===================
    refresh_interval_seconds: float = Field(
        default=300.0,
        description="Background refresh interval"
    )
    auto_refresh: bool = Field(default=True, description="Start background refresh on demand")

    # ===================
    # Fetch / Batch Configuration
    # ===================
    fetch_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout applied to every collaborator call"
    )
    batch_concurrency: int = Field(
        default=1,
        ge=1,
        le=64,
        description="1 runs batches sequentially, >1 bounds parallel execution"
    )
    default_page_size: int = Field(default=20, ge=1, le=500)
    max_selections: Optional[int] = Field(
        default=None,
        ge=1,
        description="Upper bound on multi-select size (unset = unbounded)"
    )

    # ===================
    # Data Source Configuration
    # ===================
    data_source: Optional[DataSourceMode] = Field(
        default=None,
        description="live or fallback; unset picks live when Supabase is configured"
    )
    supabase_url: Optional[str] = Field(default=None, description="Supabase project URL")
    supabase_anon_key: Optional[str] = Field(default=None, description="Supabase anon/service key")
    fallback_latency_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Simulated latency for the demo data source"
    )

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")
    log_json: Optional[bool] = Field(
        default=None,
        description="Force JSON logs (unset = JSON when not on a TTY)"
    )

    @field_validator("refresh_interval_seconds")
    @classmethod
    def validate_refresh_interval(cls, v: float) -> float:
        """Refresh interval must be strictly positive."""
        if v <= 0:
            raise ValueError("Refresh interval must be greater than zero")
        return v

    @field_validator("supabase_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v:
            return v.rstrip("/")
        return v

    @property
    def supabase_configured(self) -> bool:
        """Check if the live backend has the required configuration."""
        return bool(self.supabase_url and self.supabase_anon_key)

    @property
    def resolved_data_source(self) -> DataSourceMode:
        """Data source chosen once at construction time."""
        if self.data_source is not None:
            return self.data_source
        return DataSourceMode.LIVE if self.supabase_configured else DataSourceMode.FALLBACK


@dataclass(frozen=True)
class CoordinatorOptions:
    """Per-instance coordinator settings.

    Built from :class:`Settings` and overridable per coordinator so that no
    value is hardcoded process-wide.
    """
    list_cache_ttl_seconds: float = 300.0
    aggregate_cache_ttl_seconds: float = 600.0
    staleness_max_age_seconds: float = 300.0
    refresh_interval_seconds: float = 300.0
    auto_refresh: bool = True
    fetch_timeout_seconds: float = 30.0
    batch_concurrency: int = 1
    default_page_size: int = 20
    max_selections: Optional[int] = None

    def __post_init__(self) -> None:
        if self.refresh_interval_seconds <= 0:
            raise ValueError("refresh_interval_seconds must be > 0")
        if self.batch_concurrency < 1:
            raise ValueError("batch_concurrency must be >= 1")
        if self.default_page_size < 1:
            raise ValueError("default_page_size must be >= 1")

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "CoordinatorOptions":
        """Take defaults from settings, then apply explicit overrides."""
        names = {f.name for f in fields(cls)}
        unknown = set(overrides) - names
        if unknown:
            raise TypeError(f"Unknown coordinator options: {sorted(unknown)}")
        base = {name: getattr(settings, name) for name in names}
        base.update(overrides)
        return cls(**base)

    def with_overrides(self, **overrides: Any) -> "CoordinatorOptions":
        return replace(self, **overrides)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
