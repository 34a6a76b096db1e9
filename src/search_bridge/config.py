"""Centralized configuration for search-bridge using Pydantic Settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed engine configuration loaded from ``SEARCH_BRIDGE_*`` environment variables.

    Values are validated once at load time; engine objects read them when
    constructed and keep their own copy afterwards.
    """

    model_config = SettingsConfigDict(
        env_prefix="SEARCH_BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="info", description="Logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")

    # Ranking
    bm25_k1: float = Field(default=1.2, ge=0.0, description="BM25 term frequency saturation")
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0, description="BM25 document length normalisation")
    default_check_at_least: int = Field(
        default=0,
        ge=0,
        description="Minimum number of accepted matches confirmed before a match window is returned",
    )

    # Query parsing
    wildcard_max_expansion: int = Field(
        default=0,
        ge=0,
        description="Maximum number of terms a wildcard may expand to (0 means unlimited)",
    )
    wildcard_limit_behavior: Literal["error", "first", "most_frequent"] = Field(
        default="error", description="What to do when a wildcard exceeds wildcard_max_expansion"
    )
    stem_language: str = Field(default="english", description="Default stemmer language for the CLI")

    # Snippets
    snippet_length: int = Field(default=200, ge=20, description="Maximum snippet length in characters")

    # Storage
    sqlite_busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite busy timeout in milliseconds")

    # Observability
    tracing_enabled: bool = Field(default=True, description="Create OpenTelemetry spans for engine operations")
    metrics_enabled: bool = Field(default=True, description="Record Prometheus metrics for engine operations")

    @model_validator(mode="after")
    def _check_log_level(self) -> Settings:
        if self.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {self.log_level}")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
