"""Configuration management for the entity query engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreConfig(BaseModel):
    """In-memory store configuration."""

    id_start: int = Field(default=1, ge=1, description="First identifier assigned by a store")
    thread_safe: bool = Field(
        default=True, description="Guard inserts and scans with a lock"
    )


class QueryConfig(BaseModel):
    """Query engine configuration."""

    auto_flush: bool = Field(
        default=True, description="Flush managed entities before every query"
    )
    null_ordering: Literal["low", "high"] = Field(
        default="low",
        description="Where nulls sort without an explicit directive "
        "('low' = first ascending, last descending)",
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    log_format: Literal["json", "console"] = Field(default="json", description="Log format")
    otel_endpoint: str | None = Field(
        default=None, description="OpenTelemetry collector endpoint"
    )
    otel_service_name: str = Field(default="entity_query", description="Service name for tracing")
    metrics_port: int = Field(default=8001, ge=1, le=65535, description="Prometheus metrics port")


class Config(BaseSettings):
    """Main configuration for the entity query engine."""

    model_config = SettingsConfigDict(
        env_prefix="ENTITY_QUERY_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    store: StoreConfig = Field(default_factory=StoreConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


@lru_cache
def get_config() -> Config:
    """Get the global configuration instance."""
    return Config()
