"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration for the discovery layer and its gateway."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    supabase_url: str = Field(
        default="http://localhost:54321",
        description="Base URL of the Supabase project (REST, Edge Functions and Auth live under it).",
    )
    supabase_anon_key: str = Field(default="anon-key", description="Public anon key sent as the apikey header")
    request_timeout_seconds: float = Field(
        default=20.0,
        description="Timeout applied to every backend request so loading states cannot hang forever.",
    )
    participant_counter: Literal["read_modify_write", "atomic"] = Field(
        default="read_modify_write",
        description="How join/leave adjust the participant count. 'atomic' requires the adjust_room_participants RPC.",
    )
    search_debounce_ms: int = Field(default=300, description="Debounce window for free-text school search")
    search_min_query_length: int = Field(default=1, description="Minimum query length before a search is issued")
    query_cache_maxsize: int = Field(default=1024, description="Maximum number of cached query entries")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="60/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    log_dir: str = Field(default="logs", description="Directory for per-service audit logs")

    study_map_service_port: int = 8005


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()
