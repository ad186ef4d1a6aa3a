"""
Shared configuration management for the Bhandara platform.
"""

from typing import Dict, List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CACHE_NAMESPACES: Dict[str, int] = {
    "events": 300,
    "users": 3600,
    "sessions": 30 * 24 * 3600,
    "pages": 30,
}

DEFAULT_AUTH_EXEMPT_PATHS: List[str] = [
    "/auth/*",
    "/auth/v1/token*",
    "/health",
]


class PlatformSettings(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PLATFORM_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"
    service_name: str = "events"
    host: str = "0.0.0.0"
    port: int = 3001

    # Backing stores
    redis_url: str = "redis://localhost:6379/0"
    postgres_dsn: str = "postgres://localhost:5432/bhandara"
    data_api_url: str = "http://localhost:54321/rest/v1"
    data_api_key: Optional[str] = None
    data_backend: Literal["rest", "postgres"] = "rest"

    # Outbound credential injection
    auth_exempt_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_AUTH_EXEMPT_PATHS))

    # Cache
    cache_namespaces: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CACHE_NAMESPACES))
    cache_operation_timeout_seconds: float = 2.0
    cache_strict_writes: bool = False

    # Pagination
    pagination_default_limit: int = 10
    pagination_max_limit: int = 100
    pagination_tiebreak_column: str = "id"

    # Sessions
    session_cookie_name: str = "bh_session"


def get_settings(**overrides) -> PlatformSettings:
    """Build settings from the environment, applying explicit overrides."""
    return PlatformSettings(**overrides)
