"""Application settings."""

from functools import lru_cache
from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Vendor credentials
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    google_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("google_api_key", "google_generative_ai_api_key"),
    )

    # Identity
    supabase_jwt_secret: Optional[str] = None
    jwt_audience: str = "authenticated"
    auth_cookie_name: str = "sb-access-token"

    # Storage
    database_url: Optional[str] = None
    database_pool_min: int = 1
    database_pool_max: int = 10

    # IP rate limiting
    redis_url: Optional[str] = None
    ip_rate_limit: int = 100
    ip_rate_window_seconds: int = 15 * 60
    rate_limit_sweep_seconds: int = 5 * 60

    # Generation
    default_temperature: float = 0.7
    default_max_tokens: int = 4096
    provider_timeout_seconds: float = 60.0
    provider_idle_timeout_seconds: float = 30.0
    openai_max_history_turns: Optional[int] = None
    anthropic_max_history_turns: Optional[int] = None
    gemini_max_history_turns: Optional[int] = None

    # Service
    log_level: str = "INFO"
    enable_metrics: bool = False
    max_request_bytes: int = 1024 * 1024
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
