"""
Shared configuration management for the Flashcards LLM Gateway.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="LLM_GATEWAY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"


class GatewaySettings(BaseConfig):
    """Settings for the chat-completion gateway client."""

    api_key: Optional[str] = None
    base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "gpt-3.5-turbo"

    # Per-attempt timeout and retry policy
    timeout_ms: int = Field(default=30000, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)

    # Named token-bucket profile (conservative, aggressive, development)
    rate_limit_preset: str = "conservative"

    # Optional attribution headers
    site_url: Optional[str] = None
    app_name: Optional[str] = "Flashcard Generator"

    # Show full user ids in request logs
    log_development: bool = False

    @property
    def is_development(self) -> bool:
        return self.env.lower() in ("local", "development", "dev")


@lru_cache()
def get_gateway_settings() -> GatewaySettings:
    """Get cached gateway settings loaded from the environment."""
    return GatewaySettings()
