"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EFFORT_WEIGHTS: dict[str, int] = {"small": 1, "medium": 3, "large": 8}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GOALFLOW_",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    log_dir: str | None = Field(
        default=None,
        description="Directory for rotating log files (stderr only if unset)",
    )

    # Planning
    effort_weights: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_EFFORT_WEIGHTS),
        description="Effort level -> critical path node weight",
    )

    # Execution
    max_concurrent_dispatch: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum number of sub-tasks dispatched at once",
    )
    result_queue_size: int = Field(
        default=100,
        ge=1,
        description="Capacity of the per-goal worker result queue",
    )
    max_retries: int = Field(
        default=1,
        ge=0,
        description="Retries the replanner may propose for one sub-task",
    )
    checkpoint_dir: str | None = Field(
        default=None,
        description="Directory for JSON plan checkpoints",
    )

    @field_validator("effort_weights")
    @classmethod
    def validate_effort_weights(cls, v: dict[str, int]) -> dict[str, int]:
        """Require a positive weight for every effort level."""
        missing = set(DEFAULT_EFFORT_WEIGHTS) - set(v)
        if missing:
            raise ValueError(f"Missing effort weights: {sorted(missing)}")
        if any(weight <= 0 for weight in v.values()):
            raise ValueError("Effort weights must be positive")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.max_concurrent_dispatch
        5
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
