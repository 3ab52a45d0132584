"""
Configuration management for Ticket Forge.
"""

from typing import Dict, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Application
    app_name: str = Field(default="Ticket Forge")
    environment: str = Field(default="development")

    # Database
    database_url: str = Field(default="sqlite:///./ticket_forge.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")

    # Workflow Configuration
    max_question_rounds: int = Field(default=3, ge=1)
    max_context_files: int = Field(default=100, ge=1)
    default_answer_policy: Literal["omit", "neutral"] = Field(default="omit")
    step_timeout_seconds: float = Field(default=90.0, gt=0)

    # Bulk Enrichment
    bulk_worker_pool_size: int = Field(default=3, ge=1)
    bulk_session_retention_seconds: float = Field(
        default=3600.0, ge=0, description="How long finished bulk sessions stay pollable."
    )

    # Progress
    progress_grace_period_seconds: float = Field(default=30.0, gt=0)

    # Quality Gate
    quality_block_threshold: float = Field(default=50.0, ge=0, le=100)
    quality_high_confidence_threshold: float = Field(default=80.0, ge=0, le=100)
    quality_metrics_capacity: int = Field(default=1000, ge=1)
    quality_weights: Dict[str, float] = Field(
        default_factory=dict,
        description="JSON mapping of criterion to weight. Empty = built-in product weights.",
    )

    # Drafts
    draft_ttl_hours: int = Field(
        default=72, ge=0, description="Breakdown draft lifetime. 0 disables expiry."
    )


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
