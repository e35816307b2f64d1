"""Configuration management for the change governance service."""

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

    # Service identification
    service_name: str = Field(default="change-governance", description="Service name")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8010, description="Server port")
    workers: int = Field(default=1, description="Number of worker processes")

    # Mutation boundary (ad platform gateway)
    mutation_endpoint: str = Field(
        default="http://localhost:8020/api/v1",
        description="Base URL of the ad platform mutation gateway",
    )
    mutation_timeout_seconds: float = Field(
        default=30.0, description="HTTP timeout for a single mutation request"
    )
    execution_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Upper bound for one queued action's external call",
    )

    # Approval workflow
    approval_expiry_days: int = Field(
        default=7, ge=1, description="Days before a pending approval request expires"
    )
    approval_risk_threshold: Literal["low", "medium", "high"] | None = Field(
        default="high",
        description="Risk level at which safe-apply routes a change to approval",
    )

    # Audit log
    audit_log_path: str = Field(
        default="./audit_logs", description="Directory for JSONL audit files"
    )
    audit_file_logging: bool = Field(
        default=False, description="Persist audit entries to JSONL files"
    )

    # Guardrail defaults
    guardrails_enabled: bool = Field(default=True)
    high_performer_threshold: int = Field(default=70, ge=0, le=100)
    budget_change_threshold_percent: int = Field(default=20, ge=10, le=100)
    allow_pause_all_campaigns: bool = Field(default=False)
    allow_zero_budget: bool = Field(default=False)
    warn_on_high_performer_pause: bool = Field(default=True)

    # Experiment defaults
    experiment_traffic_split_percent: int = Field(default=30, ge=10, le=50)
    experiment_duration_days: int = Field(default=14)

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "text"] = Field(
        default="json", description="Log output format"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
