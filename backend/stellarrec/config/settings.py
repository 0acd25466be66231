"""
Application Settings for StellarRec Submission Monitoring

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Literal, Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Queue, retry and alerting knobs default to the values the delivery
    engine was tuned with; every one of them can be overridden per deployment.
    """

    # Application Settings
    environment: Literal["development", "production", "testing"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Operator API authentication
    admin_api_key: Optional[str] = None

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    # Monitoring lifecycle
    monitoring_enabled: bool = True

    # Delivery Queue
    queue_interval_seconds: float = 30.0
    queue_batch_size: int = 100
    dispatch_concurrency: int = 10
    dispatch_timeout_seconds: float = 30.0
    stale_in_flight_minutes: int = 15
    shutdown_grace_seconds: float = 5.0
    default_priority: int = 5
    operator_retry_priority: int = 2

    # Retry Configuration
    default_max_retries: int = 5
    retry_base_delay_seconds: float = 60.0
    retry_max_delay_seconds: float = 6 * 60 * 60
    retry_jitter_ratio: float = 0.1

    # Notification rules
    rule_evaluation_interval_seconds: float = 300.0
    alert_email_subject_prefix: str = "[StellarRec Alert]"
    webhook_timeout_seconds: float = 10.0

    # Health thresholds
    health_window_minutes: int = 24 * 60
    backlog_warning_threshold: int = 50
    backlog_critical_threshold: int = 100
    success_rate_warning: float = 90.0
    success_rate_critical: float = 80.0
    latency_warning_seconds: float = 300.0

    # Maintenance
    maintenance_interval_seconds: float = 60.0
    error_log_retention_days: int = 90

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        """Reject threshold combinations that would make health tiers overlap."""
        if self.backlog_warning_threshold > self.backlog_critical_threshold:
            raise ValueError(
                "BACKLOG_WARNING_THRESHOLD must not exceed BACKLOG_CRITICAL_THRESHOLD"
            )
        if self.success_rate_critical > self.success_rate_warning:
            raise ValueError(
                "SUCCESS_RATE_CRITICAL must not exceed SUCCESS_RATE_WARNING"
            )
        if not 1 <= self.default_priority <= 10 or not 1 <= self.operator_retry_priority <= 10:
            raise ValueError("Priorities must be between 1 (highest) and 10 (lowest)")
        if not 0 <= self.retry_jitter_ratio < 1:
            raise ValueError("RETRY_JITTER_RATIO must be in [0, 1)")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
