"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_name: str = Field(default="analysis-ops", description="Service name for logs")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(
        default=True, description="Render logs as JSON (console renderer otherwise)"
    )

    # Store Configuration
    store_backend: Literal["postgres", "memory"] = Field(
        default="postgres",
        description="Durable store backend; memory is process-local and non-durable",
    )
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL"
    )
    db_pool_min_size: int = Field(default=0, ge=0, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, ge=1, description="Maximum connection pool size")
    db_command_timeout_s: float = Field(
        default=30.0, gt=0, description="Per-statement timeout in seconds"
    )

    # Retry Queue
    retry_max_retries: int = Field(
        default=5, ge=1, description="Retry attempts before a queue item is failed"
    )
    retry_base_delay_s: float = Field(
        default=60.0, gt=0, description="Backoff base delay (first retry)"
    )
    retry_max_delay_s: float = Field(
        default=30 * 60.0, gt=0, description="Backoff cap"
    )
    retry_error_max_chars: int = Field(
        default=1000, ge=1, description="Max stored error length on queue rows"
    )
    alert_error_max_chars: int = Field(
        default=500, ge=1, description="Max error length included in alert payloads"
    )

    # Background Processor
    retry_processor_enabled: bool = Field(
        default=True, description="Start the retry queue processor with the engine"
    )
    retry_processor_interval_s: float = Field(
        default=30.0, gt=0, description="Seconds between processor iterations"
    )
    retry_executor_timeout_s: float = Field(
        default=900.0, gt=0, description="Timeout for a single job executor call"
    )
    retry_stale_processing_minutes: int = Field(
        default=60,
        ge=1,
        description="Processing items older than this are returned to pending",
    )
    retry_reclaim_every_iterations: int = Field(
        default=10, ge=1, description="Run the stale reclaim every N iterations"
    )

    # Circuit Breaker
    circuit_failure_threshold: int = Field(
        default=5, ge=1, description="Failures before the breaker opens"
    )
    circuit_reset_timeout_s: float = Field(
        default=60.0, gt=0, description="Open duration before a half-open probe"
    )
    circuit_failure_window_s: float = Field(
        default=300.0, gt=0, description="Rolling window for windowed failure counts"
    )

    # Admin Alerting
    alert_cooldown_s: float = Field(
        default=5 * 60.0, ge=0, description="Suppression window per alert key"
    )
    failure_rate_window_minutes: float = Field(
        default=15.0, gt=0, description="Failure-rate window length"
    )
    failure_rate_threshold_pct: float = Field(
        default=30.0, ge=0.0, le=100.0, description="Failure rate that fires an alert"
    )
    failure_rate_min_requests: int = Field(
        default=10, ge=1, description="Requests needed before the rate is evaluated"
    )

    # Notification sinks
    telegram_bot_token: Optional[str] = Field(default=None, description="Telegram bot token")
    telegram_chat_id: Optional[str] = Field(default=None, description="Telegram chat ID")
    telegram_enabled: bool = Field(default=True, description="Telegram kill switch")
    telegram_timeout_s: float = Field(default=10.0, gt=0, description="Telegram timeout")
    alert_webhook_url: Optional[str] = Field(
        default=None, description="Slack-compatible incoming webhook URL"
    )
    admin_base_url: Optional[str] = Field(
        default=None, description="Admin UI base URL for deep links in alerts"
    )

    # Observability
    sentry_dsn: Optional[str] = Field(
        default=None, description="Sentry DSN for error tracking"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)",
    )
    sentry_traces_sample_rate: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)",
    )
    metrics_enabled: bool = Field(
        default=True, description="Export Prometheus counters for engine activity"
    )
    metrics_port: int = Field(
        default=9108, ge=0, description="Worker Prometheus exporter port (0 disables)"
    )

    # Worker
    job_executor: Optional[str] = Field(
        default=None,
        description="Import path of the job executor factory (module:attribute)",
    )

    @property
    def failure_rate_window_s(self) -> float:
        """Failure-rate window in seconds."""
        return self.failure_rate_window_minutes * 60.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
