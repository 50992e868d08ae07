"""
Application configuration using Pydantic Settings
"""
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "alert_engine"
    postgres_user: str = "alert_engine"
    postgres_password: str = "alert_engine"
    database_url_override: Optional[str] = Field(default=None, alias="DATABASE_URL")
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout_seconds: int = 10
    db_statement_timeout_ms: int = 5000

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_jobs_table: str = "escalation_queue_jobs"
    scheduler_misfire_grace_seconds: int = 300

    # Routing
    rule_cache_ttl_seconds: int = 60

    # Dedup
    reopen_on_critical: bool = False

    # Correlation
    correlation_enabled: bool = True
    correlation_lookback_hours: int = 24
    correlation_threshold: float = 0.5
    correlation_root_cause_threshold: float = 0.8
    correlation_temporal_window_minutes: int = 30
    correlation_semantic_weight: float = 0.0

    # Escalation
    escalation_max_levels: int = 3

    # Hygiene
    auto_close_enabled: bool = True
    auto_close_inactivity_days: int = 7
    auto_close_interval_minutes: int = 60

    # Notifications
    dispatch_webhook_url: str = ""
    dispatch_timeout_seconds: float = 10.0
    dispatch_max_retries: int = 3
    dispatch_backoff_seconds: float = 0.5
    dispatch_backoff_max_seconds: float = 5.0

    # App
    debug: bool = False
    app_port: int = 8080

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    class Config:
        env_file = ".env"
        case_sensitive = False
        populate_by_name = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
