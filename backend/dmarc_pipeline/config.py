from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    database_url: str = "postgresql://dmarc:dmarc@db:5432/dmarc"

    # Application
    app_name: str = "DMARC Report Pipeline"
    debug: bool = False
    log_level: str = "INFO"

    # Logging
    log_dir: str = "/app/logs"
    log_json: bool = False  # Enable JSON logging for production
    enable_request_logging: bool = True

    # Redis (shared rate limiter)
    redis_url: str = "redis://redis:6379/0"

    # Celery (distributed task queue)
    celery_broker_url: str = "redis://redis:6379/1"  # Use DB 1 for broker
    celery_result_backend: str = ""  # Falls back to database_url + sqlalchemy prefix
    celery_task_track_started: bool = True
    celery_task_time_limit: int = 3600  # Mailbox syncs may run tens of minutes
    celery_worker_prefetch_multiplier: int = 1
    celery_visibility_timeout: int = 7200  # Must exceed the longest job

    # Job queue bookkeeping
    job_lease_seconds: int = 300  # Lease length, renewed at every checkpoint

    # Alerting - Pass rate
    alert_pass_rate_drop_threshold: float = 10.0  # Points dropped versus previous report
    alert_pass_rate_warning: float = 15.0
    alert_pass_rate_critical: float = 30.0
    alert_dedup_window_hours: int = 24

    # Alerting - New sources
    new_source_min_messages: int = 10
    new_source_dedup_hours: int = 24
    new_source_example_limit: int = 5
    new_source_elevated_count: int = 10  # More than this many raises severity

    # Webhooks
    webhook_timeout_seconds: float = 10.0
    webhook_failure_threshold: int = 10  # Consecutive failures before disabling

    # Geolocation (ip-api.com)
    geolocation_api_url: str = "http://ip-api.com/json"
    geolocation_min_interval_seconds: float = 1.5  # Free tier allows 45 req/min
    geolocation_timeout_seconds: float = 10.0
    geolocation_shared_rate_limit: bool = True  # Off only for a single-process worker pool

    # Mailbox sync
    mailbox_max_messages: int = 2000  # Hard cap per sync invocation
    mailbox_page_size: int = 50
    mailbox_message_delay_seconds: float = 0.1
    mailbox_checkpoint_interval: int = 10
    mailbox_cancel_check_ttl_seconds: float = 3.0
    mailbox_archive_label: str = "DMARC-Processed"
    gmail_api_url: str = "https://gmail.googleapis.com/gmail/v1/users/me"

    # Retention / cleanup
    default_retention_days: int = 365
    unverified_domain_days: int = 7
    export_ttl_days: int = 7
    cleanup_time_budget_seconds: int = 600
    cleanup_batch_size: int = 500

    @field_validator(
        'alert_pass_rate_drop_threshold',
        'alert_pass_rate_warning',
        'alert_pass_rate_critical',
        'geolocation_min_interval_seconds',
        'webhook_failure_threshold',
        'mailbox_max_messages',
        'mailbox_checkpoint_interval',
        'default_retention_days',
    )
    @classmethod
    def must_be_positive(cls, v):
        """Thresholds and intervals must be positive"""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
