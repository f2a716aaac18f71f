"""
Configuration management for the outreach sync engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Outreach Sync Engine"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"  # Empty disables file logging

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./outreach_sync.db"

    # Authentication
    service_role_key: str = ""  # Service credential for continuations and jobs
    api_tokens: Dict[str, str] = {}  # bearer token -> caller id (JSON in env)

    # Sync engine
    sync_time_budget_seconds: float = 50.0  # Well under the host's hard limit
    sync_checkpoint_interval: int = 5  # Heartbeat every N campaigns
    sync_max_batches: int = 50  # Safety limit on continuation chains
    sync_lease_seconds: int = 120
    continuation_lease_seconds: int = 300  # Lease held for the pending continuation
    contacts_page_size: int = 100

    # Reply.io
    replyio_base_url: str = "https://api.reply.io/v3"
    replyio_list_delay_seconds: float = 2.0  # List endpoints
    replyio_stats_delay_seconds: float = 1.0  # Statistics endpoints

    # SmartLead
    smartlead_base_url: str = "https://server.smartlead.ai/api/v1"
    smartlead_delay_seconds: float = 0.45

    # PhoneBurner
    phoneburner_base_url: str = "https://www.phoneburner.com/rest/1"
    phoneburner_delay_seconds: float = 0.5
    phoneburner_history_days: int = 180  # Call activity window per contact
    phoneburner_usage_days: int = 90  # Usage stats window

    # Rate limiting / retries for platform calls
    api_max_retries: int = 3
    api_timeout_seconds: float = 30.0
    rate_limit_backoff_base_seconds: float = 10.0
    rate_limit_max_wait_seconds: float = 60.0
    network_backoff_base_seconds: float = 2.0

    # Continuations
    continuation_mode: str = "queue"  # queue | http
    continuation_max_retries: int = 3
    continuation_retry_base_seconds: float = 1.0  # 1s, 2s, 4s
    public_base_url: str = "http://localhost:8000"
    continuation_poll_seconds: int = 15
    continuation_batch_size: int = 5

    # Reconciliation
    reconcile_schedule: str = "0 3 * * *"
    freshness_threshold_hours: int = 48
    reconcile_tolerance_pct: float = 0.05
    reconcile_min_absolute_drift: int = 5

    # Recovery
    stale_sync_minutes: int = 5
    stale_partial_minutes: int = 10
    recovery_interval_minutes: int = 5

    # Scheduled syncs
    enable_scheduled_syncs: bool = False
    scheduled_sync_schedule: str = "0 */6 * * *"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
