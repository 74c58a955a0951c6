"""AdSync — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Meta Graph API ──
    meta_access_token: str = ""
    meta_api_version: str = "v23.0"
    meta_base_url: str = "https://graph.facebook.com"
    meta_app_secret: str = ""  # HMAC secret for webhook signatures
    meta_webhook_verify_token: str = ""
    meta_request_timeout: float = 30.0
    meta_max_retries: int = 3
    meta_retry_base_delay: float = 1.0
    meta_retry_max_delay: float = 10.0
    meta_retry_jitter: float = 0.1
    meta_rate_limit_max_wait: float = 60.0

    # ── Database ──
    database_url: str = ""

    # ── Cache ──
    redis_url: str = ""
    cache_key_prefix: str = "meta-ads:"
    cache_ttl_accounts: int = 3600
    cache_ttl_campaigns: int = 1800
    cache_ttl_insights: int = 900

    # ── Sync ──
    sync_batch_size: int = 50
    sync_delay_between_batches: float = 1.0
    sync_account_concurrency: int = 1
    sync_default_days: int = 7
    sync_fleet_timeout: float = 1800.0
    sync_history_size: int = 20

    # ── Scheduler ──
    scheduler_enabled: bool = True
    schedule_insights_hours: int = 1
    schedule_campaigns_hours: int = 2
    schedule_accounts_hours: int = 6
    schedule_cache_cleanup_hours: int = 4

    # ── App ──
    log_level: str = "INFO"
    app_version: str = "1.0.0"
    environment: str = "development"

    @property
    def effective_database_url(self) -> str:
        """Return the configured database URL, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/adsync.db"
        return "sqlite:///./adsync.db"

    @property
    def meta_graph_url(self) -> str:
        return f"{self.meta_base_url}/{self.meta_api_version}"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
