"""METASYNC: Central Configuration via Pydantic Settings."""

import os
from typing import Dict, List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Meta API ──
    meta_access_token: str = ""
    meta_api_version: str = "v21.0"
    meta_base_url: str = "https://graph.facebook.com"
    meta_account_ids: List[str] = []  # empty = discover via me/adaccounts
    http_timeout_seconds: float = 60.0

    # ── Rate Limiting ──
    rate_limit_requests_per_hour: int = 100
    rate_limit_safety_margin: float = 0.8
    rate_limit_min_interval_seconds: float = 10.0
    rate_limit_max_concurrency: int = 3
    rate_limit_acquire_timeout_seconds: float = 60.0
    rate_limit_max_quota_wait_seconds: float = 1800.0

    # ── Retry ──
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_server_max_delay_seconds: float = 60.0
    retry_throttle_max_delay_seconds: float = 300.0

    # ── Circuit Breaker ──
    breaker_account_cooldown_seconds: float = 900.0
    breaker_application_cooldown_seconds: float = 300.0
    breaker_transient_cooldown_seconds: float = 300.0

    # ── Pagination & Breakdowns ──
    page_limit: int = 500
    max_pages: int = 100
    page_delay_seconds: float = 0.1
    # Order is significant: the first batch is the merge base layer
    breakdown_batches: Dict[str, List[str]] = {
        "demographic": ["age", "gender"],
        "geographic": ["country", "region"],
        "placement": ["publisher_platform", "impression_device"],
    }

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    sync_hour: int = 2  # Daily run at 2 AM
    sync_timeout_seconds: float = 0.0  # 0 = no deadline

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/metasync.db"
        return "sqlite:///./metasync.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
