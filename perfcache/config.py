"""PERFCACHE — Central Configuration via Pydantic Settings."""

import os
from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── Meta API ──
    meta_access_token: str = ""
    meta_api_version: str = "v21.0"
    meta_base_url: str = "https://graph.facebook.com"
    meta_client_accounts: Dict[str, str] = {}  # client_id -> act_XXXX

    # ── Google Ads API ──
    google_ads_developer_token: str = ""
    google_ads_client_id: str = ""
    google_ads_client_secret: str = ""
    google_ads_refresh_token: str = ""
    google_ads_login_customer_id: Optional[str] = None
    google_ads_client_customers: Dict[str, str] = {}  # client_id -> customer id

    # ── Resolution engine ──
    cache_freshness_hours: float = 6.0
    refresh_cooldown_seconds: float = 300.0
    coalesce_ceiling_seconds: float = 30.0
    upstream_timeout_seconds: float = 60.0
    background_refresh_enabled: bool = True

    # ── Retention (whole periods) ──
    retention_months: int = 14  # 13 past + current, for year-over-year
    retention_weeks: int = 54
    retention_days: int = 400

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    collection_hour: int = 1  # Daily ledger collection at 1 AM UTC
    proactive_refresh_enabled: bool = True
    proactive_refresh_hours: int = 3

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/perfcache.db"
        return "sqlite:///./perfcache.db"

    @property
    def freshness_seconds(self) -> float:
        return self.cache_freshness_hours * 3600

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
