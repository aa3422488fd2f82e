"""adsync — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Meta API ──
    meta_app_id: str = ""
    meta_app_secret: str = ""
    meta_redirect_uri: str = "http://localhost:8000/auth/meta/callback"
    meta_api_version: str = "v19.0"
    meta_base_url: str = "https://graph.facebook.com"
    meta_dialog_base_url: str = "https://www.facebook.com"
    meta_scopes: str = "ads_read,read_insights"
    http_timeout_seconds: float = 30.0

    # ── Database ──
    database_url: str = ""

    # ── Sync ──
    sync_max_pages: int = 20
    creative_fetch_concurrency: int = 5
    sync_workers: int = 2
    long_lived_token_ttl_days: int = 60  # Meta long-lived tokens last ~60 days
    backfill_days: int = 30

    # ── Scheduler ──
    scheduler_enabled: bool = True
    scheduler_interval_minutes: int = 60
    sync_staleness_hours: int = 24
    scheduled_window_days: int = 3  # Re-pull recent days for late attribution

    # ── App ──
    log_level: str = "INFO"
    default_user_id: str = "default_user"
    app_url: Optional[str] = "http://localhost:5173"

    @property
    def meta_graph_url(self) -> str:
        return f"{self.meta_base_url}/{self.meta_api_version}"

    @property
    def effective_database_url(self) -> str:
        """Return the configured URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/adsync.db"
        return "sqlite:///./adsync.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
