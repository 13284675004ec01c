"""Application settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]

# Keys of runtime settings kept in the record store (editable from the dashboard).
AUTO_REPLY_ENABLED = "auto_reply_enabled"
REPLY_DELAY_MIN = "reply_delay_min"
REPLY_DELAY_MAX = "reply_delay_max"
REPLY_TEMPLATE_CATEGORY = "auto_reply_template_category"
FACEBOOK_SEARCH_TARGETS = "facebook_search_targets"
ANALYSIS_JOBSEEKER_KEYWORDS = "analysis_jobseeker_keywords"
ANALYSIS_SENTIMENT_PREFIX = "analysis_sentiment_"

DEFAULT_REPLY_DELAY_MIN_MS = 60_000
DEFAULT_REPLY_DELAY_MAX_MS = 300_000
DEFAULT_TEMPLATE_CATEGORY = "job_invitation"


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    app_name: str = "job-harvest"
    app_env: str = "dev"
    log_level: str = "INFO"
    recent_log_capacity: int = Field(default=1000, ge=1)
    scheduler_autostart: bool = False
    scheduler_housekeeping_interval_s: float = Field(default=60.0, gt=0.0)
    runner_max_workers: int = Field(default=4, ge=1)
    facebook_app_id: str = ""
    facebook_app_secret: str = ""
    facebook_graph_url: str = "https://graph.facebook.com"
    facebook_api_version: str = "v18.0"
    http_timeout_s: float = Field(default=10.0, ge=0.5)
    facebook_request_delay_s: float = Field(default=1.0, ge=0.0)

    model_config = SettingsConfigDict(
        env_prefix="HARVEST_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
