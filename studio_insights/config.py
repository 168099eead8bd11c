from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "studio_insights.db"
DEFAULT_SQLITE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BASE_DIR / ".env", env_prefix="APP_", case_sensitive=False)

    api_token: str = Field(default="dev-token", description="Bearer token granted the admin role")
    # Additional callers as "token:user_id:role" entries separated by ';'
    api_keys: str = Field(default="")
    database_url: str = Field(default=DEFAULT_SQLITE_URL, description="SQLAlchemy database URL")
    # Comma-separated values or '*' for all
    cors_origins: str = Field(default="*")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Rate limiting (per token+IP per minute)
    rate_limit_enabled: bool = Field(default=False)
    rate_limit_per_minute: int = Field(default=600)

    # At-risk thresholds, in days since last activity
    risk_low_days: int = Field(default=14, ge=0)
    risk_medium_days: int = Field(default=30, ge=0)
    risk_high_days: int = Field(default=60, ge=0)
    risk_critical_days: int = Field(default=90, ge=0)
    risk_cancellation_streak: int = Field(default=3, ge=1, description="Trailing cancelled enrollments that flag a client")

    leakage_period_days: int = Field(default=30, ge=1)
    feedback_trigger_ttl_days: int = Field(default=7, ge=1)

    # Notifications
    notifications_provider: str = Field(default="log", description="log|webhook")
    notifications_webhook_url: Optional[str] = Field(default=None)
    notifications_timeout_seconds: float = Field(default=5.0)

    @model_validator(mode="after")
    def _thresholds_ascending(self) -> "Settings":
        bounds = [self.risk_low_days, self.risk_medium_days, self.risk_high_days, self.risk_critical_days]
        if bounds != sorted(bounds):
            raise ValueError("risk thresholds must be ascending (low <= medium <= high <= critical)")
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s or s == "*":
            return ["*"]
        return [part.strip() for part in s.split(",") if part.strip()]

    @property
    def risk_thresholds(self) -> List[Tuple[str, int]]:
        """Levels ordered from most to least severe."""
        return [
            ("critical", self.risk_critical_days),
            ("high", self.risk_high_days),
            ("medium", self.risk_medium_days),
            ("low", self.risk_low_days),
        ]

    @property
    def callers(self) -> Dict[str, Tuple[str, str]]:
        """Map of bearer token -> (user_id, role)."""
        mapping: Dict[str, Tuple[str, str]] = {self.api_token: ("admin", "admin")}
        for entry in (self.api_keys or "").split(";"):
            parts = [p.strip() for p in entry.split(":")]
            if len(parts) != 3 or not all(parts):
                continue
            token, user_id, role = parts
            mapping[token] = (user_id, role.lower())
        return mapping


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
