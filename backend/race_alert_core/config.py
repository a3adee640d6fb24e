from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, built once at startup and handed to each component."""

    supabase_url: str = ""
    supabase_key: str = ""
    supabase_schema: str = "public"
    webhook_secret: str = "dev-secret"
    webhook_url: str = ""
    resend_api_key: str = ""
    email_from: str = "Race Alert <onboarding@resend.dev>"
    site_url: str = "http://localhost:3000"
    specific_race_id: Optional[str] = None
    page_timeout_seconds: float = 30.0
    settle_delay_seconds: float = 2.0
    pacing_delay_seconds: float = 1.0
    notification_cooldown_hours: float = 12.0
    data_dir: Path = DEFAULT_DATA_DIR
    log_dir: Path = Path("logs")

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def cooldown_seconds(self) -> int:
        return int(self.notification_cooldown_hours * 3600)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        def _get(name: str, default: str = "") -> str:
            return (env.get(name) or default).strip()

        def _number(name: str, default: float) -> float:
            raw = _get(name)
            if not raw:
                return default
            try:
                value = float(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{name} must be a number, got '{raw}'") from exc
            if value < 0:
                raise ConfigurationError(f"{name} must not be negative")
            return value

        data_dir = _get("RACE_ALERT_DATA_DIR")
        return cls(
            supabase_url=_get("SUPABASE_URL").rstrip("/"),
            supabase_key=_get("SUPABASE_SERVICE_ROLE_KEY") or _get("SUPABASE_SERVICE_KEY"),
            supabase_schema=_get("SUPABASE_SCHEMA", "public"),
            webhook_secret=_get("WEBHOOK_SECRET", "dev-secret"),
            webhook_url=_get("WEBHOOK_URL"),
            resend_api_key=_get("RESEND_API_KEY"),
            email_from=_get("EMAIL_FROM", cls.email_from),
            site_url=_get("SITE_URL", cls.site_url).rstrip("/"),
            specific_race_id=_get("SPECIFIC_RACE_ID") or None,
            page_timeout_seconds=_number("SCRAPE_PAGE_TIMEOUT", cls.page_timeout_seconds),
            settle_delay_seconds=_number("SCRAPE_SETTLE_DELAY", cls.settle_delay_seconds),
            pacing_delay_seconds=_number("SCRAPE_PACING_DELAY", cls.pacing_delay_seconds),
            notification_cooldown_hours=_number(
                "NOTIFICATION_COOLDOWN_HOURS", cls.notification_cooldown_hours
            ),
            data_dir=Path(data_dir) if data_dir else DEFAULT_DATA_DIR,
            log_dir=Path(_get("RACE_ALERT_LOG_DIR", "logs")),
        )
