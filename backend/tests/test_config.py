from pathlib import Path

import pytest

from race_alert_core import ConfigurationError, Settings


def test_defaults_without_environment() -> None:
    settings = Settings.from_env({})

    assert settings.webhook_secret == "dev-secret"
    assert settings.supabase_configured is False
    assert settings.page_timeout_seconds == 30.0
    assert settings.pacing_delay_seconds == 1.0
    assert settings.cooldown_seconds == 12 * 3600
    assert settings.specific_race_id is None


def test_reads_supabase_and_numeric_values() -> None:
    settings = Settings.from_env(
        {
            "SUPABASE_URL": "https://example.supabase.co/",
            "SUPABASE_SERVICE_KEY": "service-key",
            "WEBHOOK_SECRET": "s3cret",
            "SCRAPE_PAGE_TIMEOUT": "12.5",
            "NOTIFICATION_COOLDOWN_HOURS": "0",
            "RACE_ALERT_DATA_DIR": "/tmp/race-alert",
            "SPECIFIC_RACE_ID": "  ",
        }
    )

    assert settings.supabase_url == "https://example.supabase.co"
    assert settings.supabase_key == "service-key"
    assert settings.supabase_configured is True
    assert settings.webhook_secret == "s3cret"
    assert settings.page_timeout_seconds == 12.5
    assert settings.cooldown_seconds == 0
    assert settings.data_dir == Path("/tmp/race-alert")
    assert settings.specific_race_id is None


def test_service_role_key_preferred() -> None:
    settings = Settings.from_env(
        {"SUPABASE_SERVICE_ROLE_KEY": "role-key", "SUPABASE_SERVICE_KEY": "legacy-key"}
    )
    assert settings.supabase_key == "role-key"


@pytest.mark.parametrize("value", ["soon", "-1"])
def test_malformed_numbers_are_rejected(value: str) -> None:
    with pytest.raises(ConfigurationError, match="SCRAPE_PACING_DELAY"):
        Settings.from_env({"SCRAPE_PACING_DELAY": value})
