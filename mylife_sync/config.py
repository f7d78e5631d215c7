"""Connector configuration using Pydantic Settings."""

import sys

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Base URLs of the mylife cloud per region
MYLIFE_REGION_BASE_URLS: dict[str, str] = {
    "EU": "https://cloud.mylife-software.net",
    "US": "https://us.cloud.mylife-software.net",
    "CH": "https://ch.cloud.mylife-software.net",
}


class Settings(BaseSettings):
    """Connector settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # mylife cloud account
    mylife_username: str = ""
    mylife_password: SecretStr = SecretStr("")
    mylife_device_serial: str = ""
    mylife_region: str = "EU"
    mylife_base_url: str = ""  # Overrides the region URL when set
    mylife_timezone: str = "UTC"  # IANA zone the pump clock runs in

    # Sync loop
    sync_enabled: bool = True
    sync_interval_minutes: int = 5
    sync_lookback_hours: int = 24  # Archive window; overlaps previous polls
    backoff_base_seconds: float = 10.0
    backoff_max_seconds: float = 300.0
    session_refresh_margin_seconds: int = 300
    http_timeout_seconds: float = 30.0

    # Dedup cache
    dedup_window_hours: int = 48  # Must exceed sync_lookback_hours
    dedup_max_entries: int = 20_000

    # Treatment mapping options
    enable_manual_bg_sync: bool = True
    enable_meal_carb_consolidation: bool = True
    enable_temp_basal_consolidation: bool = False
    temp_basal_consolidation_window_minutes: int = 5

    # Downstream Nightscout
    nightscout_url: str = ""
    nightscout_api_secret: SecretStr = SecretStr("")
    submit_batch_size: int = 50

    # Manual trigger endpoint
    sync_trigger_api_key: str = ""

    # Logging
    log_format: str = "json"  # 'json' or 'text'
    log_level: str = "INFO"
    service_name: str = "mylife-sync"

    # Testing
    testing: bool = False

    @property
    def resolved_base_url(self) -> str:
        """Return the mylife cloud base URL for the configured region."""
        if self.mylife_base_url:
            return self.mylife_base_url.rstrip("/")
        return MYLIFE_REGION_BASE_URLS.get(self.mylife_region.upper(), "")


settings = Settings()


def missing_required_settings(config: Settings) -> list[str]:
    """Return the names of required settings that are missing or invalid."""
    missing = []
    if not config.mylife_username.strip():
        missing.append("MYLIFE_USERNAME")
    if not config.mylife_password.get_secret_value():
        missing.append("MYLIFE_PASSWORD")
    if not config.mylife_device_serial.strip():
        missing.append("MYLIFE_DEVICE_SERIAL")
    if not config.resolved_base_url:
        missing.append("MYLIFE_REGION")
    if not config.nightscout_url.strip():
        missing.append("NIGHTSCOUT_URL")
    if not config.nightscout_api_secret.get_secret_value():
        missing.append("NIGHTSCOUT_API_SECRET")
    if config.sync_interval_minutes < 1:
        missing.append("SYNC_INTERVAL_MINUTES")
    if config.backoff_base_seconds <= 0 or config.backoff_max_seconds < config.backoff_base_seconds:
        missing.append("BACKOFF_BASE_SECONDS/BACKOFF_MAX_SECONDS")
    return missing


def validate_settings(config: Settings | None = None) -> None:
    """Validate connector settings before the sync loop starts.

    Missing credentials or endpoints fail connector startup rather than
    individual sync cycles. Skipped during tests (TESTING=true).
    """
    config = config or settings
    if config.testing:
        return

    missing = missing_required_settings(config)
    if missing:
        print(
            "FATAL: mylife connector is not configured. "
            f"Missing or invalid settings: {', '.join(missing)}",
            file=sys.stderr,
        )
        sys.exit(1)

    if config.dedup_window_hours <= config.sync_lookback_hours:
        print(
            "WARNING: DEDUP_WINDOW_HOURS does not exceed SYNC_LOOKBACK_HOURS; "
            "overlapping archive windows will re-emit treatments.",
            file=sys.stderr,
        )
