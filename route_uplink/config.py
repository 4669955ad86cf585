"""
Uplink configuration using pydantic-settings.
Loads from environment variables (ROUTE_UPLINK_*) with sensible defaults.
"""
from functools import lru_cache
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class UplinkSettings(BaseSettings):
    """Settings for the tracking upload pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTE_UPLINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Backend
    api_base_url: str = "http://localhost:3000"
    request_timeout_s: float = 20.0

    # Local storage
    db_path: str = "./data/uplink.db"
    max_queue_length: int = 1000  # Oldest points are dropped beyond this

    # Scheduling
    retry_delay_s: float = 30.0  # Fixed delay after a failed flush
    periodic_flush_s: float = 60.0  # Heartbeat flush
    watchdog_s: float = 45.0  # A flush taking longer than this is abandoned
    route_idle_timeout_s: float = 1800.0  # 0 disables the periodic idle check

    # Session
    max_refresh_attempts: int = 3
    refresh_warn_interval_s: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @model_validator(mode="after")
    def check_limits(self):
        """Reject durations and bounds that would stall the pipeline."""
        for name in (
            "request_timeout_s",
            "retry_delay_s",
            "periodic_flush_s",
            "watchdog_s",
            "refresh_warn_interval_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.route_idle_timeout_s < 0:
            raise ValueError("route_idle_timeout_s must be zero or positive")
        if self.max_queue_length < 1:
            raise ValueError("max_queue_length must be at least 1")
        if self.max_refresh_attempts < 0:
            raise ValueError("max_refresh_attempts must be zero or positive")
        return self

    @property
    def tracking_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/tracking/points"

    @property
    def token_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/auth/token"


@lru_cache()
def get_settings() -> UplinkSettings:
    """Cached settings instance."""
    return UplinkSettings()
