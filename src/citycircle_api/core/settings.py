from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./citycircle.db"
    sql_echo: bool = False
    log_level: str = "INFO"

    # Tracing
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None

    # Check-in sessions
    checkin_session_ttl_minutes: int = 30

    # Deferred settlement
    pending_grant_ttl_days: int = 7
    settlement_lookback_days: int = 7
    settlement_sweep_enabled: bool = True
    settlement_sweep_interval_seconds: int = 5 * 60
    settlement_sweep_trigger_label: str = "scheduler"

    # Reward sizing
    default_estimate_cents: int = 1000

    # Consumption-intent scoring weights
    civ_baseline: float = 0.5
    civ_browsing_weight: float = 0.3
    civ_dwell_weight: float = 0.15
    civ_proximity_near_weight: float = 0.2
    civ_proximity_far_weight: float = 0.1
    civ_duration_weight: float = 0.2
    civ_short_duration_weight: float = 0.1
    civ_stop_weight: float = 0.1
    civ_return_probability_weight: float = 0.1

    # Gift cards
    gift_card_min_loops: int = 1000
    gift_card_exchange_rate: int = 100
    gift_card_validity_days: int = 90

    # Store lookup
    nearby_default_radius_miles: float = 0.6


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
