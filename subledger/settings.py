from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./subledger.db"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
DEFAULT_EXCHANGE_RATE_API_URL = "https://v6.exchangerate-api.com/v6"


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    frontend_origin: str = DEFAULT_FRONTEND_ORIGIN
    exchange_rate_api_key: str = ""
    exchange_rate_api_url: str = DEFAULT_EXCHANGE_RATE_API_URL
    rates_ttl: timedelta = timedelta(hours=24)
    rates_grace_period: timedelta = timedelta(hours=72)
    rates_retry_interval: timedelta = timedelta(minutes=5)
    rates_fetch_timeout_seconds: float = 8.0
    forecast_horizon_months: int = 4

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", DEFAULT_FRONTEND_ORIGIN),
            exchange_rate_api_key=os.getenv("EXCHANGE_RATE_API_KEY", "").strip(),
            exchange_rate_api_url=os.getenv(
                "EXCHANGE_RATE_API_URL", DEFAULT_EXCHANGE_RATE_API_URL
            ).rstrip("/"),
            rates_ttl=timedelta(hours=_get_positive_float("RATES_TTL_HOURS", 24)),
            rates_grace_period=timedelta(hours=_get_positive_float("RATES_GRACE_HOURS", 72)),
            rates_retry_interval=timedelta(
                minutes=_get_positive_float("RATES_RETRY_MINUTES", 5)
            ),
            rates_fetch_timeout_seconds=_get_positive_float("RATES_FETCH_TIMEOUT_SECONDS", 8),
            forecast_horizon_months=int(_get_positive_float("FORECAST_HORIZON_MONTHS", 4)),
        )


def _get_positive_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    return value
