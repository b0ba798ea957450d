from __future__ import annotations

import os
from dataclasses import dataclass


def _codes(value: str) -> tuple[str, ...]:
    return tuple(code.strip().upper() for code in value.split(",") if code.strip())


@dataclass(frozen=True)
class Settings:
    """Application configuration loaded from environment variables."""

    app_name: str = os.getenv("APP_NAME", "Finance Tracker")
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./finance.db")
    sqlite_busy_timeout_ms: int = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "30000"))
    sqlite_journal_mode: str = os.getenv("SQLITE_JOURNAL_MODE", "WAL")
    pivot_currency: str = os.getenv("PIVOT_CURRENCY", "EUR").strip().upper()
    fx_quote_codes: tuple[str, ...] = _codes(os.getenv("FX_QUOTE_CODES", "USD,PLN,CHF,GBP"))
    metal_quote_currency: str = os.getenv("METAL_QUOTE_CURRENCY", "EUR").strip().upper()
    crypto_quote_currency: str = os.getenv("CRYPTO_QUOTE_CURRENCY", "EUR").strip().upper()
    equity_quote_currency: str = os.getenv("EQUITY_QUOTE_CURRENCY", "USD").strip().upper()
    provider_timeout_seconds: float = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))
    refresh_retries: int = int(os.getenv("REFRESH_RETRIES", "1"))
    coingecko_base_url: str = os.getenv(
        "COINGECKO_BASE_URL", "https://api.coingecko.com/api/v3"
    )
    exchange_api_base_url: str = os.getenv(
        "EXCHANGE_API_BASE_URL",
        "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1",
    )
    reconstruct_workers: int = int(os.getenv("RECONSTRUCT_WORKERS", "1"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
