"""
Configuration Management for PocketLedger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

import json
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreSettings(BaseSettings):
    """Ledger store backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_STORE_",
        extra="ignore"
    )

    backend: Literal["memory", "sql"] = Field(
        default="sql",
        description="Which store implementation to use (memory is for tests)"
    )
    url: str = Field(
        default="sqlite:///pocketledger.db",
        description="SQLAlchemy database URL (sql backend only)"
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging)"
    )


class FxSettings(BaseSettings):
    """Exchange rate configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FX_",
        extra="ignore"
    )

    base_currency: str = Field(
        default="USD",
        description="Reporting currency every amount_base is expressed in"
    )
    api_url: str = Field(
        default="https://open.er-api.com/v6/latest/{base}",
        description="Rate source URL; {base} is replaced by the base currency"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="HTTP timeout for the rate source"
    )
    # JSON object: {"EUR": "1.08", "GBP": 1.27}, units of base per unit of currency
    rates_fallback: str = Field(
        default="{}",
        description="Static fallback rate table as JSON"
    )
    epsilon: Decimal = Field(
        default=Decimal("0.0001"),
        gt=0,
        description="Rate changes smaller than this are ignored"
    )

    @field_validator('base_currency')
    @classmethod
    def validate_base_currency(cls, v: str) -> str:
        """Base currency must be a 3-letter code."""
        v = v.strip()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"Base currency must be a 3-letter ISO code, got {v!r}")
        return v.upper()

    @property
    def fallback_rates(self) -> dict[str, Decimal]:
        """
        Parse the fallback table.

        A malformed table is treated as empty rather than failing the job;
        individual non-numeric or non-positive entries are dropped.
        """
        try:
            raw = json.loads(self.rates_fallback or "{}")
        except json.JSONDecodeError:
            return {}
        if not isinstance(raw, dict):
            return {}

        rates = {}
        for code, value in raw.items():
            if isinstance(value, bool):
                continue
            try:
                rate = Decimal(str(value))
            except (InvalidOperation, ValueError):
                continue
            if rate.is_finite() and rate > 0:
                rates[str(code).upper()] = rate
        return rates


class JobSettings(BaseSettings):
    """Batch job configuration."""

    model_config = SettingsConfigDict(
        env_prefix="JOBS_",
        extra="ignore"
    )

    page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Items fetched per scan page"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    default_alert_threshold: float = Field(
        default=0.9,
        gt=0.0,
        le=1.5,
        description="Budget alert threshold used when none is given"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def store(self) -> StoreSettings:
        return StoreSettings()

    @property
    def fx(self) -> FxSettings:
        return FxSettings()

    @property
    def jobs(self) -> JobSettings:
        return JobSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("store", "fx", "jobs", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
