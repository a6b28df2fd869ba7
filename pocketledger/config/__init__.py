"""Configuration package."""

from pocketledger.config.settings import (
    AppSettings,
    FxSettings,
    JobSettings,
    Settings,
    StoreSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "FxSettings",
    "JobSettings",
    "Settings",
    "StoreSettings",
    "get_settings",
    "validate_all_settings",
]
