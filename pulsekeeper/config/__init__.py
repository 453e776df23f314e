"""Configuration package."""

from pulsekeeper.config.settings import (
    AppSettings,
    ChainSettings,
    ConfigurationError,
    GoogleSheetsSettings,
    SessionSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "ChainSettings",
    "ConfigurationError",
    "GoogleSheetsSettings",
    "SessionSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
