"""
Configuration Management for PulseKeeper

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """
    A required setting is missing or invalid.

    Fatal for the operation that needs the setting; never retried.
    """
    pass


class ChainSettings(BaseSettings):
    """RPC endpoint and registry contract configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHAIN_",
        extra="ignore"
    )

    rpc_url: str = Field(
        ...,
        description="JSON-RPC endpoint of the chain the registry lives on"
    )
    chain_id: int = Field(
        default=11155111,
        description="Chain ID used when signing transactions (Sepolia by default)"
    )
    registry_address: str = Field(
        ...,
        description="Address of the deadline/backup registry contract"
    )
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        description="HTTP timeout for RPC requests"
    )
    receipt_timeout_seconds: int = Field(
        default=120,
        ge=1,
        description="How long to wait for a transaction receipt"
    )
    gas_limit_buffer: float = Field(
        default=1.2,
        ge=1.0,
        le=3.0,
        description="Multiplier applied to gas estimates"
    )

    @field_validator('registry_address')
    @classmethod
    def validate_registry_address(cls, v: str) -> str:
        """Registry must be a 20-byte hex address."""
        v = v.strip()
        if not (v.startswith("0x") and len(v) == 42):
            raise ValueError(f"Invalid registry address: {v}")
        return v


class SessionSettings(BaseSettings):
    """
    Signing credential of the custodial session account.

    This account is the delegate named in every user's grant. It signs
    the redemption transactions and the registry distribution records.
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSION_",
        extra="ignore"
    )

    private_key: Optional[SecretStr] = Field(
        default=None,
        description="Hex-encoded private key of the session account"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    grants_sheet_name: str = Field(
        default="Grants",
        description="Name of the sheet for grants"
    )
    redemptions_sheet_name: str = Field(
        default="Redemptions",
        description="Name of the sheet for redemption records"
    )
    pending_sheet_name: str = Field(
        default="PendingSubmissions",
        description="Name of the sheet for broadcast batches awaiting settlement"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


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

    storage_backend: Literal["memory", "sheets"] = Field(
        default="sheets",
        description="Where grants and redemption records are persisted"
    )

    # Submission retry policy
    submission_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="How many times a signed batch is broadcast before giving up"
    )
    submission_backoff_min_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Minimum wait between broadcast attempts"
    )
    submission_backoff_max_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Maximum wait between broadcast attempts"
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
    def chain(self) -> ChainSettings:
        return ChainSettings()

    @property
    def session(self) -> SessionSettings:
        return SessionSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

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

    for name in ("chain", "session", "google_sheets", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    # A session section without a key loads fine but cannot sign anything
    if results.get("session"):
        if settings.session.private_key is None:
            results["session"] = False
            results["session_error"] = "SESSION_PRIVATE_KEY is not set"

    return results
