"""
Configuration Management for the Finance Engine

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
The currency allow-list, the base currency and the storage backend are
the only knobs the engine has, and all of them are validated at startup.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Ledger behaviour: currencies, budget windows, synthetic postings."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    base_currency: str = Field(
        default="USD",
        description="Currency used when a form or intent does not carry one",
    )
    supported_currencies: str = Field(
        default="UZS,USD,EUR,GBP,TRY,SAR,AED,USDT,RUB",
        description="Comma-separated allow-list of currency codes",
    )

    # Budget windows
    week_start: int = Field(
        default=0,
        ge=0,
        le=6,
        description="First day of a weekly budget window (0 = Monday)",
    )

    # Synthetic postings
    debt_category: str = Field(
        default="debt",
        description="Category used for debt settlement transactions",
    )
    goal_category: str = Field(
        default="goal",
        description="Category used for goal transactions without a budget",
    )

    # Sanity thresholds (warnings only)
    future_date_tolerance_days: int = Field(
        default=7,
        ge=0,
        description="How many days in the future a transaction date can be",
    )
    max_transaction_amount: Decimal = Field(
        default=Decimal("1000000000"),
        gt=0,
        description="Amounts above this are flagged for review",
    )

    @field_validator("base_currency")
    @classmethod
    def normalize_base_currency(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def supported_currencies_list(self) -> list[str]:
        """Get supported currencies as a list."""
        return [
            code.strip().upper()
            for code in self.supported_currencies.split(",")
            if code.strip()
        ]


class StorageSettings(BaseSettings):
    """Persistence backend selection."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    backend: str = Field(
        default="json",
        pattern="^(memory|json|google_sheets)$",
        description="Which storage backend to use",
    )
    json_path: Path = Field(
        default=Path("ledger.json"),
        description="Location of the JSON snapshot file",
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="How many times a snapshot write is attempted",
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore",
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON",
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use",
    )

    # Sheet names within the spreadsheet
    sheet_prefix: str = Field(
        default="Ledger",
        description="Prefix for the per-collection worksheets",
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs",
    )

    @field_validator("credentials_path")
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


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-settings are loaded lazily so that a missing Google Sheets
    # configuration does not break a JSON-backed engine.

    @property
    def engine(self) -> EngineSettings:
        return EngineSettings()

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

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

    for name in ("engine", "storage", "google_sheets"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
