"""
Configuration management using Pydantic Settings.

All configuration values are loaded from environment variables
with sensible defaults where appropriate.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Repository root (where the .env file is located)
ROOT_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = ROOT_DIR / ".env"

# Load .env into environment for nested settings models
load_dotenv(ENV_FILE)


class AppSettings(BaseSettings):
    """Application-level configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="APP_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["development", "staging", "production"] = "development"
    name: str = "aihub"
    version: str = "1.0.0"
    debug: bool = False

    # API
    host: str = "0.0.0.0"
    port: int = 8090
    workers: int = 4


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="DB_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Full SQLAlchemy URL, takes precedence over the individual fields
    url: str = ""

    host: str = "localhost"
    port: int = 5432
    name: str = "aihub"
    user: str = "aihub"
    password: str = ""
    pool_size: int = 20
    max_overflow: int = 10

    @property
    def dsn(self) -> str:
        """Get async database DSN."""
        if self.url:
            return self.url
        auth_part = f"{self.user}:{self.password}@" if self.password else f"{self.user}@"
        return f"postgresql+asyncpg://{auth_part}{self.host}:{self.port}/{self.name}"

    @property
    def is_sqlite(self) -> bool:
        return self.dsn.startswith("sqlite")


class LogSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="LOG_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    level: str = "INFO"
    format: Literal["json", "text"] = "json"
    requests: bool = True


class GatewaySettings(BaseSettings):
    """Dispatch, rotation and cache configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="GATEWAY_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Outbound vendor calls
    vendor_timeout_seconds: float = 120.0
    vendor_connect_timeout_seconds: float = 10.0
    max_provider_retries: int = 5

    # Failed-provider cooldown
    provider_cooldown_seconds: int = 90
    provider_extended_cooldown_seconds: int = 180
    provider_extended_cooldown_failures: int = 3

    # Cache TTLs (seconds) and bounds
    credential_cache_ttl: int = 600
    provider_cache_ttl: int = 600
    model_rate_cache_ttl: int = 600
    rotation_cache_ttl: int = 300
    cache_max_entries: int = 50

    # Credential weights
    default_credential_weight: int = 100
    rate_limited_credential_weight: int = 10
    rate_limit_recovery_seconds: int = 180

    # Caller identity headers
    user_header: str = "X-User-DID"
    app_header: str = "X-App-DID"


class BillingSettings(BaseSettings):
    """Credit billing and payment service configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="BILLING_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    credit_based_billing_enabled: bool = False
    only_listed_models: bool = False
    base_price: float = 1.0
    credit_decimal_places: int = 10
    credit_cache_ttl: int = 300
    meter_name: str = "aihub_credit"
    meter_source: str = "AIHub"
    usage_report_throttle_seconds: float = 5.0

    # Payment service
    url: str = "http://localhost:8091"
    api_key: str = ""
    timeout_seconds: float = 10.0


class SecretSettings(BaseSettings):
    """Credential encryption configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="GATEWAY_SECRET_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    encryption_key: Optional[str] = None


class Settings(BaseSettings):
    """Main settings class that aggregates all configuration sections."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    log: LogSettings = Field(default_factory=LogSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    billing: BillingSettings = Field(default_factory=BillingSettings)
    secret: SecretSettings = Field(default_factory=SecretSettings)

    docs_enabled: bool = True
    dev_auto_reload: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
