"""
Environment configuration loader using Pydantic BaseSettings.

This module centralizes the environment configuration for Update Audit Core.
It provides type safety, validation, and automatic loading from environment
variables and .env files. Settings are validated once at startup so a bad
configuration fails fast with a clear error.

Values that the policy store persists (logging_enabled, retention_days) are
only defaults here: a stored policy value always wins.
"""

from typing import Optional

import structlog
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

SUPPORTED_DRIVERS = ("sqlite+aiosqlite://", "postgresql+psycopg://")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Priority order for loading values:
    1. Environment variables (highest priority)
    2. .env file
    3. Default values defined here
    """

    # ===== Application Settings =====
    app_env: str = Field(
        default="development",
        description="Application environment (development/staging/production/test)",
    )

    app_name: str = Field(
        default="Update Audit Core",
        description="Application name for logging and identification",
    )

    app_version: str = Field(default="0.1.0", description="Application version")

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)"
    )

    log_json: Optional[bool] = Field(
        default=None,
        description="Force JSON log output (None = JSON in staging/production)",
    )

    # ===== Database Configuration =====
    database_url: str = Field(
        default="sqlite+aiosqlite:///./update_audit.db",
        description="Async database URL (sqlite+aiosqlite:// or postgresql+psycopg://)",
    )

    database_pool_size: int = Field(
        default=5, description="Database connection pool size", ge=1, le=50
    )

    database_pool_timeout: int = Field(
        default=30,
        description="Database connection pool timeout in seconds",
        ge=1,
        le=300,
    )

    auto_create_tables: bool = Field(
        default=True,
        description="Create tables on startup (use Alembic migrations in production)",
    )

    # ===== Tenancy =====
    default_tenant_id: int = Field(
        default=1,
        description="Tenant (site) identifier stamped on log entries",
        ge=1,
        le=2**31 - 1,
    )

    # ===== Policy Defaults =====
    logging_enabled: bool = Field(
        default=True,
        description="Default for the logging_enabled policy when nothing is stored",
    )

    retention_days: int = Field(
        default=90,
        description="Default log retention in days when nothing is stored",
        ge=1,
        le=365,
    )

    # ===== Capture Configuration =====
    snapshot_ttl_hours: int = Field(
        default=24,
        description="Lifetime of durable version-before snapshots",
        ge=1,
        le=720,
    )

    trace_max_frames: int = Field(
        default=40,
        description="Maximum call-stack frames stored with a log entry",
        ge=1,
        le=200,
    )

    core_display_name: str = Field(
        default="WordPress",
        description="Display name of the core platform in log entries",
        min_length=1,
        max_length=100,
    )

    # ===== Query Configuration =====
    default_per_page: int = Field(
        default=50, description="Default page size for log queries", ge=1, le=200
    )

    max_per_page: int = Field(
        default=200, description="Hard cap on log query page size", ge=1, le=200
    )

    # ===== Validators =====

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Ensure app environment is valid."""
        valid_envs = ["development", "staging", "production", "test"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid app_env: {v}. Must be one of {valid_envs}")
        return v_lower

    @field_validator("database_url")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """
        Convert sync URLs to their async driver form.

        - postgresql:// becomes postgresql+psycopg://
        - sqlite:// becomes sqlite+aiosqlite://
        """
        url = v.strip()
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+psycopg://", 1)
        elif url.startswith("sqlite://"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)

        if not url.startswith(SUPPORTED_DRIVERS):
            raise ValueError(
                "DATABASE_URL must use one of the async drivers: "
                f"{', '.join(SUPPORTED_DRIVERS)}"
            )
        return url

    # ===== Pydantic Config =====

    model_config = SettingsConfigDict(
        env_file=".env",  # Load from .env file
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env variables
    )

    @property
    def is_sqlite(self) -> bool:
        """True when the configured store is SQLite."""
        return self.database_url.startswith("sqlite+aiosqlite://")

    def log_config(self) -> None:
        """Log configuration (with secrets masked)."""
        config_dict = self.model_dump()

        # Credentials live in the URL userinfo
        url = str(config_dict.get("database_url") or "")
        if "@" in url:
            config_dict["database_url"] = url.split("://")[0] + "://***@" + url.split("@")[-1]

        logger.info("Configuration loaded", **config_dict)

    def validate_required_for_production(self) -> None:
        """Additional validation for production environment."""
        if self.app_env == "production":
            errors = []

            if self.is_sqlite:
                errors.append("DATABASE_URL must point to PostgreSQL in production")

            if self.log_level == "DEBUG":
                logger.warning(
                    "DEBUG log level in production - consider using INFO or higher"
                )

            if errors:
                raise ValueError(
                    f"Production configuration errors: {'; '.join(errors)}"
                )


# ===== Global Settings Instance =====

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern).

    This ensures we only load and validate settings once per process.
    """
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
            _settings.log_config()
            _settings.validate_required_for_production()
            logger.info(
                "Settings loaded successfully",
                app_env=_settings.app_env,
                app_version=_settings.app_version,
            )
        except ValidationError as e:
            logger.error("Failed to load settings", errors=e.errors())
            raise

    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
