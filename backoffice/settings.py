# ==== APPLICATION SETTINGS CONFIGURATION ==== #

"""
Application settings configuration for the back office billing core.

This module provides centralized configuration management using Pydantic Settings
with environment variable loading and validation for numbering, billing,
persistence and observability components.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


# ==== MAIN SETTINGS CLASS ==== #


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Provides configuration for database connections, series locking,
    document numbering strategy, billing defaults and observability
    with validation and type safety.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

    # --► CORE APPLICATION SETTINGS
    APP_ENV: str = "dev"
    SERVICE_NAME: str = "backoffice-billing"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_TO_FILES: bool = False

    # --► DATABASE CONFIGURATION
    DATABASE_URL: str
    DIRECT_URL: str | None = None

    # --► REDIS CONFIGURATION (ONLY FOR DISTRIBUTED SERIES LOCKS)
    REDIS_URL: str | None = None

    # --► OBSERVABILITY CONFIGURATION
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None
    OTEL_EXPORTER_OTLP_HEADERS: str | None = None
    OTEL_SERVICE_NAME: str | None = None
    OTEL_RESOURCE_ATTRIBUTES: str | None = None

    # --► DOCUMENT NUMBERING
    SEQUENCE_STRATEGY: str = "counter"  # counter|scan
    SEQUENCE_LOCK_BACKEND: str = "local"  # local|redis
    SEQUENCE_LOCK_TIMEOUT_SECONDS: int = 5
    SEQUENCE_MAX_ATTEMPTS: int = 5
    SEQUENCE_PAD_WIDTH: int = 3
    SEQUENCE_FALLBACK_DIGITS: int = 6

    # --► BILLING DEFAULTS
    SETUP_FEE_DEFAULT_EUR: float = 99.0
    DEFAULT_OVER_SPACE_RATE_EUR: float = 20.0
    OVER_SPACE_THRESHOLD_RATIO: float = 1.2
    PAID_OVER_SPACE_VALIDITY_DAYS: int = 30
    CHARGES_MAX_WRITE_ATTEMPTS: int = 5
    CHARGES_LOCK_CLOSED_PERIODS: bool = True

    # --► PROFORMA GENERATION
    PROFORMA_DUE_DAYS: int = 7
    PROFORMA_CLOSE_PERIODS: bool = True


# ==== GLOBAL SETTINGS INSTANCE ==== #


# Global settings instance for application-wide access
settings = Settings()


def get_settings() -> Settings:
    """
    Get global settings instance.

    Returns:
        Settings: Global application settings instance
    """
    return settings
