import logging
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every value has a working default, so the reconciler runs against the
    public register with an in-memory cache out of the box.

    Optional:
    - REGISTER_BASE_URL: EPC register host (defaults to the GOV.UK service)
    - HOUSE_PRICES_BASE_URL: Host serving sold-price pages for address lookup
    - DATABASE_URL: PostgreSQL connection URL; enables the persistent property cache
    - NOTIFY_WEBHOOK_URL: Endpoint that receives each reconciled record as JSON
    - HTTP_TIMEOUT_SECONDS, REGISTER_PARSE_TIMEOUT_SECONDS, OCR_TIMEOUT_SECONDS
    - LOG_LEVEL
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Upstream hosts
    register_base_url: str = "https://find-energy-certificate.service.gov.uk"
    house_prices_base_url: str = "https://www.rightmove.co.uk"

    # Timeouts
    http_timeout_seconds: float = 30.0
    register_parse_timeout_seconds: float = 20.0
    ocr_timeout_seconds: float = 30.0

    # Persistence and notification - optional
    database_url: Optional[str] = None
    notify_webhook_url: Optional[str] = None

    log_level: str = "INFO"

    @field_validator("register_base_url", "house_prices_base_url")
    @classmethod
    def validate_base_url(cls, v: str, info) -> str:
        """Validate that upstream hosts are http(s) URLs."""
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} must be set and non-empty")
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"{info.field_name} must be an http(s) URL")
        return v.rstrip("/")

    @field_validator(
        "http_timeout_seconds", "register_parse_timeout_seconds", "ocr_timeout_seconds"
    )
    @classmethod
    def validate_timeout(cls, v: float, info) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate database URL format when one is given."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection URL")
        return v

    @field_validator("notify_webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("NOTIFY_WEBHOOK_URL must be an http(s) URL")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"LOG_LEVEL must be a logging level name, got {v!r}")
        return level


settings = Settings()
