"""Application configuration objects."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pydantic settings used to configure the application."""

    model_config = SettingsConfigDict(
        env_prefix="STOREFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(
        default="StoreFlow",
        description="Human friendly name for the service.",
    )
    environment: Literal["development", "test", "production"] = Field(
        default="development",
        description="Deployment environment flag used for logging.",
    )
    secret_key: str = Field(
        default="storeflow-secret-key",
        description="Flask session signing key.",
    )
    session_days: int = Field(default=14, ge=1)
    host: str = Field(default="127.0.0.1", description="Interface the development server binds to.")
    port: int = Field(default=5000, ge=1, le=65535)
    data_path: Path = Field(
        default=Path("storeflow_data.json"),
        description="JSON document holding products, transactions and the current user.",
    )
    sync_root: Optional[Path] = Field(
        default=None,
        description="Directory in which spreadsheet files may be connected for in-place sync.",
    )
    allowed_email_domain: str = Field(
        default="@cavitak.com",
        description="Only emails ending with this suffix may sign in.",
    )
    verification_code: str = Field(
        default="123456",
        description="Fixed one-time code issued by the simulated login.",
    )
    resend_cooldown_seconds: int = Field(default=30, ge=0)
    image_api_key: Optional[str] = Field(
        default=None,
        description="API key for the remote image-edit service.",
    )
    image_model: str = Field(default="gemini-2.5-flash-image")
    image_api_base: str = Field(
        default="https://generativelanguage.googleapis.com",
        description="Base URL of the image-edit service.",
    )
    image_timeout: float = Field(default=60.0, gt=0)
    log_level: str = Field(default="INFO")
    log_dir: Optional[Path] = Field(
        default=None,
        description="Directory for the rotating log file; console only when unset.",
    )

    @field_validator("allowed_email_domain")
    @classmethod
    def _validate_email_domain(cls, value: str) -> str:
        candidate = value.strip().lower()
        if not candidate.startswith("@") or len(candidate) < 2:
            raise ValueError("allowed_email_domain should look like '@example.com'")
        return candidate

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{value}'")
        return level


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of :class:`Settings`."""

    return Settings()


__all__ = ["Settings", "get_settings"]
