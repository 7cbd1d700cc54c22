"""Application configuration models."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


REPO_ROOT = Path(__file__).resolve().parents[2]


class ProcessorSettings(BaseModel):
    """Settings for the external AI processor webhook."""

    url: str = Field(default="http://127.0.0.1:5678/webhook/chatprincipal", description="Processor webhook URL")
    secret: Optional[str] = Field(default=None, description="Bearer secret sent to the processor")
    callback_secret: Optional[str] = Field(
        default=None,
        description="Shared secret expected on asynchronous reply callbacks",
    )
    timeout_seconds: float = Field(default=110.0, gt=0)


class AuthSettings(BaseModel):
    """Settings for verifying identity-provider access tokens."""

    jwt_secret: str = Field(default="chatpsi-development-secret-change-me")
    algorithm: str = Field(default="HS256")
    audience: Optional[str] = Field(default="authenticated")


class UploadSettings(BaseModel):
    """Settings for attachment uploads."""

    max_bytes: int = Field(default=25 * 1024 * 1024, gt=0)
    bucket: str = Field(default="chat-uploads")
    public_base_url: str = Field(default="http://127.0.0.1:8000/media")


class ChatSettings(BaseModel):
    """Timings used by the client-side chat session."""

    response_timeout_seconds: float = Field(default=120.0, gt=0)
    typing_timeout_seconds: float = Field(default=120.0, gt=0)
    reconnect_delay_seconds: float = Field(default=5.0, gt=0)
    reconnect_warn_after: int = Field(default=3, ge=1, description="Failed reconnects before the user is told")
    request_timeout_seconds: float = Field(default=130.0, gt=0)


class AppSettings(BaseSettings):
    """Top-level settings entry point."""

    model_config = SettingsConfigDict(
        env_prefix="CHATPSI_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    processor: ProcessorSettings = ProcessorSettings()
    auth: AuthSettings = AuthSettings()
    uploads: UploadSettings = UploadSettings()
    chat: ChatSettings = ChatSettings()
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy async URL; overrides database_path")
    database_path: Path = Field(default=REPO_ROOT / "backend" / "data" / "chatpsi.db")
    media_root: Path = Field(default=REPO_ROOT / "backend" / "data" / "media")
    log_level: str = Field(default="INFO")


_settings_instance: AppSettings | None = None


def get_settings() -> AppSettings:
    """Singleton accessor for settings."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = AppSettings()
    return _settings_instance


def reset_settings() -> None:
    """Drop the cached settings so the next access re-reads the environment."""
    global _settings_instance
    _settings_instance = None
