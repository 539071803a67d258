"""
Application configuration using 12-factor environment variables.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Relay and chat-session settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="V-Chats Relay")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    app_origin: str = Field(
        default="http://localhost:5173",
        description="Origin of the chat web client, used to build deep links",
    )

    # Database
    database_url: str = Field(default="sqlite:///./data/vchats.db")

    # Push relay
    relay_secret: Optional[str] = Field(
        default=None, description="HMAC-SHA256 secret for POST /api/push/send"
    )
    vapid_public_key: Optional[str] = Field(default=None)
    vapid_private_key: Optional[str] = Field(default=None)
    vapid_claims_email: str = Field(default="mailto:admin@localhost")
    push_ttl: int = Field(default=60, ge=0)

    # Delivery and notifications
    seen_debounce_seconds: float = Field(default=0.1, ge=0)
    notification_preview_length: int = Field(default=100, ge=1)
    chat_preview_length: int = Field(default=40, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    @property
    def is_relay_secret_configured(self) -> bool:
        return bool(self.relay_secret)

    @property
    def is_vapid_configured(self) -> bool:
        """Both halves of the VAPID key pair must be present to sign pushes."""
        return bool(self.vapid_public_key and self.vapid_private_key)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
