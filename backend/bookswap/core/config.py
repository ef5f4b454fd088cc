"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Literal
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Bookswap Negotiation Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/bookswap.db"
    SQLITE_BUSY_TIMEOUT: float = 30.0  # seconds a writer waits for the lock

    # Notifications
    NOTIFICATION_TRANSPORT: Literal["log", "webhook"] = "log"
    NOTIFY_WEBHOOK_URL: str = ""
    NOTIFY_TIMEOUT: float = 5.0  # seconds
    MESSAGE_NOTIFY_DEBOUNCE_SECONDS: int = 300  # 5 minutes per conversation
    MESSAGE_PREVIEW_CHARS: int = 200
    FRONTEND_URL: str = "http://localhost:3000"

    # Negotiation limits
    MAX_MESSAGE_LENGTH: int = 5000
    LISTING_PAGE_LIMIT: int = 20

    # CORS - accepts comma-separated string or list
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from comma-separated string or list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"

    class Config:
        # Look for .env in project root first, then backend/.env
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Singleton instance
settings = Settings()
