"""
Configuration settings for the TutorChat messaging backend.
Uses pydantic-settings for environment variable support.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional
import secrets
import os


def get_or_create_secret_key():
    """Get secret key from file or generate a new one."""
    secret_file = ".secret_key"
    if os.path.exists(secret_file):
        try:
            with open(secret_file, "r") as f:
                return f.read().strip()
        except OSError:
            pass

    key = secrets.token_urlsafe(32)
    try:
        with open(secret_file, "w") as f:
            f.write(key)
    except OSError:
        pass  # read-only fs, keep the key in memory only

    return key


class Settings(BaseSettings):
    """Application configuration settings."""

    # Application
    APP_NAME: str = "TutorChat"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    # resolved relative to this file (backend/tutorchat/config.py -> backend/tutorchat.db)
    _BASE_DIR: str = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    DATABASE_URL: str = f"sqlite+aiosqlite:///{os.path.join(_BASE_DIR, 'tutorchat.db')}"
    STORE_TIMEOUT_SECONDS: float = 10.0

    # Identity tokens
    SECRET_KEY: str = Field(default_factory=get_or_create_secret_key)
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 24 hours

    # Realtime channel
    REDIS_URL: Optional[str] = None
    RECONNECT_INITIAL_DELAY_SECONDS: float = 0.5
    RECONNECT_MAX_DELAY_SECONDS: float = 10.0
    RECONNECT_MAX_ATTEMPTS: int = 8

    # Messages
    EDIT_WINDOW_HOURS: int = 24
    MAX_MESSAGE_LENGTH: int = 10000
    MAX_THREAD_DEPTH: int = 5
    MESSAGE_PAGE_SIZE: int = 50
    MESSAGE_RATE_LIMIT: int = 60  # messages per window per sender
    MESSAGE_RATE_WINDOW_SECONDS: int = 60
    SNIPPET_LENGTH: int = 100

    # Typing presence
    TYPING_DEBOUNCE_SECONDS: float = 3.0
    TYPING_INACTIVITY_SECONDS: float = 3.0
    TYPING_TTL_SECONDS: float = 5.0

    # Attachments
    UPLOAD_DIR: str = os.path.join(_BASE_DIR, "uploads")
    STORAGE_BUCKET: str = "message-attachments"
    PUBLIC_BASE_URL: str = "http://localhost:6666"
    MAX_ATTACHMENT_SIZE: int = 10 * 1024 * 1024  # 10MB
    UPLOAD_CHUNK_SIZE: int = 256 * 1024
    UPLOAD_TIMEOUT_SECONDS: float = 60.0
    SIGNED_URL_TTL_SECONDS: int = 3600
    SIGNED_URL_REFRESH_MARGIN_SECONDS: int = 30
    ALLOWED_ATTACHMENT_TYPES: list = [
        "image/jpeg", "image/png", "image/gif", "image/webp",
        "application/pdf", "text/plain", "text/csv",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ]

    # Scroll heuristics (pixels)
    SCROLL_THRESHOLD_PX: int = 100

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 6666

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
