"""Application configuration management."""

import hashlib
import os
import secrets
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


# Per-process fallback when no encryption key exists yet
_ephemeral_session_secret: Optional[str] = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/calsync.db"

    # Encryption
    encryption_key_file: str = "/secrets/encryption.key"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Session
    session_secret_key: Optional[str] = None  # Derived from encryption key if not set
    session_expire_days: int = 7

    # Rate limiting
    rate_limit_per_minute: int = 60

    # Google OAuth client
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    oauth_state_ttl_minutes: int = 10

    # Sync settings
    sync_interval_minutes: int = 5
    auto_sync_cooldown_minutes: int = 15
    sync_lock_timeout_minutes: int = 10
    token_refresh_minutes: int = 30
    token_refresh_margin_minutes: int = 5
    fetch_timeout_seconds: float = 30.0
    sync_window_past_days: int = 7
    sync_window_future_months: int = 3
    remote_page_size: int = 250
    error_summary_limit: int = 5

    # Imports
    default_quest_title: str = "Calendar Imports"
    default_timezone: str = "UTC"
    user_agent: str = "calsync/1.0"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def google_oauth_configured() -> bool:
    """Whether OAuth client credentials are available."""
    settings = get_settings()
    return bool(settings.google_client_id and settings.google_client_secret)


def get_encryption_key() -> bytes:
    """Load encryption key from file."""
    settings = get_settings()
    key_file = settings.encryption_key_file

    if not os.path.exists(key_file):
        raise RuntimeError(f"Encryption key file not found at {key_file}")

    with open(key_file, "rb") as f:
        key = f.read()
        # Editors may append a newline; the key itself is binary
        while key and key[-1:] in (b"\n", b"\r"):
            key = key[:-1]

    if len(key) < 32:
        raise RuntimeError("Invalid encryption key: must be at least 32 bytes")

    return key


def get_session_secret() -> str:
    """Get session secret key, derived from encryption key if not set."""
    settings = get_settings()
    if settings.session_secret_key:
        return settings.session_secret_key

    try:
        key = get_encryption_key()
        return hashlib.sha256(key + b"session_secret").hexdigest()
    except RuntimeError:
        global _ephemeral_session_secret
        if _ephemeral_session_secret is None:
            _ephemeral_session_secret = secrets.token_urlsafe(32)
        return _ephemeral_session_secret
