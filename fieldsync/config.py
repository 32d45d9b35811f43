"""Application configuration."""

import secrets
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    environment: str = "development"  # development, staging, production

    # Development mode (generates throwaway secrets) - MUST be False in production
    dev_mode: bool = False

    # Database (SQLite default is safe for dev; production must set a real connection string)
    database_url: str = "sqlite+aiosqlite:///./fieldsync.db"

    # HMAC secret for device credentials. No hardcoded default.
    # In dev_mode, a random value is generated at startup.
    device_token_secret: Optional[str] = None

    # Device credential lifecycle
    device_token_lifetime_days: int = 365
    # How long after expiry a credential may still be exchanged via /auth/refresh
    device_token_refresh_grace_days: int = 30

    # Bulk sync
    sync_max_batch_size: int = 100

    # Edit windows stamped on survey records at creation
    team_edit_window_hours: int = 24
    partner_edit_window_days: int = 15

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @model_validator(mode="after")
    def _set_dev_defaults(self) -> "Settings":
        """Generate random secrets in dev mode; require explicit secrets otherwise."""
        if self.dev_mode:
            if not self.device_token_secret:
                self.device_token_secret = secrets.token_hex(32)
        elif not self.device_token_secret:
            raise ValueError("Missing required secrets (set DEV_MODE=true for development): DEVICE_TOKEN_SECRET")
        return self

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
