"""
Application settings, loaded from environment variables and .env
"""

import logging
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    """Central configuration. Immutable once loaded."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", frozen=True
    )

    # --- Supabase ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # --- Gemini (OpenAI-compatible endpoint) ---
    GEMINI_API_KEY: SecretStr = SecretStr("")
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    GEMINI_MODEL: str = "gemini-2.5-flash"

    # --- Gating ---
    MAINTENANCE_MODE: bool = False
    CHAT_COMING_SOON: bool = Field(
        default=False,
        validation_alias=AliasChoices("NEXT_PUBLIC_CHAT_COMING_SOON", "CHAT_COMING_SOON"),
    )
    FREE_DAILY_MESSAGES: int = 10

    # --- Site / session ---
    SITE_URL: str = Field(
        default="",
        validation_alias=AliasChoices("NEXT_PUBLIC_SITE_URL", "SITE_URL"),
    )
    SESSION_COOKIE_NAME: str = "sb-access-token"
    REFRESH_COOKIE_NAME: str = "sb-refresh-token"
    COOKIE_SECURE: bool = True

    # --- Uploads ---
    UPLOAD_DIR: str = "uploads"
    MAX_UPLOAD_BYTES: int = 50 * 1024 * 1024

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "Settings":
        log = logging.getLogger("app.config")
        if not self.SUPABASE_URL:
            log.warning("SUPABASE_URL is empty; authentication and storage calls will fail.")
        if not self.supabase_key:
            log.warning(
                "No Supabase key configured (SUPABASE_SERVICE_ROLE_KEY / SUPABASE_ANON_KEY)."
            )
        return self

    @property
    def supabase_key(self) -> str:
        """Service-role key when present, otherwise the anon key."""
        return (
            self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value()
            or self.SUPABASE_ANON_KEY.get_secret_value()
        )

    def site_url(self, path: str) -> str:
        """Absolute URL for *path* on SITE_URL, or *path* itself when unset."""
        if not self.SITE_URL:
            return path
        return self.SITE_URL.rstrip("/") + path


@lru_cache
def get_settings() -> Settings:
    return Settings()
