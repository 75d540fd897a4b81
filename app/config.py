"""
Luna Assessment — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  ``get_settings()`` is cached so every call-site,
FastAPI dependencies included, shares one validated instance.

An empty ``GEMINI_API_KEY`` is a supported configuration: question
generation and narrative analysis then run entirely on the deterministic
pools and templates.  An empty ``REDIS_URL`` selects the in-process store.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Luna assessment service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Gemini LLM
    # ------------------------------------------------------------------ #
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL_PRIMARY: str = "gemini-3-pro-preview"
    GEMINI_MODEL_FALLBACK: str = "gemini-3-flash-preview"
    GEMINI_MODEL_STABLE: str = "gemini-2.5-flash"
    LLM_TIMEOUT_SECONDS: float = 15.0
    LLM_MAX_ATTEMPTS: int = 2

    # ------------------------------------------------------------------ #
    # Generation parameters
    # ------------------------------------------------------------------ #
    QUESTION_MAX_TOKENS: int = 8000
    QUESTION_TEMPERATURE: float = 0.7
    ANALYSIS_MAX_TOKENS: int = 4096
    ANALYSIS_TEMPERATURE: float = 0.7
    FOLLOW_UP_MAX_TOKENS: int = 200
    FOLLOW_UP_TEMPERATURE: float = 0.8

    # ------------------------------------------------------------------ #
    # Session storage – Redis, or in-process when REDIS_URL is empty
    # ------------------------------------------------------------------ #
    REDIS_URL: str = ""
    SESSION_TTL_DAYS: int = 7

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    REQUEST_TIMEOUT_SECONDS: float = 70.0

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def llm_enabled(self) -> bool:
        return bool(self.GEMINI_API_KEY.strip())

    @field_validator("LLM_TIMEOUT_SECONDS", "REQUEST_TIMEOUT_SECONDS")
    @classmethod
    def _timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Timeout must be positive, got {v}")
        return v

    @field_validator("SESSION_TTL_DAYS", "LLM_MAX_ATTEMPTS")
    @classmethod
    def _count_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Import this function anywhere you need access to configuration::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()
