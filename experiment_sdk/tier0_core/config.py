"""
experiment_sdk.tier0_core.config
─────────────────────────────────
Typed engine settings, layered .env → environment variables. Bad values
fail when the settings are first loaded rather than on the first
assignment request.

The winner threshold and confidence cap are fixed constants of the results
analyzer, not settings.

Minimal stack: pydantic-settings + python-dotenv
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

Environment = Literal["development", "staging", "production", "test"]


class ExperimentsConfig(BaseSettings):
    """Every field is read from the env var named by its alias."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="experiments", alias="APP_NAME")
    environment: Environment = Field(default="development", alias="APP_ENV")

    # ── Store backend ─────────────────────────────────────────────────────────
    # Unknown backends are reported by the store factory, not here.
    store_backend: str = Field(default="memory", alias="EXPERIMENTS_STORE_BACKEND")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./experiments.db",
        alias="DATABASE_URL",
    )
    database_pool_size: int = Field(default=5, ge=1, alias="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=10, ge=0, alias="DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # ── Engine logs ───────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="EXPERIMENTS_LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", alias="EXPERIMENTS_LOG_FORMAT")

    @field_validator("environment", "store_backend", "log_format", mode="before")
    @classmethod
    def normalise(cls, v: object) -> object:
        return v.strip().lower() if isinstance(v, str) else v

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def uses_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache(maxsize=1)
def get_config() -> ExperimentsConfig:
    """
    Load settings once per process.
    Tests call _reset_config() after changing env vars.
    """
    return ExperimentsConfig()


def _reset_config() -> None:
    get_config.cache_clear()


__all__ = ["Environment", "ExperimentsConfig", "get_config"]
