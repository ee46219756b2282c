"""Environment-driven settings for vault-gardener."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GardenerSettings(BaseSettings):
    """Runtime settings sourced from environment variables and an optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    webhook_url: str | None = Field(default=None, validation_alias="GARDENER_WEBHOOK_URL")
    log_level: str = Field(default="INFO", validation_alias="GARDENER_LOG_LEVEL")
    state_dir_name: str = Field(default=".gardener", validation_alias="GARDENER_DIR")
    verbose: bool = Field(default=False, validation_alias="GARDENER_VERBOSE")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "GARDENER_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("webhook_url", mode="before")
    @classmethod
    def _blank_webhook_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("state_dir_name")
    @classmethod
    def _validate_state_dir_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or "/" in normalized or normalized in {".", ".."}:
            raise ValueError("GARDENER_DIR must be a plain directory name")
        return normalized

    def state_dir(self, workdir: Path) -> Path:
        """Return the per-project state directory under ``workdir``."""

        return Path(workdir) / self.state_dir_name


@lru_cache(maxsize=1)
def get_settings() -> GardenerSettings:
    """Return cached settings instance."""

    return GardenerSettings()


__all__ = ["GardenerSettings", "get_settings"]
