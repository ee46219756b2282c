"""Configuration loading utilities."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import GardenerError
from .models import GardenerConfig

CONFIG_FILE = "config.yaml"
BACKUP_SUFFIX = ".bak"

logger = logging.getLogger(__name__)


class ConfigLoadError(GardenerError):
    """Raised when the vault configuration cannot be read or validated."""


class ConfigLoader:
    """Loads the resolved vault configuration from ``<state_dir>/config.yaml``."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)

    @property
    def path(self) -> Path:
        return self._state_dir / CONFIG_FILE

    @property
    def backup_path(self) -> Path:
        return self._state_dir / (CONFIG_FILE + BACKUP_SUFFIX)

    def load(self) -> GardenerConfig:
        """Load and validate the configuration.

        Falls back to ``config.yaml.bak`` when the primary file is missing or
        unparseable.
        """

        errors: list[str] = []
        for candidate in (self.path, self.backup_path):
            if not candidate.exists():
                continue
            try:
                document = yaml.safe_load(candidate.read_text(encoding="utf-8"))
            except (OSError, yaml.YAMLError) as exc:
                errors.append(f"Failed to read {candidate}: {exc}")
                continue

            try:
                config = GardenerConfig.model_validate(document or {})
            except ValidationError as exc:
                errors.append(f"Config validation error in {candidate}: {exc}")
                continue

            if candidate == self.backup_path:
                logger.warning("Config restored from backup", extra={"path": str(candidate)})
            return config

        if errors:
            raise ConfigLoadError("; ".join(errors))
        raise ConfigLoadError(
            f"No {CONFIG_FILE} found in {self._state_dir}. Run `vault-gardener init` first."
        )


def load_config(state_dir: Path) -> GardenerConfig:
    """Convenience wrapper for loading the configuration of one state directory."""

    return ConfigLoader(state_dir).load()


__all__ = ["CONFIG_FILE", "ConfigLoadError", "ConfigLoader", "load_config"]
