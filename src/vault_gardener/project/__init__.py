"""Vault configuration models and loader exports."""

from .loader import CONFIG_FILE, ConfigLoadError, ConfigLoader, load_config
from .models import (
    FEATURE_KEYS,
    PHASES,
    RUN_PHASES,
    GardenerConfig,
    ProviderSettings,
    ResilienceConfig,
    resolve_executable,
    resolve_model,
    resolve_timeout,
)

__all__ = [
    "CONFIG_FILE",
    "ConfigLoadError",
    "ConfigLoader",
    "FEATURE_KEYS",
    "GardenerConfig",
    "PHASES",
    "ProviderSettings",
    "RUN_PHASES",
    "ResilienceConfig",
    "load_config",
    "resolve_executable",
    "resolve_model",
    "resolve_timeout",
]
