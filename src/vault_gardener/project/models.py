"""Resolved vault configuration models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ProviderName = Literal["claude", "codex", "gemini"]
Tier = Literal["power", "fast"]

PHASES: tuple[str, ...] = ("seed", "nurture", "tend")
RUN_PHASES: tuple[str, ...] = (*PHASES, "all")

FEATURE_KEYS: tuple[str, ...] = (
    "memory",
    "entity_auto_linking",
    "question_tracker",
    "context_anchoring",
    "meeting_enhancement",
    "auto_summary",
    "backlink_context",
    "transitive_links",
    "co_mention_network",
    "belief_trajectory",
    "theme_detection",
    "attention_allocation",
    "knowledge_gaps",
    "seasonal_patterns",
    "goal_tracking",
    "commitment_tracker",
    "this_time_last_year",
    "tag_normalization",
    "persona",
    "changelog",
    "adaptive_batch_sizing",
    "enrichment_priority",
    "social_content",
    "todo_lifecycle",
)


def default_features() -> dict[str, bool]:
    return {key: True for key in FEATURE_KEYS}


class ProviderSettings(BaseModel):
    """Model selection and limits for one agent CLI."""

    power_model: str = Field(..., description="Model used for the power tier.")
    fast_model: str = Field(..., description="Model used for the fast tier.")
    timeout: int = Field(default=600, ge=1, description="Wall-clock limit for one run, in seconds.")
    max_turns: int | None = Field(default=None, ge=1)
    executable: str | None = Field(
        default=None,
        description="Override for the executable name or path; defaults to the provider name.",
    )


class ResilienceConfig(BaseModel):
    """Thresholds for the run-coordination layer."""

    queue_enabled: bool = True
    queue_max_size: int = Field(default=10, ge=1)
    queue_max_age_hours: float = Field(default=24, gt=0)
    metrics_timeout_seconds: float = Field(default=30, gt=0)
    metrics_max_files: int = Field(default=50_000, ge=1)
    lock_heartbeat_interval_seconds: float = Field(default=30, gt=0)
    lock_stale_threshold_seconds: float = Field(default=90, gt=0)
    provider_kill_grace_seconds: float = Field(default=10, ge=0)
    log_max_size_mb: float = Field(default=10, gt=0)
    log_max_backups: int = Field(default=3, ge=1)
    daemon_max_consecutive_failures: int = Field(default=5, ge=1)
    daemon_backoff_base_seconds: float = Field(default=60, gt=0)
    daemon_backoff_max_exponent: int = Field(default=6, ge=0)
    daemon_health_interval_seconds: float = Field(default=60, gt=0)
    daemon_shutdown_deadline_seconds: float = Field(default=30, ge=0)
    vault_quiet_seconds: float = Field(default=30, ge=0)
    preflight_enabled: bool = True
    preflight_root_timeout_seconds: float = Field(default=5, gt=0)
    sync_scan_max_files: int = Field(default=10_000, ge=1)
    sync_scan_timeout_seconds: float = Field(default=5, gt=0)
    min_free_disk_mb: float = Field(default=100, ge=0)


class ScheduleConfig(BaseModel):
    enabled: bool = False
    cron: str = "0 */4 * * *"


class MarkerConfig(BaseModel):
    """Text markers counted by the metrics collector."""

    status: str = "status: seed"
    status_head_lines: int = Field(default=10, ge=1)
    link: str = "[["


class GardenerConfig(BaseModel):
    """Configuration consumed by the coordination layer."""

    version: int = 1
    provider: ProviderName = "claude"
    tier: Tier = "power"
    folders: dict[str, str] = Field(default_factory=lambda: {"inbox": "00-inbox"})
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    claude: ProviderSettings = Field(
        default_factory=lambda: ProviderSettings(
            power_model="opus", fast_model="sonnet", timeout=600, max_turns=50
        )
    )
    codex: ProviderSettings = Field(
        default_factory=lambda: ProviderSettings(
            power_model="gpt-5.3-codex", fast_model="gpt-5.3-codex-spark", timeout=600
        )
    )
    gemini: ProviderSettings = Field(
        default_factory=lambda: ProviderSettings(
            power_model="gemini-3.1-pro-preview", fast_model="gemini-3-flash-preview", timeout=600
        )
    )
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    features: dict[str, bool] = Field(default_factory=default_features)
    markers: MarkerConfig = Field(default_factory=MarkerConfig)

    @field_validator("features", mode="before")
    @classmethod
    def _merge_feature_defaults(cls, value: Any):
        if value is None:
            return default_features()
        if not isinstance(value, dict):
            raise TypeError("features must be a mapping of feature name to boolean")
        return {**default_features(), **value}

    @field_validator("folders", mode="before")
    @classmethod
    def _ensure_inbox_folder(cls, value: Any):
        if value is None:
            return {"inbox": "00-inbox"}
        if not isinstance(value, dict):
            raise TypeError("folders must be a mapping")
        return {"inbox": "00-inbox", **value}

    @property
    def inbox_folder(self) -> str:
        return self.folders["inbox"]

    def provider_settings(self, name: str | None = None) -> ProviderSettings:
        return getattr(self, name or self.provider)

    def enabled_features(self) -> set[str]:
        return {key for key, enabled in self.features.items() if enabled}


def resolve_model(config: GardenerConfig) -> str:
    """Return the model name for the configured provider and tier."""

    settings = config.provider_settings()
    return settings.power_model if config.tier == "power" else settings.fast_model


def resolve_timeout(config: GardenerConfig) -> int:
    return config.provider_settings().timeout


def resolve_executable(config: GardenerConfig) -> str:
    return config.provider_settings().executable or config.provider


__all__ = [
    "FEATURE_KEYS",
    "GardenerConfig",
    "MarkerConfig",
    "PHASES",
    "ProviderName",
    "ProviderSettings",
    "RUN_PHASES",
    "ResilienceConfig",
    "ScheduleConfig",
    "Tier",
    "default_features",
    "resolve_executable",
    "resolve_model",
    "resolve_timeout",
]
