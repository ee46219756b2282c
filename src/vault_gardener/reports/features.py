"""Static table of which phases run which optional features."""

from __future__ import annotations

from typing import Iterable

FEATURE_PHASE_MAP: dict[str, tuple[str, ...]] = {
    "memory": ("seed", "nurture", "tend"),
    "changelog": ("seed", "nurture", "tend"),
    "persona": ("seed", "nurture", "tend"),
    "this_time_last_year": ("seed",),
    "meeting_enhancement": ("seed",),
    "question_tracker": ("seed", "tend"),
    "commitment_tracker": ("seed", "nurture", "tend"),
    "tag_normalization": ("nurture",),
    "co_mention_network": ("nurture",),
    "knowledge_gaps": ("nurture",),
    "entity_auto_linking": ("nurture",),
    "backlink_context": ("nurture",),
    "transitive_links": ("nurture",),
    "social_content": ("tend",),
    "belief_trajectory": ("tend",),
    "theme_detection": ("tend",),
    "attention_allocation": ("tend",),
    "goal_tracking": ("tend",),
    "seasonal_patterns": ("tend",),
    "adaptive_batch_sizing": ("tend",),
    "enrichment_priority": ("tend",),
    "context_anchoring": ("tend",),
    "auto_summary": ("tend",),
}


def features_for_phase(phase: str, enabled: Iterable[str]) -> list[str]:
    """Enabled feature keys that belong to ``phase``, in table order."""

    enabled_set = set(enabled)
    return [key for key, phases in FEATURE_PHASE_MAP.items() if phase in phases and key in enabled_set]


__all__ = ["FEATURE_PHASE_MAP", "features_for_phase"]
