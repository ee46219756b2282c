"""Models for the run report written by the agent CLI."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

REPORT_VERSION = 1
FEATURE_STATUSES = ("executed", "skipped", "error")


class FeatureReport(BaseModel):
    """Outcome of one optional feature inside a phase."""

    model_config = ConfigDict(extra="allow")

    feature: str = ""
    status: str = ""
    reason: str | None = None
    counts: dict[str, Any] | None = None
    notes: str | None = None


class PhaseReport(BaseModel):
    model_config = ConfigDict(extra="allow")

    phase: str
    started: bool = True
    features: list[FeatureReport] = Field(default_factory=list)


class ReportDiagnostics(BaseModel):
    """Findings recorded while parsing and reconciling a report."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    report_path: str = ""
    parse_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)
    missing_features: list[str] = Field(default_factory=list)
    unexpected_features: list[str] = Field(default_factory=list)


class ParsedReport(BaseModel):
    """A run report together with its ``_parsed`` diagnostics block."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    version: Any = REPORT_VERSION
    timestamp: str = ""
    phases: list[PhaseReport] = Field(default_factory=list)
    summary: str | None = None
    warnings: list[str] | None = None
    diagnostics: ReportDiagnostics = Field(default_factory=ReportDiagnostics, alias="_parsed")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def feature_statuses(self) -> dict[str, list[str]]:
        """Map ``phase/feature`` keys to every status reported for them."""

        statuses: dict[str, list[str]] = {}
        for phase in self.phases:
            for feature in phase.features:
                statuses.setdefault(f"{phase.phase}/{feature.feature}", []).append(feature.status)
        return statuses


__all__ = [
    "FEATURE_STATUSES",
    "FeatureReport",
    "ParsedReport",
    "PhaseReport",
    "REPORT_VERSION",
    "ReportDiagnostics",
]
