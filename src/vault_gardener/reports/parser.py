"""Parse and reconcile ``run-report.json``."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Sequence

from ..fsutil import isoformat, utc_now
from ..project import PHASES
from .features import features_for_phase
from .schema import FEATURE_STATUSES, REPORT_VERSION, FeatureReport, ParsedReport, PhaseReport, ReportDiagnostics

REPORT_FILE = "run-report.json"


def parse_report(state_dir: Path, enabled_features: Iterable[str]) -> ParsedReport | None:
    """Read the agent's self-report and cross-check it against enabled features.

    Returns None when no report was written. Malformed content never raises:
    it is recorded as parse errors or validation warnings on the result.
    """

    report_path = Path(state_dir) / REPORT_FILE
    try:
        raw = report_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        return _empty_report(report_path, f"Unreadable report: {exc}")

    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        return _empty_report(report_path, f"Invalid JSON: {exc}")
    if not isinstance(document, dict):
        return _empty_report(report_path, "Report must be a JSON object")

    diagnostics = ReportDiagnostics(report_path=str(report_path))
    enabled = set(enabled_features)

    if document.get("version") != REPORT_VERSION:
        diagnostics.validation_warnings.append(f"Unexpected version: {document.get('version')}")
    timestamp = document.get("timestamp")
    if not timestamp or not isinstance(timestamp, str):
        diagnostics.validation_warnings.append("Missing timestamp")
        timestamp = ""

    raw_phases = document.get("phases")
    if not isinstance(raw_phases, list):
        diagnostics.parse_errors.append("phases must be an array")
        raw_phases = []

    phases = [
        phase
        for phase in (_reconcile_phase(item, enabled, diagnostics) for item in raw_phases)
        if phase is not None
    ]

    summary = document.get("summary")
    warnings = document.get("warnings")
    return ParsedReport(
        version=document.get("version"),
        timestamp=timestamp,
        phases=phases,
        summary=summary if isinstance(summary, str) else None,
        warnings=[str(item) for item in warnings] if isinstance(warnings, list) else None,
        diagnostics=diagnostics,
    )


def _empty_report(report_path: Path, error: str) -> ParsedReport:
    return ParsedReport(
        version=REPORT_VERSION,
        timestamp=isoformat(utc_now()),
        phases=[],
        diagnostics=ReportDiagnostics(report_path=str(report_path), parse_errors=[error]),
    )


def _reconcile_phase(item: Any, enabled: set[str], diagnostics: ReportDiagnostics) -> PhaseReport | None:
    if not isinstance(item, dict):
        diagnostics.validation_warnings.append(f"Unknown phase: {item!r}")
        return None

    name = item.get("phase")
    if name not in PHASES:
        diagnostics.validation_warnings.append(f"Unknown phase: {name}")
        return None

    raw_features = item.get("features")
    if not isinstance(raw_features, list):
        diagnostics.validation_warnings.append(f"{name}: features must be an array")
        return PhaseReport(phase=name, started=bool(item.get("started", True)), features=[])

    features = [_validate_feature(entry, name, diagnostics.validation_warnings) for entry in raw_features]

    expected = features_for_phase(name, enabled)
    reported = list(dict.fromkeys(feature.feature for feature in features))
    diagnostics.missing_features.extend(f"{name}/{key}" for key in expected if key not in reported)
    diagnostics.unexpected_features.extend(f"{name}/{key}" for key in reported if key not in expected)

    return PhaseReport(phase=name, started=bool(item.get("started", True)), features=features)


def _validate_feature(entry: Any, phase: str, warnings: list[str]) -> FeatureReport:
    payload = entry if isinstance(entry, dict) else {}
    feature = payload.get("feature")
    status = payload.get("status")
    reason = payload.get("reason")
    counts = payload.get("counts")
    notes = payload.get("notes")

    if not feature:
        warnings.append(f"{phase}: feature report missing 'feature' key")
    if status not in FEATURE_STATUSES:
        warnings.append(f'{phase}/{feature}: invalid status "{status}"')
    if status == "error":
        warnings.append(f"{phase}/{feature}: reported error: {reason or 'no reason given'}")
    if not isinstance(counts, dict):
        warnings.append(f"{phase}/{feature}: missing or invalid counts")
        counts = None

    return FeatureReport(
        feature=str(feature or ""),
        status=str(status or ""),
        reason=str(reason) if reason is not None else None,
        counts=counts,
        notes=str(notes) if notes is not None else None,
    )


def detect_stale_features(reports: Sequence[ParsedReport], threshold: int = 3) -> list[str]:
    """Feature keys skipped in every one of the ``threshold`` newest reports.

    ``reports`` must be ordered newest first. A key is stale only when it
    appears in each of those reports.
    """

    if threshold <= 0 or len(reports) < threshold:
        return []

    history: dict[str, list[list[str]]] = {}
    for report in reports[:threshold]:
        for key, statuses in report.feature_statuses().items():
            history.setdefault(key, []).append(statuses)

    return [
        key
        for key, per_report in history.items()
        if len(per_report) >= threshold and all(status == "skipped" for statuses in per_report for status in statuses)
    ]


__all__ = ["REPORT_FILE", "detect_stale_features", "parse_report"]
