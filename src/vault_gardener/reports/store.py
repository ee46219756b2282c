"""Report archive and the human-readable gardening log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from ..fsutil import (
    append_json_array,
    atomic_write_text,
    local_date,
    local_time,
    parse_timestamp,
    read_json_array_dir,
    utc_now,
)
from ..metrics import PreMetrics
from .parser import REPORT_FILE
from .schema import FeatureReport, ParsedReport

REPORTS_DIR = "reports"
LOGS_DIR = "logs"

_STATUS_MARKS = {"executed": "ok", "skipped": "skip", "error": "FAIL"}


def _report_date(report: ParsedReport) -> str:
    # Local calendar day, matching the metrics files and the retention cutoff.
    return local_date(parse_timestamp(report.timestamp))


def archive_report(state_dir: Path, report: ParsedReport) -> Path:
    """Append ``report`` to ``reports/<date>.json`` keyed by its own timestamp."""

    path = Path(state_dir) / REPORTS_DIR / f"{_report_date(report)}.json"
    append_json_array(path, report.to_json())
    return path


def read_reports(state_dir: Path, days: int = 30) -> list[ParsedReport]:
    """Archived reports from the last ``days`` days, newest first."""

    reports: list[ParsedReport] = []
    for item in read_json_array_dir(Path(state_dir) / REPORTS_DIR, days):
        try:
            reports.append(ParsedReport.model_validate(item))
        except ValidationError:
            continue
    return sorted(reports, key=lambda report: report.timestamp, reverse=True)


def read_latest_report(state_dir: Path) -> ParsedReport | None:
    reports = read_reports(state_dir, days=7)
    return reports[0] if reports else None


def consume_report(state_dir: Path) -> bool:
    """Remove the processed ``run-report.json`` so it is never archived twice."""

    try:
        (Path(state_dir) / REPORT_FILE).unlink()
    except FileNotFoundError:
        return False
    return True


@dataclass(slots=True)
class RunLogContext:
    phase: str
    provider: str
    model: str
    duration_seconds: int
    pre: PreMetrics | None = None
    post: PreMetrics | None = None
    exit_code: int = 0


def _delta(label: str, before: int, after: int) -> str:
    diff = after - before
    sign = "+" if diff >= 0 else ""
    return f"- {label}: {before:,} -> {after:,} ({sign}{diff})"


def _vault_health(ctx: RunLogContext) -> list[str]:
    if ctx.pre is None or ctx.post is None:
        return ["- Metrics unavailable for this run"]
    return [
        _delta("Notes", ctx.pre.total_item_count, ctx.post.total_item_count),
        _delta("Inbox", ctx.pre.intake_item_count, ctx.post.intake_item_count),
        _delta("Seed", ctx.pre.marked_item_count, ctx.post.marked_item_count),
    ]


def _feature_details(feature: FeatureReport) -> str:
    if feature.status in ("skipped", "error") and feature.reason:
        return f"{feature.status}: {feature.reason}"
    if feature.notes:
        return feature.notes
    if not feature.counts:
        return feature.status
    return ", ".join(f"{value} {key.replace('_', ' ')}" for key, value in feature.counts.items())


def render_run_log_entry(report: ParsedReport | None, ctx: RunLogContext, now: datetime | None = None) -> str:
    moment = now or utc_now()
    title = ctx.phase[:1].upper() + ctx.phase[1:]
    heading = f"## {local_time(moment)} {title} ({ctx.provider}/{ctx.model}, {ctx.duration_seconds}s)"
    if ctx.exit_code != 0:
        heading += f" exit {ctx.exit_code}"

    if report is None:
        lines = [heading, "", "> No feature report: the agent did not write run-report.json", ""]
        lines += ["### Vault Health", *_vault_health(ctx), "", "---"]
        return "\n".join(lines)

    diagnostics = report.diagnostics
    if diagnostics.parse_errors:
        heading += " (report errors)"
    lines = [heading, ""]

    for phase in report.phases:
        if len(report.phases) > 1:
            lines += [f"### {phase.phase[:1].upper() + phase.phase[1:]} Phase", ""]
        if phase.features:
            lines += ["### Features", "| Feature | Status | Details |", "|---------|--------|---------|"]
            for feature in phase.features:
                mark = _STATUS_MARKS.get(feature.status, "?")
                lines.append(f"| {feature.feature} | {mark} | {_feature_details(feature)} |")
            lines.append("")

    lines += ["### Vault Health", *_vault_health(ctx), ""]

    warnings = [
        *diagnostics.parse_errors,
        *diagnostics.validation_warnings,
        *(f"{key} enabled but not reported" for key in diagnostics.missing_features),
    ]
    if warnings:
        lines.append("### Warnings")
        lines += [f"- {warning}" for warning in warnings]
        lines.append("")

    if report.summary:
        lines += [f"> {report.summary}", ""]

    lines.append("---")
    return "\n".join(lines)


def write_run_log(
    state_dir: Path,
    report: ParsedReport | None,
    ctx: RunLogContext,
    *,
    now: datetime | None = None,
) -> Path:
    """Append a markdown entry to ``logs/<YYYY>/<YYYY-MM-DD>.md``."""

    moment = now or utc_now()
    date = local_date(moment)
    path = Path(state_dir) / LOGS_DIR / date[:4] / f"{date}.md"

    try:
        existing = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        existing = ""

    entry = render_run_log_entry(report, ctx, moment)
    content = f"{existing}\n{entry}\n" if existing else f"# Gardening Log: {date}\n\n{entry}\n"
    atomic_write_text(path, content)
    return path


__all__ = [
    "REPORTS_DIR",
    "RunLogContext",
    "archive_report",
    "consume_report",
    "read_latest_report",
    "read_reports",
    "render_run_log_entry",
    "write_run_log",
]
