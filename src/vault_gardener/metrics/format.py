"""Plain-text renderings of persisted run metrics."""

from __future__ import annotations

from typing import Any, Sequence


def format_summary(metrics: dict[str, Any]) -> str:
    """One-line outcome summary, e.g. ``Seed complete. 3 inbox items processed. (42s)``."""

    phase = str(metrics.get("phase", "run"))
    label = phase[:1].upper() + phase[1:]
    counts = metrics.get("metrics") or {}
    exit_code = metrics.get("exitCode", 0)

    parts = [f"{label} complete." if exit_code == 0 else f"{label} failed (exit {exit_code})."]

    details = []
    if counts.get("inbox_processed", 0) > 0:
        details.append(f"{counts['inbox_processed']} inbox items processed")
    if counts.get("links_added", 0) > 0:
        details.append(f"{counts['links_added']} links added")
    if counts.get("notes_moved", 0) > 0:
        details.append(f"{counts['notes_moved']} notes moved")
    if details:
        parts.append(", ".join(details) + ".")

    parts.append(f"({metrics.get('duration_seconds', 0)}s)")
    return " ".join(parts)


def format_markdown_table(records: Sequence[dict[str, Any]]) -> str:
    if not records:
        return "_No runs recorded._"

    lines = [
        "| Date | Phase | Duration | Inbox Processed | Links Added | Notes |",
        "|------|-------|----------|-----------------|-------------|-------|",
    ]
    for record in records:
        counts = record.get("metrics") or {}
        health = record.get("vault_health") or {}
        lines.append(
            f"| {record.get('date', '')} | {record.get('phase', '')} | {record.get('duration_seconds', 0)}s"
            f" | {counts.get('inbox_processed', 0)} | {counts.get('links_added', 0)}"
            f" | {health.get('total_notes', 0)} |"
        )
    return "\n".join(lines)


__all__ = ["format_markdown_table", "format_summary"]
