"""Vault metrics collection and persistence."""

from .collector import (
    METRICS_DIR,
    PostMetrics,
    PreMetrics,
    WalkResult,
    WalkState,
    build_run_metrics,
    collect_post,
    collect_pre,
    count_intake,
    count_links,
    count_marked,
    count_relocated,
    iter_metric_files,
    read_metrics,
    walk_files,
    write_metrics,
)
from .format import format_markdown_table, format_summary

__all__ = [
    "METRICS_DIR",
    "PostMetrics",
    "PreMetrics",
    "WalkResult",
    "WalkState",
    "build_run_metrics",
    "collect_post",
    "collect_pre",
    "count_intake",
    "count_links",
    "count_marked",
    "count_relocated",
    "format_markdown_table",
    "format_summary",
    "iter_metric_files",
    "read_metrics",
    "walk_files",
    "write_metrics",
]
