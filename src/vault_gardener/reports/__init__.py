"""Run report parsing, reconciliation and archiving."""

from .features import FEATURE_PHASE_MAP, features_for_phase
from .parser import REPORT_FILE, detect_stale_features, parse_report
from .schema import FeatureReport, ParsedReport, PhaseReport, ReportDiagnostics
from .store import (
    REPORTS_DIR,
    RunLogContext,
    archive_report,
    consume_report,
    read_latest_report,
    read_reports,
    render_run_log_entry,
    write_run_log,
)

__all__ = [
    "FEATURE_PHASE_MAP",
    "FeatureReport",
    "ParsedReport",
    "PhaseReport",
    "REPORTS_DIR",
    "REPORT_FILE",
    "ReportDiagnostics",
    "RunLogContext",
    "archive_report",
    "consume_report",
    "detect_stale_features",
    "features_for_phase",
    "parse_report",
    "read_latest_report",
    "read_reports",
    "render_run_log_entry",
    "write_run_log",
]
