"""Daemon supervision and OS scheduler integration."""

from .daemon import (
    HEALTH_FILE,
    PID_FILE,
    DaemonHealth,
    DaemonSupervisor,
    InvalidCronError,
    TriggerOutcome,
    backoff_seconds,
    invoke_run,
    is_daemon_running,
    read_daemon_health,
    read_daemon_pid,
    start_daemon,
    stop_daemon,
    validate_cron,
    write_daemon_health,
    write_daemon_pid,
)
from .service_units import (
    cron_to_interval_seconds,
    cron_to_on_calendar,
    generate_launchd_plist,
    generate_systemd_unit,
    render_launchd_plist,
    render_systemd_units,
)

__all__ = [
    "DaemonHealth",
    "DaemonSupervisor",
    "HEALTH_FILE",
    "InvalidCronError",
    "PID_FILE",
    "TriggerOutcome",
    "backoff_seconds",
    "cron_to_interval_seconds",
    "cron_to_on_calendar",
    "generate_launchd_plist",
    "generate_systemd_unit",
    "invoke_run",
    "is_daemon_running",
    "read_daemon_health",
    "read_daemon_pid",
    "render_launchd_plist",
    "render_systemd_units",
    "start_daemon",
    "stop_daemon",
    "validate_cron",
    "write_daemon_health",
    "write_daemon_pid",
]
