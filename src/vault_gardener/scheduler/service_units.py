"""launchd and systemd unit generation for OS-managed schedules."""

from __future__ import annotations

import hashlib
import plistlib
import re
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path

from ..runlog import LOG_DIR

DEFAULT_INTERVAL_HOURS = 4
_HOUR_STEP = re.compile(r"^\*/(\d+)$")


@dataclass(slots=True)
class SystemdUnits:
    service_name: str
    service: str
    timer_name: str
    timer: str


def vault_hash(vault_path: Path) -> str:
    """Short stable suffix that keeps unit names unique per vault."""

    return hashlib.sha256(str(vault_path).encode("utf-8")).hexdigest()[:8]


def _hour_step(cron_expression: str) -> int | None:
    parts = cron_expression.split()
    if len(parts) < 2:
        return None
    match = _HOUR_STEP.match(parts[1])
    if not match or int(match.group(1)) < 1:
        return None
    return int(match.group(1))


def cron_to_interval_seconds(cron_expression: str) -> int:
    """``0 */4 * * *`` becomes 14400; anything else falls back to four hours."""

    return (_hour_step(cron_expression) or DEFAULT_INTERVAL_HOURS) * 3600


def cron_to_on_calendar(cron_expression: str) -> str:
    step = _hour_step(cron_expression)
    if step is None:
        return f"*-*-* 0/{DEFAULT_INTERVAL_HOURS}:00:00"
    minute = cron_expression.split()[0]
    minute = minute.zfill(2) if minute.isdigit() else "00"
    return f"*-*-* 0/{step}:{minute}:00"


def program_arguments(phase: str = "all") -> list[str]:
    return [sys.executable, "-m", "vault_gardener", "run", phase]


def launchd_label(vault_path: Path) -> str:
    return f"com.vault-gardener.{vault_hash(vault_path)}"


def render_launchd_plist(vault_path: Path, cron_expression: str, state_dir_name: str = ".gardener") -> bytes:
    vault_path = Path(vault_path)
    log_dir = vault_path / state_dir_name / LOG_DIR
    payload = {
        "Label": launchd_label(vault_path),
        "ProgramArguments": program_arguments(),
        "WorkingDirectory": str(vault_path),
        "StartInterval": cron_to_interval_seconds(cron_expression),
        "StandardOutPath": str(log_dir / "launchd-stdout.log"),
        "StandardErrorPath": str(log_dir / "launchd-stderr.log"),
        "RunAtLoad": True,
    }
    return plistlib.dumps(payload)


def render_systemd_units(vault_path: Path, cron_expression: str, state_dir_name: str = ".gardener") -> SystemdUnits:
    vault_path = Path(vault_path)
    log_dir = vault_path / state_dir_name / LOG_DIR
    name = f"vault-gardener-{vault_hash(vault_path)}"
    service = (
        "[Unit]\n"
        "Description=Vault Gardener vault maintenance\n"
        "After=network.target\n"
        "\n"
        "[Service]\n"
        "Type=oneshot\n"
        f"WorkingDirectory={vault_path}\n"
        f"ExecStart={shlex.join(program_arguments())}\n"
        f"StandardOutput=append:{log_dir / 'systemd.log'}\n"
        f"StandardError=append:{log_dir / 'systemd-error.log'}\n"
        "\n"
        "[Install]\n"
        "WantedBy=default.target\n"
    )
    timer = (
        "[Unit]\n"
        "Description=Vault Gardener Timer\n"
        "\n"
        "[Timer]\n"
        f"OnCalendar={cron_to_on_calendar(cron_expression)}\n"
        "Persistent=true\n"
        "\n"
        "[Install]\n"
        "WantedBy=timers.target\n"
    )
    return SystemdUnits(
        service_name=f"{name}.service",
        service=service,
        timer_name=f"{name}.timer",
        timer=timer,
    )


def generate_launchd_plist(
    vault_path: Path,
    cron_expression: str,
    *,
    state_dir_name: str = ".gardener",
    home: Path | None = None,
) -> Path:
    """Write the LaunchAgent plist and return its path."""

    agents = (home or Path.home()) / "Library" / "LaunchAgents"
    agents.mkdir(parents=True, exist_ok=True)
    path = agents / f"{launchd_label(Path(vault_path))}.plist"
    path.write_bytes(render_launchd_plist(vault_path, cron_expression, state_dir_name))
    return path


def generate_systemd_unit(
    vault_path: Path,
    cron_expression: str,
    *,
    state_dir_name: str = ".gardener",
    home: Path | None = None,
) -> Path:
    """Write the user service and timer; returns the service path."""

    unit_dir = (home or Path.home()) / ".config" / "systemd" / "user"
    unit_dir.mkdir(parents=True, exist_ok=True)
    units = render_systemd_units(vault_path, cron_expression, state_dir_name)
    service_path = unit_dir / units.service_name
    service_path.write_text(units.service, encoding="utf-8")
    (unit_dir / units.timer_name).write_text(units.timer, encoding="utf-8")
    return service_path


__all__ = [
    "SystemdUnits",
    "cron_to_interval_seconds",
    "cron_to_on_calendar",
    "generate_launchd_plist",
    "generate_systemd_unit",
    "launchd_label",
    "render_launchd_plist",
    "render_systemd_units",
    "vault_hash",
]
