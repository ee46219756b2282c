from __future__ import annotations

import plistlib
import subprocess
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from vault_gardener.scheduler import (
    PID_FILE,
    DaemonHealth,
    DaemonSupervisor,
    InvalidCronError,
    TriggerOutcome,
    backoff_seconds,
    cron_to_interval_seconds,
    cron_to_on_calendar,
    generate_launchd_plist,
    generate_systemd_unit,
    read_daemon_health,
    render_systemd_units,
    stop_daemon,
    write_daemon_health,
    write_daemon_pid,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedInvoke:
    def __init__(self, *codes: int) -> None:
        self.codes = list(codes)
        self.calls = 0

    def __call__(self) -> int:
        self.calls += 1
        return self.codes.pop(0) if self.codes else 0


def make_supervisor(tmp_path: Path, invoke, clock=None, **kwargs) -> DaemonSupervisor:
    options = {"max_consecutive_failures": 2, "backoff_base_seconds": 60, "holder_id": 4242}
    options.update(kwargs)
    return DaemonSupervisor(tmp_path, "0 */4 * * *", invoke, clock=clock or FakeClock(), **options)


def trigger_and_wait(supervisor: DaemonSupervisor) -> TriggerOutcome:
    outcome = supervisor.on_trigger()
    assert supervisor.wait_for_run(5)
    return outcome


def test_invalid_cron_is_rejected_at_construction(tmp_path: Path) -> None:
    with pytest.raises(InvalidCronError):
        DaemonSupervisor(tmp_path, "every four hours", lambda: 0)
    with pytest.raises(InvalidCronError):
        DaemonSupervisor(tmp_path, "", lambda: 0)


def test_backoff_formula() -> None:
    assert backoff_seconds(4, 5, 60, 6) == 0
    assert backoff_seconds(5, 5, 60, 6) == 60
    assert backoff_seconds(7, 5, 60, 6) == 240
    assert backoff_seconds(50, 5, 60, 6) == 60 * 2**6


def test_failures_back_off_then_retry(tmp_path: Path) -> None:
    clock = FakeClock()
    invoke = ScriptedInvoke(1, 1, 1)
    supervisor = make_supervisor(tmp_path, invoke, clock)

    assert trigger_and_wait(supervisor) is TriggerOutcome.STARTED
    assert trigger_and_wait(supervisor) is TriggerOutcome.STARTED
    assert supervisor.health.consecutive_failures == 2
    assert supervisor.health.status == "errored"

    clock.advance(30)
    assert supervisor.on_trigger() is TriggerOutcome.SKIPPED_BACKOFF
    assert invoke.calls == 2
    assert supervisor.health.consecutive_failures == 2

    clock.advance(31)
    assert trigger_and_wait(supervisor) is TriggerOutcome.STARTED
    assert supervisor.health.consecutive_failures == 3

    clock.advance(61)
    assert supervisor.on_trigger() is TriggerOutcome.SKIPPED_BACKOFF

    clock.advance(60)
    assert trigger_and_wait(supervisor) is TriggerOutcome.STARTED
    health = read_daemon_health(tmp_path)
    assert health.consecutive_failures == 0
    assert health.status == "idle"
    assert health.last_failure_at is None
    assert health.holder_id == 4242


def test_overlapping_trigger_is_skipped(tmp_path: Path) -> None:
    release = threading.Event()

    def slow_invoke() -> int:
        release.wait(5)
        return 0

    supervisor = make_supervisor(tmp_path, slow_invoke)

    assert supervisor.on_trigger() is TriggerOutcome.STARTED
    assert supervisor.running
    assert read_daemon_health(tmp_path).status == "running"
    assert supervisor.on_trigger() is TriggerOutcome.SKIPPED_RUNNING

    release.set()
    assert supervisor.wait_for_run(5)
    assert not supervisor.running


def test_invoke_exception_counts_as_failure(tmp_path: Path) -> None:
    def broken() -> int:
        raise OSError("cannot spawn")

    supervisor = make_supervisor(tmp_path, broken)
    trigger_and_wait(supervisor)

    assert supervisor.health.consecutive_failures == 1
    assert supervisor.health.status == "errored"


def test_prior_failures_survive_restart(tmp_path: Path) -> None:
    clock = FakeClock()
    write_daemon_health(
        tmp_path,
        DaemonHealth(
            holder_id=1,
            last_check="2026-03-01T11:59:30.000Z",
            status="errored",
            consecutive_failures=5,
            last_failure_at="2026-03-01T11:59:30.000Z",
        ),
    )
    invoke = ScriptedInvoke()

    supervisor = make_supervisor(tmp_path, invoke, clock, max_consecutive_failures=5)

    assert supervisor.health.consecutive_failures == 5
    assert supervisor.on_trigger() is TriggerOutcome.SKIPPED_BACKOFF
    assert invoke.calls == 0


def test_shutdown_waits_for_run_and_writes_terminal_health(tmp_path: Path) -> None:
    finished = threading.Event()

    def invoke() -> int:
        time.sleep(0.2)
        finished.set()
        return 0

    supervisor = make_supervisor(tmp_path, invoke, shutdown_deadline_seconds=5)
    supervisor.start()
    supervisor.on_trigger()

    supervisor.shutdown()
    supervisor.shutdown()

    assert finished.is_set()
    assert read_daemon_health(tmp_path).status == "shutdown"
    assert supervisor.on_trigger() is TriggerOutcome.SKIPPED_SHUTDOWN


def test_health_beacon_rewrites_last_check(tmp_path: Path) -> None:
    supervisor = DaemonSupervisor(tmp_path, "0 */4 * * *", lambda: 0, health_interval_seconds=0.05)
    supervisor.start()
    try:
        first = read_daemon_health(tmp_path).last_check
        deadline = time.monotonic() + 5
        while read_daemon_health(tmp_path).last_check == first and time.monotonic() < deadline:
            time.sleep(0.02)
        assert read_daemon_health(tmp_path).last_check != first
    finally:
        supervisor.shutdown()


def test_serve_returns_after_shutdown_request(tmp_path: Path) -> None:
    supervisor = DaemonSupervisor(tmp_path, "0 0 1 1 *", lambda: 0)
    timer = threading.Timer(0.1, supervisor.request_shutdown)
    timer.start()

    supervisor.serve(install_signal_handlers=False)

    timer.join()
    assert read_daemon_health(tmp_path).status == "shutdown"


def test_next_fire_time_follows_cron(tmp_path: Path) -> None:
    supervisor = DaemonSupervisor(tmp_path, "*/15 * * * *", lambda: 0)
    after = datetime(2026, 3, 1, 12, 7, tzinfo=timezone.utc)

    fire = supervisor.next_fire_time(after)

    assert fire > after
    assert fire - after <= timedelta(minutes=15)
    assert fire.minute % 15 == 0


def test_stop_daemon_signals_and_removes_pid_file(tmp_path: Path) -> None:
    process = subprocess.Popen(["sleep", "30"])
    try:
        write_daemon_pid(tmp_path, process.pid)

        assert stop_daemon(tmp_path) == process.pid
        assert process.wait(5) != 0
        assert not (tmp_path / PID_FILE).exists()
        assert stop_daemon(tmp_path) is None
    finally:
        if process.poll() is None:
            process.kill()
            process.wait()


def test_cron_translation() -> None:
    assert cron_to_interval_seconds("0 */4 * * *") == 14400
    assert cron_to_interval_seconds("30 */2 * * *") == 7200
    assert cron_to_interval_seconds("0 9 * * 1") == 14400
    assert cron_to_on_calendar("5 */6 * * *") == "*-*-* 0/6:05:00"
    assert cron_to_on_calendar("0 9 * * 1") == "*-*-* 0/4:00:00"


def test_launchd_plist(tmp_path: Path) -> None:
    vault = tmp_path / "vault"
    path = generate_launchd_plist(vault, "0 */2 * * *", home=tmp_path / "home")

    payload = plistlib.loads(path.read_bytes())

    assert path.parent == tmp_path / "home" / "Library" / "LaunchAgents"
    assert payload["Label"].startswith("com.vault-gardener.")
    assert payload["StartInterval"] == 7200
    assert payload["WorkingDirectory"] == str(vault)
    assert payload["ProgramArguments"][-3:] == ["vault_gardener", "run", "all"]
    assert payload["StandardOutPath"] == str(vault / ".gardener" / "logs" / "launchd-stdout.log")
    assert payload["RunAtLoad"] is True


def test_systemd_units(tmp_path: Path) -> None:
    vault = tmp_path / "vault"
    service_path = generate_systemd_unit(vault, "0 */4 * * *", home=tmp_path / "home")
    units = render_systemd_units(vault, "0 */4 * * *")

    assert service_path.name == units.service_name
    assert (service_path.parent / units.timer_name).read_text(encoding="utf-8") == units.timer
    assert "Type=oneshot" in units.service
    assert f"WorkingDirectory={vault}" in units.service
    assert "OnCalendar=*-*-* 0/4:00:00" in units.timer
    assert "Persistent=true" in units.timer
    assert render_systemd_units(tmp_path / "other", "0 */4 * * *").service_name != units.service_name
