"""Cron-driven daemon that triggers one-shot gardening runs.

The supervisor never runs pipeline logic itself. Each trigger launches one
``vault-gardener run`` process through ``invoke`` on a worker thread, and the
supervisor only tracks whether that process is still going and how often it
failed. Repeated failures back off exponentially from the last failure time.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from croniter import croniter

from ..config import GardenerSettings, get_settings
from ..errors import GardenerError
from ..fsutil import atomic_write_json, atomic_write_text, isoformat, parse_timestamp, pid_alive, read_json, utc_now
from ..runlog import LOG_DIR, NULL_RUN_LOG
from ..timers import RepeatingTimer

HEALTH_FILE = ".daemon-health"
PID_FILE = ".daemon-pid"
DAEMON_LOG_FILE = "daemon.log"
HEALTH_STATUSES = ("idle", "running", "errored", "shutdown")
_MAX_SLEEP_SECONDS = 60.0

logger = logging.getLogger(__name__)


class InvalidCronError(GardenerError):
    """Raised when a schedule is not a valid cron expression."""


class TriggerOutcome(str, Enum):
    STARTED = "started"
    SKIPPED_RUNNING = "skipped_running"
    SKIPPED_BACKOFF = "skipped_backoff"
    SKIPPED_SHUTDOWN = "skipped_shutdown"


@dataclass(slots=True)
class DaemonHealth:
    holder_id: int
    last_check: str
    last_run: str | None = None
    status: str = "idle"
    consecutive_failures: int = 0
    last_failure_at: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "holderId": self.holder_id,
            "lastCheck": self.last_check,
            "lastRun": self.last_run,
            "status": self.status,
            "consecutiveFailures": self.consecutive_failures,
            "lastFailureAt": self.last_failure_at,
        }

    @classmethod
    def from_json(cls, payload: Any) -> DaemonHealth | None:
        if not isinstance(payload, dict):
            return None
        holder = payload.get("holderId", payload.get("pid"))
        status = payload.get("status")
        failures = payload.get("consecutiveFailures", 0)
        if not isinstance(holder, int) or status not in HEALTH_STATUSES:
            return None
        return cls(
            holder_id=holder,
            last_check=str(payload.get("lastCheck") or ""),
            last_run=payload.get("lastRun"),
            status=status,
            consecutive_failures=failures if isinstance(failures, int) and failures >= 0 else 0,
            last_failure_at=payload.get("lastFailureAt"),
        )


def validate_cron(expression: str) -> str:
    expression = (expression or "").strip()
    if not expression or not croniter.is_valid(expression):
        raise InvalidCronError(f"Invalid cron expression: {expression!r}")
    return expression


def backoff_seconds(failures: int, threshold: int, base_seconds: float, max_exponent: int) -> float:
    """Delay before the next attempt once ``failures`` reached ``threshold``."""

    if failures < threshold:
        return 0.0
    return base_seconds * 2 ** min(failures - threshold, max_exponent)


def read_daemon_health(state_dir: Path) -> DaemonHealth | None:
    return DaemonHealth.from_json(read_json(Path(state_dir) / HEALTH_FILE))


def write_daemon_health(state_dir: Path, health: DaemonHealth) -> None:
    atomic_write_json(Path(state_dir) / HEALTH_FILE, health.to_json())


class DaemonSupervisor:
    """Schedule runs on a cron expression with failure backoff and a health beacon."""

    def __init__(
        self,
        state_dir: Path,
        cron_expression: str,
        invoke: Callable[[], int],
        *,
        max_consecutive_failures: int = 5,
        backoff_base_seconds: float = 60.0,
        backoff_max_exponent: int = 6,
        health_interval_seconds: float = 60.0,
        shutdown_deadline_seconds: float = 30.0,
        run_log=None,
        clock: Callable[[], datetime] = utc_now,
        holder_id: int | None = None,
    ) -> None:
        self._cron = validate_cron(cron_expression)
        self._state_dir = Path(state_dir)
        self._invoke = invoke
        self._threshold = max_consecutive_failures
        self._backoff_base = backoff_base_seconds
        self._backoff_max_exponent = backoff_max_exponent
        self._shutdown_deadline = shutdown_deadline_seconds
        self._run_log = run_log or NULL_RUN_LOG
        self._clock = clock

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._accepting = True
        self._running = False
        self._closed = False
        self._worker: threading.Thread | None = None
        self._beacon = RepeatingTimer(health_interval_seconds, self._beat, name="gardener-daemon-health")

        prior = read_daemon_health(self._state_dir)
        failures = prior.consecutive_failures if prior else 0
        self._health = DaemonHealth(
            holder_id=holder_id if holder_id is not None else os.getpid(),
            last_check=isoformat(self._clock()),
            last_run=prior.last_run if prior else None,
            status="errored" if failures else "idle",
            consecutive_failures=failures,
            last_failure_at=prior.last_failure_at if prior else None,
        )

    @property
    def cron_expression(self) -> str:
        return self._cron

    @property
    def health(self) -> DaemonHealth:
        with self._lock:
            return replace(self._health)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Write the first health record and start the beacon."""

        with self._lock:
            self._write_health()
        self._beacon.start()
        self._run_log.info("daemon_start", context={"cron": self._cron, "holderId": self._health.holder_id})

    def next_fire_time(self, after: datetime | None = None) -> datetime:
        base = (after or self._clock()).astimezone()
        return croniter(self._cron, base).get_next(datetime)

    def on_trigger(self) -> TriggerOutcome:
        with self._lock:
            if not self._accepting:
                return TriggerOutcome.SKIPPED_SHUTDOWN

            if self._running:
                self._run_log.warn("daemon_skip", context={"reason": "previous run still active"})
                self._touch()
                return TriggerOutcome.SKIPPED_RUNNING

            failures = self._health.consecutive_failures
            if failures >= self._threshold:
                wait = backoff_seconds(failures, self._threshold, self._backoff_base, self._backoff_max_exponent)
                last_failure = parse_timestamp(self._health.last_failure_at)
                elapsed = (self._clock() - last_failure).total_seconds() if last_failure else None
                if elapsed is not None and elapsed < wait:
                    self._run_log.warn(
                        "daemon_backoff",
                        context={
                            "consecutiveFailures": failures,
                            "backoffSeconds": wait,
                            "remainingSeconds": round(wait - elapsed),
                        },
                    )
                    self._touch()
                    return TriggerOutcome.SKIPPED_BACKOFF
                self._run_log.info("daemon_retry", context={"consecutiveFailures": failures})

            self._running = True
            now = isoformat(self._clock())
            self._health.status = "running"
            self._health.last_run = now
            self._health.last_check = now
            self._write_health()
            self._worker = threading.Thread(target=self._execute, name="gardener-daemon-run", daemon=True)
            self._worker.start()

        return TriggerOutcome.STARTED

    def wait_for_run(self, timeout: float | None = None) -> bool:
        """Block until the in-flight run finishes; False if it is still going."""

        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def serve(self, *, install_signal_handlers: bool = True) -> None:
        """Fire triggers on schedule until a shutdown is requested."""

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._handle_signal)
            signal.signal(signal.SIGINT, self._handle_signal)

        self.start()
        next_fire = self.next_fire_time()
        try:
            while not self._stop.is_set():
                remaining = (next_fire - self._clock()).total_seconds()
                if remaining > 0:
                    if self._stop.wait(min(remaining, _MAX_SLEEP_SECONDS)):
                        break
                    continue
                self.on_trigger()
                next_fire = self.next_fire_time()
        finally:
            self.shutdown()

    def request_shutdown(self) -> None:
        with self._lock:
            self._accepting = False
        self._stop.set()

    def shutdown(self) -> None:
        """Stop accepting triggers, wait for the in-flight run, write terminal health."""

        self.request_shutdown()
        if self._closed:
            return
        self._closed = True

        if not self.wait_for_run(self._shutdown_deadline):
            self._run_log.warn(
                "daemon_shutdown_timeout",
                context={"deadlineSeconds": self._shutdown_deadline},
            )

        self._beacon.cancel()
        with self._lock:
            self._health.status = "shutdown"
            self._health.last_check = isoformat(self._clock())
            self._write_health()
        self._run_log.info("daemon_stop")

    def _handle_signal(self, signum, frame) -> None:
        logger.info("Received signal %s, shutting down", signum)
        self.request_shutdown()

    def _execute(self) -> None:
        code: int | None
        try:
            code = self._invoke()
        except Exception as exc:  # noqa: BLE001 - a failed launch counts as a failed run
            logger.exception("Daemon run could not be launched")
            self._run_log.error("daemon_run_error", error={"message": str(exc)})
            code = None

        with self._lock:
            self._running = False
            closed = self._health.status == "shutdown"
            now = isoformat(self._clock())
            self._health.last_check = now
            if code == 0:
                self._health.consecutive_failures = 0
                self._health.last_failure_at = None
                self._health.status = "idle"
                self._run_log.info("daemon_run_complete")
            else:
                self._health.consecutive_failures += 1
                self._health.last_failure_at = now
                self._health.status = "errored"
                self._run_log.error(
                    "daemon_run_failed",
                    exitCode=code,
                    context={"consecutiveFailures": self._health.consecutive_failures},
                )
            if closed:
                self._health.status = "shutdown"
            self._write_health()

    def _beat(self) -> None:
        with self._lock:
            self._touch()

    def _touch(self) -> None:
        self._health.last_check = isoformat(self._clock())
        self._write_health()

    def _write_health(self) -> None:
        try:
            write_daemon_health(self._state_dir, self._health)
        except OSError:
            logger.debug("Health write failed", exc_info=True, extra={"path": str(self._state_dir / HEALTH_FILE)})


def run_command(phase: str = "all") -> list[str]:
    return [sys.executable, "-m", "vault_gardener", "run", phase]


def invoke_run(workdir: Path, phase: str = "all") -> int:
    """Launch one one-shot pipeline process and wait for it."""

    completed = subprocess.run(run_command(phase), cwd=str(workdir), check=False)
    return completed.returncode


def read_daemon_pid(state_dir: Path) -> int | None:
    try:
        return int((Path(state_dir) / PID_FILE).read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def is_daemon_running(state_dir: Path) -> int | None:
    """Return the daemon pid when its process is alive."""

    pid = read_daemon_pid(state_dir)
    if pid is not None and pid_alive(pid):
        return pid
    return None


def write_daemon_pid(state_dir: Path, pid: int) -> None:
    atomic_write_text(Path(state_dir) / PID_FILE, str(pid))


def start_daemon(workdir: Path, cron_expression: str, *, settings: GardenerSettings | None = None) -> int:
    """Spawn a detached daemon process and record its pid and initial health."""

    cron_expression = validate_cron(cron_expression)
    state_dir = (settings or get_settings()).state_dir(Path(workdir))
    log_dir = state_dir / LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    with open(log_dir / DAEMON_LOG_FILE, "ab") as output:
        process = subprocess.Popen(
            [sys.executable, "-m", "vault_gardener", "daemon", "--cron", cron_expression],
            cwd=str(workdir),
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    write_daemon_pid(state_dir, process.pid)
    prior = read_daemon_health(state_dir)
    write_daemon_health(
        state_dir,
        DaemonHealth(
            holder_id=process.pid,
            last_check=isoformat(utc_now()),
            last_run=prior.last_run if prior else None,
            status="idle",
            consecutive_failures=prior.consecutive_failures if prior else 0,
            last_failure_at=prior.last_failure_at if prior else None,
        ),
    )
    return process.pid


def stop_daemon(state_dir: Path) -> int | None:
    """Send SIGTERM to the daemon and remove its pid file.

    Returns the pid that was signalled, or None when no daemon was alive.
    """

    pid = read_daemon_pid(state_dir)
    signalled = None
    if pid is not None and pid_alive(pid):
        try:
            os.kill(pid, signal.SIGTERM)
            signalled = pid
        except ProcessLookupError:
            signalled = None
    try:
        (Path(state_dir) / PID_FILE).unlink()
    except FileNotFoundError:
        pass
    return signalled


__all__ = [
    "DaemonHealth",
    "DaemonSupervisor",
    "HEALTH_FILE",
    "InvalidCronError",
    "PID_FILE",
    "TriggerOutcome",
    "backoff_seconds",
    "invoke_run",
    "is_daemon_running",
    "read_daemon_health",
    "read_daemon_pid",
    "start_daemon",
    "stop_daemon",
    "validate_cron",
    "write_daemon_health",
    "write_daemon_pid",
]
