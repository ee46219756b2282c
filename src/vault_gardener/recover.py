"""Repair state left behind by crashed or interrupted runs."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .fsutil import find_temp_artifacts, pid_alive, read_json, remove_quietly
from .lock import HEARTBEAT_FILE, LOCK_FILE, LockManager, LockRecord
from .metrics import iter_metric_files
from .run_queue import DEFAULT_MAX_AGE_HOURS, RunQueue
from .runlog import NULL_RUN_LOG

STAGED_PREVIEW_LIMIT = 5
GIT_TIMEOUT_SECONDS = 10

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecoveryReport:
    fixed: list[str] = field(default_factory=list)
    reported: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.fixed and not self.reported

    def summary(self) -> str:
        if self.clean:
            return "All clear: no issues found."
        return f"Fixed: {len(self.fixed)}  Reported: {len(self.reported)}"


def recover(
    workdir: Path,
    state_dir: Path,
    *,
    run_log=None,
    pid_probe: Callable[[int], bool] = pid_alive,
    queue_max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
) -> RecoveryReport:
    """Fix what is safe to fix and report what needs a human."""

    run_log = run_log or NULL_RUN_LOG
    state_dir = Path(state_dir)
    report = RecoveryReport()

    live = _recover_lock(state_dir, report, run_log, pid_probe)
    _report_staged_changes(Path(workdir), report)
    _remove_temp_artifacts(state_dir, report, run_log, live_holder=live)
    _purge_queue(state_dir, report, run_log, queue_max_age_hours)
    _quarantine_corrupt_metrics(state_dir, report, run_log)
    return report


def _recover_lock(state_dir: Path, report: RecoveryReport, run_log, pid_probe: Callable[[int], bool]) -> bool:
    """Clean up a dead lock; True when a live holder still owns it."""

    lock_path = state_dir / LOCK_FILE
    heartbeat_path = state_dir / HEARTBEAT_FILE

    if lock_path.exists():
        record = LockRecord.from_json(read_json(lock_path))
        if record is None:
            remove_quietly([lock_path, heartbeat_path])
            report.fixed.append("Removed orphan .lock (unreadable)")
            run_log.info("recover.orphan_lock_removed")
        else:
            manager = LockManager(state_dir, pid_probe=pid_probe, run_log=run_log)
            if not manager.is_stale(record):
                report.reported.append(f".lock held by live holder {record.holder_id}")
                return True
            if not manager.reclaim(record):
                report.reported.append(".lock changed hands during recovery; left in place")
                return True
            report.fixed.append(f"Removed stale .lock (holder {record.holder_id} on {record.host or 'unknown host'})")
            run_log.info("recover.stale_lock_removed", context={"holderId": record.holder_id})

    if heartbeat_path.exists() and not lock_path.exists():
        remove_quietly([heartbeat_path])
        report.fixed.append("Removed orphan .lock-heartbeat")
        run_log.info("recover.orphan_heartbeat_removed")
    return False


def _report_staged_changes(workdir: Path, report: RecoveryReport) -> None:
    try:
        completed = subprocess.run(
            ["git", "diff", "--cached", "--name-only"],
            cwd=str(workdir),
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return
    if completed.returncode != 0:
        return
    files = [line for line in completed.stdout.splitlines() if line.strip()]
    if not files:
        return
    lines = [f"{len(files)} staged-but-uncommitted file(s)"]
    lines.extend(f"    {name}" for name in files[:STAGED_PREVIEW_LIMIT])
    if len(files) > STAGED_PREVIEW_LIMIT:
        lines.append(f"    ... and {len(files) - STAGED_PREVIEW_LIMIT} more")
    report.reported.append("\n".join(lines))


def _remove_temp_artifacts(state_dir: Path, report: RecoveryReport, run_log, *, live_holder: bool = False) -> None:
    for entry in find_temp_artifacts(state_dir):
        name = entry.relative_to(state_dir).as_posix()
        if live_holder:
            report.reported.append(f"Left {name} in place while a run holds the lock")
            continue
        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
        except OSError as exc:
            report.reported.append(f"Could not remove {name}: {exc}")
            continue
        report.fixed.append(f"Removed orphan {name}")
        run_log.info("recover.orphan_tmp_removed", context={"path": name})


def _purge_queue(state_dir: Path, report: RecoveryReport, run_log, max_age_hours: float) -> None:
    purged = RunQueue(state_dir).purge_stale(max_age_hours)
    if purged > 0:
        report.fixed.append(f"Purged {purged} stale queue entry(ies) (>{max_age_hours:g}h)")
        run_log.info("recover.stale_queue_purged", context={"purged": purged})


def _quarantine_corrupt_metrics(state_dir: Path, report: RecoveryReport, run_log) -> None:
    for path in iter_metric_files(state_dir):
        try:
            json.loads(path.read_text(encoding="utf-8"))
            continue
        except OSError:
            logger.debug("Unreadable metrics file", exc_info=True, extra={"path": str(path)})
            continue
        except ValueError:
            pass
        corrupt = _quarantine_target(path)
        try:
            path.rename(corrupt)
        except OSError as exc:
            report.reported.append(f"Could not rename corrupted metrics {path.name}: {exc}")
            continue
        report.fixed.append(f"Renamed corrupted metrics: {path.name} -> {corrupt.name}")
        run_log.info("recover.corrupt_metrics", context={"file": path.name})


def _quarantine_target(path: Path) -> Path:
    """First free ``<name>.corrupt`` or ``<name>.corrupt.<n>`` beside ``path``."""

    candidate = path.with_name(f"{path.name}.corrupt")
    counter = 1
    while candidate.exists() or candidate.is_symlink():
        candidate = path.with_name(f"{path.name}.corrupt.{counter}")
        counter += 1
    return candidate


__all__ = ["RecoveryReport", "recover"]
