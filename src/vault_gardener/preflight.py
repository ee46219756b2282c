"""Environment checks that gate whether a run may start."""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .fsutil import SKIP_DIRS, find_temp_artifacts
from .lock import LOCK_FILE
from .project import GardenerConfig, resolve_executable
from .runlog import NULL_RUN_LOG

PROMPTS_DIR = "prompts"
SYNC_CONFLICT_MARKERS = ("sync-conflict", "(conflict)")
SYNC_PLACEHOLDER_SUFFIX = ".icloud"
GIT_TIMEOUT_SECONDS = 5
_MIB = 1024 * 1024


@dataclass(slots=True)
class PreflightResult:
    ok: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.ok = False
        self.errors.append(message)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_json(self) -> dict[str, Any]:
        return {"ok": self.ok, "errors": list(self.errors), "warnings": list(self.warnings)}


@dataclass(slots=True)
class ScanState:
    """Budget shared by one bounded directory scan."""

    max_files: int
    deadline: float
    scanned: int = 0
    exhausted: bool = False

    @classmethod
    def start(cls, max_files: int, timeout_seconds: float) -> ScanState:
        return cls(max_files=max_files, deadline=time.monotonic() + timeout_seconds)

    def take(self) -> bool:
        """Account for one more file; False once the budget is spent."""

        if self.exhausted:
            return False
        if self.scanned >= self.max_files or time.monotonic() > self.deadline:
            self.exhausted = True
            return False
        self.scanned += 1
        return True

    def within_deadline(self) -> bool:
        if not self.exhausted and time.monotonic() > self.deadline:
            self.exhausted = True
        return not self.exhausted


def run_preflight(workdir: Path, lock_dir: Path, config: GardenerConfig, logger=None) -> PreflightResult:
    """Run every check in order and collect fatal errors and advisory warnings."""

    run_log = logger or NULL_RUN_LOG
    root = Path(workdir)
    state = Path(lock_dir)
    resilience = config.resilience
    result = PreflightResult()

    run_log.info("preflight_start", context={"workdir": str(root)})

    _check_root_accessible(root, resilience.preflight_root_timeout_seconds, result)
    if result.ok:
        _check_quiet_period(root, config.inbox_folder, resilience.vault_quiet_seconds, result)
        _check_sync_conflicts(
            root,
            ScanState.start(resilience.sync_scan_max_files, resilience.sync_scan_timeout_seconds),
            result,
        )
        _check_git_state(root, result)
        _check_disk_space(root, resilience.min_free_disk_mb, result)
        _check_leftover_artifacts(state, result)
        _check_provider_executable(resolve_executable(config), result)
        _check_prompts_dir(state, result)

    if result.warnings:
        run_log.warn("preflight_warnings", context={"warnings": list(result.warnings)})
    if result.ok:
        run_log.info("preflight_pass")
    else:
        run_log.error("preflight_fail", context={"errors": list(result.errors)})
    return result


def _check_root_accessible(root: Path, timeout_seconds: float, result: PreflightResult) -> None:
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gardener-preflight")
    try:
        future = executor.submit(os.listdir, root)
        future.result(timeout=timeout_seconds)
    except FutureTimeout:
        result.add_error(f"Vault inaccessible: listing {root} timed out after {timeout_seconds:g}s")
    except OSError as exc:
        result.add_error(f"Vault inaccessible: {exc}")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def _check_quiet_period(root: Path, inbox: str, quiet_seconds: float, result: PreflightResult) -> None:
    if quiet_seconds <= 0:
        return
    now = time.time()
    newest: tuple[float, Path] | None = None
    for directory in (root, root / inbox):
        try:
            entries = list(os.scandir(directory))
        except OSError:
            continue
        for entry in entries:
            if not entry.name.endswith(".md"):
                continue
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                modified = entry.stat(follow_symlinks=False).st_mtime
            except OSError:
                continue
            if newest is None or modified > newest[0]:
                newest = (modified, Path(entry.path))

    if newest is not None and now - newest[0] < quiet_seconds:
        age = max(0, int(now - newest[0]))
        result.add_warning(
            f"Vault modified {age}s ago ({newest[1].name}); an editor or sync client may still be writing"
        )


def _is_sync_artifact(name: str) -> bool:
    lowered = name.lower()
    return lowered.endswith(SYNC_PLACEHOLDER_SUFFIX) or any(marker in lowered for marker in SYNC_CONFLICT_MARKERS)


def _check_sync_conflicts(root: Path, scan: ScanState, result: PreflightResult) -> None:
    pending = [root]
    while pending and scan.within_deadline():
        directory = pending.pop()
        try:
            entries = list(os.scandir(directory))
        except OSError:
            continue
        for entry in entries:
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                continue
            if is_dir:
                if entry.name not in SKIP_DIRS:
                    pending.append(Path(entry.path))
                continue
            if not scan.take():
                break
            if _is_sync_artifact(entry.name):
                result.add_warning(f"Sync conflict file detected: {Path(entry.path).relative_to(root)}")

    if scan.exhausted:
        result.add_warning(f"Sync conflict scan incomplete (stopped after {scan.scanned} files)")


def _git(root: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=str(root),
        capture_output=True,
        text=True,
        timeout=GIT_TIMEOUT_SECONDS,
        check=False,
    )


def _check_git_state(root: Path, result: PreflightResult) -> None:
    if shutil.which("git") is None:
        result.add_warning("git not found on PATH; skipping version-control checks")
        return
    try:
        inside = _git(root, "rev-parse", "--is-inside-work-tree")
        if inside.returncode != 0 or inside.stdout.strip() != "true":
            result.add_warning("Not a git repository; skipping version-control checks")
            return

        if _git(root, "symbolic-ref", "-q", "HEAD").returncode != 0:
            result.add_warning("Git HEAD is detached")

        git_dir = _git(root, "rev-parse", "--git-dir").stdout.strip()
        merge_head = (root / git_dir / "MERGE_HEAD") if git_dir else None
        merging = _git(root, "rev-parse", "-q", "--verify", "MERGE_HEAD").returncode == 0
        if merging or (merge_head is not None and merge_head.exists()):
            result.add_error("Git has unresolved merge conflicts")

        staged = _git(root, "diff", "--cached", "--name-only")
        if staged.returncode == 0:
            names = [line for line in staged.stdout.splitlines() if line.strip()]
            if names:
                result.add_warning(f"Git has {len(names)} staged but uncommitted change(s)")
    except (OSError, subprocess.TimeoutExpired) as exc:
        result.add_warning(f"Git checks skipped: {exc}")


def _check_disk_space(root: Path, minimum_mb: float, result: PreflightResult) -> None:
    try:
        free_mb = shutil.disk_usage(root).free // _MIB
    except OSError as exc:
        result.add_warning(f"Could not determine free disk space: {exc}")
        return
    if free_mb < minimum_mb:
        result.add_error(f"Low disk space: {free_mb}MB available (minimum: {minimum_mb:g}MB)")


def _check_leftover_artifacts(state_dir: Path, result: PreflightResult) -> None:
    if (state_dir / LOCK_FILE).exists():
        result.add_warning(f"Leftover lock file from a previous run: {state_dir / LOCK_FILE}")
    for artifact in find_temp_artifacts(state_dir):
        result.add_warning(f"Leftover temp artifact from a previous run: {artifact.relative_to(state_dir).as_posix()}")


def _check_provider_executable(executable: str, result: PreflightResult) -> None:
    if shutil.which(executable) is None:
        result.add_error(f"Provider CLI not found: {executable}")


def _check_prompts_dir(state_dir: Path, result: PreflightResult) -> None:
    if not (state_dir / PROMPTS_DIR).is_dir():
        result.add_error(
            f"Missing {PROMPTS_DIR}/ directory in {state_dir}."
        )


__all__ = [
    "PROMPTS_DIR",
    "PreflightResult",
    "ScanState",
    "run_preflight",
]
