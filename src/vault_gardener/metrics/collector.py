"""Bounded vault census taken before and after each run."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from ..fsutil import (
    MAX_SCAN_FILE_SIZE,
    SKIP_DIRS,
    append_json_array,
    isoformat,
    local_date,
    matches_in_head,
    read_json_array_dir,
    utc_now,
)
from ..project import GardenerConfig

METRICS_DIR = "metrics"
DEFAULT_MAX_FILES = 50_000
BATCH_SIZE = 100
DEFAULT_COUNT_TIMEOUT_SECONDS = 30.0
GIT_TIMEOUT_SECONDS = 10

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WalkState:
    """Mutable budget for one vault walk."""

    max_files: int
    deadline: float | None
    files: list[Path] = field(default_factory=list)
    approximate: bool = False
    timed_out: bool = False

    @property
    def stopped(self) -> bool:
        return self.approximate or self.timed_out

    def within_budget(self) -> bool:
        if self.deadline is not None and not self.stopped and time.monotonic() > self.deadline:
            self.timed_out = True
            self.approximate = True
        return not self.stopped

    def add(self, path: Path) -> None:
        self.files.append(path)
        if len(self.files) >= self.max_files:
            self.approximate = True


@dataclass(slots=True)
class WalkResult:
    files: list[Path]
    approximate: bool
    timed_out: bool


def walk_files(root: Path, max_files: int = DEFAULT_MAX_FILES, timeout_ms: float | None = None) -> WalkResult:
    """Collect ``.md`` files under ``root``.

    Hidden entries, ``SKIP_DIRS`` and symlinks are skipped. The walk stops as
    soon as ``max_files`` files were found or ``timeout_ms`` elapsed, and the
    result is then flagged ``approximate``.
    """

    deadline = time.monotonic() + timeout_ms / 1000 if timeout_ms is not None else None
    state = WalkState(max_files=max_files, deadline=deadline)
    pending: list[Path] = [Path(root)]

    while pending and state.within_budget():
        directory = pending.pop()
        try:
            with os.scandir(directory) as iterator:
                entries = sorted(iterator, key=lambda entry: entry.name)
        except OSError:
            continue

        subdirs: list[Path] = []
        for entry in entries:
            if state.stopped:
                break
            if entry.name.startswith(".") or entry.name in SKIP_DIRS:
                continue
            try:
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False) and entry.name.endswith(".md"):
                    state.add(Path(entry.path))
            except OSError:
                continue
        pending.extend(reversed(subdirs))

    return WalkResult(files=state.files, approximate=state.approximate, timed_out=state.timed_out)


def count_intake(directory: Path) -> int:
    """Count ``.md`` files directly inside ``directory``."""

    try:
        with os.scandir(directory) as iterator:
            return sum(
                1 for entry in iterator if entry.name.endswith(".md") and entry.is_file(follow_symlinks=False)
            )
    except OSError:
        return 0


def _count_in_batches(
    files: Sequence[Path],
    count_one: Callable[[Path], int],
    timeout_seconds: float,
    batch_size: int,
) -> int:
    deadline = time.monotonic() + timeout_seconds
    total = 0
    with ThreadPoolExecutor(max_workers=min(16, batch_size), thread_name_prefix="gardener-metrics") as pool:
        for start in range(0, len(files), batch_size):
            if time.monotonic() > deadline:
                logger.debug("Count budget exhausted", extra={"counted": start, "total": len(files)})
                break
            total += sum(pool.map(count_one, files[start : start + batch_size]))
    return total


def count_marked(
    files: Sequence[Path],
    marker: str = "status: seed",
    head_lines: int = 10,
    *,
    timeout_seconds: float = DEFAULT_COUNT_TIMEOUT_SECONDS,
    batch_size: int = BATCH_SIZE,
) -> int:
    """Count files whose first ``head_lines`` lines contain ``marker``."""

    return _count_in_batches(
        files,
        lambda path: 1 if matches_in_head(path, marker, head_lines) else 0,
        timeout_seconds,
        batch_size,
    )


def _occurrences(path: Path, marker: str) -> int:
    try:
        if path.stat().st_size > MAX_SCAN_FILE_SIZE:
            return 0
        return path.read_text(encoding="utf-8", errors="replace").count(marker)
    except OSError:
        return 0


def count_links(
    files: Sequence[Path],
    marker: str = "[[",
    *,
    timeout_seconds: float = DEFAULT_COUNT_TIMEOUT_SECONDS,
    batch_size: int = BATCH_SIZE,
) -> int:
    """Total occurrences of ``marker`` across ``files``."""

    return _count_in_batches(files, lambda path: _occurrences(path, marker), timeout_seconds, batch_size)


def count_relocated(root: Path) -> int:
    """Number of renames git currently sees in the working tree; 0 when unavailable."""

    try:
        completed = subprocess.run(
            ["git", "diff", "--name-only", "--diff-filter=R"],
            cwd=str(root),
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return 0
    if completed.returncode != 0:
        return 0
    return len([line for line in completed.stdout.splitlines() if line.strip()])


@dataclass(slots=True)
class PreMetrics:
    timestamp: str
    intake_item_count: int
    total_item_count: int
    marked_item_count: int
    link_occurrences: int
    approximate: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "intakeItemCount": self.intake_item_count,
            "totalItemCount": self.total_item_count,
            "markedItemCount": self.marked_item_count,
            "linkOccurrences": self.link_occurrences,
            "approximate": self.approximate,
        }


@dataclass(slots=True)
class PostMetrics(PreMetrics):
    items_processed: int = 0
    links_added: int = 0
    items_relocated: int = 0

    def to_json(self) -> dict[str, Any]:
        payload = PreMetrics.to_json(self)
        payload.update(
            {
                "itemsProcessed": self.items_processed,
                "linksAdded": self.links_added,
                "itemsRelocated": self.items_relocated,
            }
        )
        return payload


def _census(root: Path, config: GardenerConfig) -> PreMetrics:
    resilience = config.resilience
    markers = config.markers
    walk = walk_files(
        root,
        max_files=resilience.metrics_max_files,
        timeout_ms=resilience.metrics_timeout_seconds * 1000,
    )
    return PreMetrics(
        timestamp=isoformat(utc_now()),
        intake_item_count=count_intake(Path(root) / config.inbox_folder),
        total_item_count=len(walk.files),
        marked_item_count=count_marked(
            walk.files,
            markers.status,
            markers.status_head_lines,
            timeout_seconds=resilience.metrics_timeout_seconds,
        ),
        link_occurrences=count_links(walk.files, markers.link, timeout_seconds=resilience.metrics_timeout_seconds),
        approximate=walk.approximate,
    )


def collect_pre(root: Path, config: GardenerConfig) -> PreMetrics:
    return _census(root, config)


def collect_post(root: Path, config: GardenerConfig, pre: PreMetrics) -> PostMetrics:
    """Take the post-run snapshot and derive deltas against ``pre``."""

    snapshot = _census(root, config)
    return PostMetrics(
        timestamp=snapshot.timestamp,
        intake_item_count=snapshot.intake_item_count,
        total_item_count=snapshot.total_item_count,
        marked_item_count=snapshot.marked_item_count,
        link_occurrences=snapshot.link_occurrences,
        approximate=snapshot.approximate or pre.approximate,
        items_processed=pre.intake_item_count - snapshot.intake_item_count,
        links_added=snapshot.link_occurrences - pre.link_occurrences,
        items_relocated=count_relocated(root),
    )


def build_run_metrics(
    *,
    phase: str,
    provider: str,
    tier: str,
    model: str,
    duration_seconds: int,
    exit_code: int,
    pre: PreMetrics | None,
    post: PostMetrics | None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Assemble the persisted RunMetrics record.

    A missing snapshot contributes zeros so a failed census never blocks the
    record itself.
    """

    moment = now or utc_now()
    latest = post or pre
    inbox_before = pre.intake_item_count if pre else 0
    inbox_after = post.intake_item_count if post else inbox_before
    return {
        "date": local_date(moment),
        "timestamp": isoformat(moment),
        "phase": phase,
        "provider": provider,
        "tier": tier,
        "model": model,
        "duration_seconds": duration_seconds,
        "exitCode": exit_code,
        "metrics": {
            "inbox_before": inbox_before,
            "inbox_after": inbox_after,
            "inbox_processed": post.items_processed if post else 0,
            "links_added": post.links_added if post else 0,
            "notes_moved": post.items_relocated if post else 0,
        },
        "vault_health": {
            "total_notes": latest.total_item_count if latest else 0,
            "inbox_items": inbox_after,
            "seed_notes": latest.marked_item_count if latest else 0,
        },
    }


def write_metrics(state_dir: Path, metrics: dict[str, Any]) -> Path:
    """Append ``metrics`` to ``metrics/<date>.json`` and return that path."""

    date = metrics.get("date") or local_date()
    path = Path(state_dir) / METRICS_DIR / f"{date}.json"
    append_json_array(path, metrics)
    return path


def read_metrics(state_dir: Path, days: int | None = None) -> list[dict[str, Any]]:
    """Return persisted run metrics, newest first."""

    records = [item for item in read_json_array_dir(Path(state_dir) / METRICS_DIR, days) if isinstance(item, dict)]
    return sorted(records, key=lambda item: str(item.get("timestamp", "")), reverse=True)


def iter_metric_files(state_dir: Path) -> Iterable[Path]:
    directory = Path(state_dir) / METRICS_DIR
    if not directory.is_dir():
        return []
    return sorted(path for path in directory.iterdir() if path.suffix == ".json")


__all__ = [
    "BATCH_SIZE",
    "DEFAULT_MAX_FILES",
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
    "iter_metric_files",
    "read_metrics",
    "walk_files",
    "write_metrics",
]
