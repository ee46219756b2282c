from __future__ import annotations

import json
import shutil
import subprocess
from datetime import timedelta
from pathlib import Path

import pytest

from vault_gardener.fsutil import isoformat, utc_now
from vault_gardener.recover import recover
from vault_gardener.run_queue import RunQueue


class StubRunLog:
    def __init__(self) -> None:
        self.events: list[str] = []

    def info(self, event: str, **fields) -> None:
        self.events.append(event)

    warn = info
    error = info


def write_lock(state_dir: Path, holder: int = 4242, host: str = "") -> None:
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / ".lock").write_text(
        json.dumps({"holderId": holder, "startedAt": isoformat(utc_now()), "host": host}),
        encoding="utf-8",
    )
    (state_dir / ".lock-heartbeat").write_text(
        json.dumps({"holderId": holder, "timestamp": isoformat(utc_now())}),
        encoding="utf-8",
    )


def test_clean_state_is_all_clear(tmp_path: Path) -> None:
    report = recover(tmp_path, tmp_path / ".gardener")

    assert report.clean
    assert report.summary() == "All clear: no issues found."


def test_lock_of_dead_holder_is_removed(tmp_path: Path) -> None:
    state_dir = tmp_path / ".gardener"
    write_lock(state_dir)
    log = StubRunLog()

    report = recover(tmp_path, state_dir, run_log=log, pid_probe=lambda pid: False)

    assert not (state_dir / ".lock").exists()
    assert not (state_dir / ".lock-heartbeat").exists()
    assert report.fixed == ["Removed stale .lock (holder 4242 on unknown host)"]
    assert "recover.stale_lock_removed" in log.events


def test_live_lock_is_only_reported(tmp_path: Path) -> None:
    state_dir = tmp_path / ".gardener"
    write_lock(state_dir)

    report = recover(tmp_path, state_dir, pid_probe=lambda pid: True)

    assert (state_dir / ".lock").exists()
    assert report.fixed == []
    assert report.reported == [".lock held by live holder 4242"]
    assert report.summary() == "Fixed: 0  Reported: 1"


def test_unreadable_lock_and_orphan_heartbeat(tmp_path: Path) -> None:
    state_dir = tmp_path / ".gardener"
    state_dir.mkdir()
    (state_dir / ".lock").write_text("garbage", encoding="utf-8")
    log = StubRunLog()

    report = recover(tmp_path, state_dir, run_log=log)
    assert report.fixed == ["Removed orphan .lock (unreadable)"]

    (state_dir / ".lock-heartbeat").write_text("{}", encoding="utf-8")
    report = recover(tmp_path, state_dir, run_log=log)
    assert report.fixed == ["Removed orphan .lock-heartbeat"]
    assert log.events == ["recover.orphan_lock_removed", "recover.orphan_heartbeat_removed"]


def test_temp_artifacts_are_removed(tmp_path: Path) -> None:
    state_dir = tmp_path / ".gardener"
    (state_dir / "staging.gardener.tmp").mkdir(parents=True)
    (state_dir / "staging.gardener.tmp" / "note.md").write_text("x", encoding="utf-8")
    (state_dir / "queue.json.gardener.tmp").write_text("[]", encoding="utf-8")
    (state_dir / "config.yaml").write_text("provider: claude\n", encoding="utf-8")

    report = recover(tmp_path, state_dir)

    assert sorted(report.fixed) == [
        "Removed orphan queue.json.gardener.tmp",
        "Removed orphan staging.gardener.tmp",
    ]
    assert sorted(path.name for path in state_dir.iterdir()) == ["config.yaml"]


def test_stale_queue_entries_are_purged(tmp_path: Path) -> None:
    state_dir = tmp_path / ".gardener"
    state_dir.mkdir()
    old = isoformat(utc_now() - timedelta(hours=30))
    fresh = isoformat(utc_now())
    (state_dir / "queue.json").write_text(
        json.dumps(
            [
                {"phase": "seed", "provider": "claude", "tier": "fast", "queuedAt": old},
                {"phase": "tend", "provider": "claude", "tier": "fast", "queuedAt": fresh},
            ]
        ),
        encoding="utf-8",
    )

    report = recover(tmp_path, state_dir)

    assert report.fixed == ["Purged 1 stale queue entry(ies) (>24h)"]
    assert [entry.phase for entry in RunQueue(state_dir).entries()] == ["tend"]


def test_corrupt_metrics_are_renamed(tmp_path: Path) -> None:
    metrics = tmp_path / ".gardener" / "metrics"
    metrics.mkdir(parents=True)
    (metrics / "2026-03-01.json").write_text("[{]", encoding="utf-8")
    (metrics / "2026-03-02.json").write_text("[]", encoding="utf-8")
    log = StubRunLog()

    report = recover(tmp_path, tmp_path / ".gardener", run_log=log)

    assert report.fixed == ["Renamed corrupted metrics: 2026-03-01.json -> 2026-03-01.json.corrupt"]
    assert (metrics / "2026-03-01.json.corrupt").exists()
    assert (metrics / "2026-03-02.json").exists()
    assert log.events == ["recover.corrupt_metrics"]


def test_corrupt_metrics_keep_earlier_quarantine(tmp_path: Path) -> None:
    metrics = tmp_path / ".gardener" / "metrics"
    metrics.mkdir(parents=True)
    (metrics / "2026-03-01.json").write_text("[{]", encoding="utf-8")
    (metrics / "2026-03-01.json.corrupt").write_text("earlier", encoding="utf-8")
    (metrics / "2026-03-01.json.corrupt.1").mkdir()

    report = recover(tmp_path, tmp_path / ".gardener")

    assert report.fixed == ["Renamed corrupted metrics: 2026-03-01.json -> 2026-03-01.json.corrupt.2"]
    assert (metrics / "2026-03-01.json.corrupt").read_text(encoding="utf-8") == "earlier"
    assert (metrics / "2026-03-01.json.corrupt.2").read_text(encoding="utf-8") == "[{]"


def test_failed_metrics_rename_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    metrics = tmp_path / ".gardener" / "metrics"
    metrics.mkdir(parents=True)
    (metrics / "2026-03-01.json").write_text("[{]", encoding="utf-8")

    def refuse(self, target):
        raise PermissionError("read-only")

    monkeypatch.setattr(Path, "rename", refuse)
    report = recover(tmp_path, tmp_path / ".gardener")

    assert report.fixed == []
    assert report.reported == ["Could not rename corrupted metrics 2026-03-01.json: read-only"]
    assert (metrics / "2026-03-01.json").exists()


def test_temp_artifacts_stay_while_run_is_live(tmp_path: Path) -> None:
    state_dir = tmp_path / ".gardener"
    write_lock(state_dir)
    (state_dir / "queue.json.k3j2.gardener.tmp").write_text("[]", encoding="utf-8")

    report = recover(tmp_path, state_dir, pid_probe=lambda pid: True)

    assert (state_dir / "queue.json.k3j2.gardener.tmp").exists()
    assert report.reported == [
        ".lock held by live holder 4242",
        "Left queue.json.k3j2.gardener.tmp in place while a run holds the lock",
    ]


def test_lock_replaced_during_recovery_is_left_alone(tmp_path: Path) -> None:
    state_dir = tmp_path / ".gardener"
    write_lock(state_dir)
    successor = {"holderId": 5151, "startedAt": isoformat(utc_now()), "host": "", "token": "cafe"}

    def replace_lock_then_report_dead(pid: int) -> bool:
        if pid == 4242:
            (state_dir / ".lock").write_text(json.dumps(successor), encoding="utf-8")
            return False
        return True

    report = recover(tmp_path, state_dir, pid_probe=replace_lock_then_report_dead)

    assert json.loads((state_dir / ".lock").read_text(encoding="utf-8")) == successor
    assert report.fixed == []
    assert report.reported == [".lock changed hands during recovery; left in place"]
    assert list(state_dir.glob("*.reclaim*")) == []


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_staged_files_are_reported(tmp_path: Path) -> None:
    subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
    for index in range(7):
        (tmp_path / f"note-{index}.md").write_text("x", encoding="utf-8")
    subprocess.run(["git", "add", "."], cwd=tmp_path, check=True)

    report = recover(tmp_path, tmp_path / ".gardener")

    assert report.fixed == []
    assert len(report.reported) == 1
    lines = report.reported[0].splitlines()
    assert lines[0] == "7 staged-but-uncommitted file(s)"
    assert lines[1] == "    note-0.md"
    assert lines[-1] == "    ... and 2 more"
