from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from vault_gardener import fsutil
from vault_gardener.preflight import PreflightResult, ScanState, run_preflight
from vault_gardener.project import GardenerConfig
from vault_gardener.recover import recover


def make_config(**resilience) -> GardenerConfig:
    return GardenerConfig.model_validate(
        {
            "claude": {"power_model": "opus", "fast_model": "sonnet", "executable": "sh"},
            "resilience": {"vault_quiet_seconds": 0, "min_free_disk_mb": 0, **resilience},
        }
    )


def make_vault(tmp_path: Path) -> tuple[Path, Path]:
    root = tmp_path / "vault"
    (root / "00-inbox").mkdir(parents=True)
    state_dir = root / ".gardener"
    (state_dir / "prompts").mkdir(parents=True)
    return root, state_dir


def test_clean_vault_passes(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)

    result = run_preflight(root, state_dir, make_config())

    assert result.ok, result.errors
    assert result.errors == []


def test_missing_executable_is_fatal(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)
    config = make_config()
    config.claude.executable = "definitely-not-a-gardener-cli"

    result = run_preflight(root, state_dir, config)

    assert not result.ok
    assert "Provider CLI not found: definitely-not-a-gardener-cli" in result.errors


def test_missing_prompts_dir_is_fatal(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)
    (state_dir / "prompts").rmdir()

    result = run_preflight(root, state_dir, make_config())

    assert not result.ok
    assert any(error.startswith("Missing prompts/ directory") for error in result.errors)


def test_recent_edit_warns_without_failing(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)
    (root / "00-inbox" / "fresh.md").write_text("# Fresh\n", encoding="utf-8")

    result = run_preflight(root, state_dir, make_config(vault_quiet_seconds=5))

    assert result.ok
    assert any(warning.startswith("Vault modified") and "fresh.md" in warning for warning in result.warnings)


def test_sync_conflicts_are_reported(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)
    (root / "notes").mkdir()
    (root / "notes" / "idea.sync-conflict-20260301.md").write_text("x", encoding="utf-8")
    (root / "00-inbox" / "draft (conflict).md").write_text("x", encoding="utf-8")

    result = run_preflight(root, state_dir, make_config())

    assert "Sync conflict file detected: notes/idea.sync-conflict-20260301.md" in result.warnings
    assert "Sync conflict file detected: 00-inbox/draft (conflict).md" in result.warnings


def test_sync_scan_reports_incomplete_when_budget_is_spent(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)
    for index in range(20):
        (root / f"note-{index}.md").write_text("x", encoding="utf-8")

    result = run_preflight(root, state_dir, make_config(sync_scan_max_files=5))

    assert any(warning.startswith("Sync conflict scan incomplete") for warning in result.warnings)


def test_sync_scan_budget_counts_files_not_directories(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)
    nested = root / "a" / "b" / "c" / "d" / "e"
    nested.mkdir(parents=True)
    (nested / "deep.md").write_text("x", encoding="utf-8")

    result = run_preflight(root, state_dir, make_config(sync_scan_max_files=2))

    assert not any(warning.startswith("Sync conflict scan incomplete") for warning in result.warnings)


def test_leftover_artifacts_warn(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)
    (state_dir / ".lock").write_text("{}", encoding="utf-8")
    (state_dir / "queue.json.gardener.tmp").write_text("", encoding="utf-8")

    result = run_preflight(root, state_dir, make_config())

    assert any(warning.startswith("Leftover lock file") for warning in result.warnings)
    assert any("queue.json.gardener.tmp" in warning for warning in result.warnings)


def test_unreachable_root_stops_other_checks(tmp_path: Path) -> None:
    missing = tmp_path / "gone"

    result = run_preflight(missing, missing / ".gardener", make_config())

    assert not result.ok
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Vault inaccessible")


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_unresolved_merge_is_fatal(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)
    subprocess.run(["git", "init", "-q"], cwd=root, check=True)
    (root / ".git" / "MERGE_HEAD").write_text("0" * 40 + "\n", encoding="utf-8")

    result = run_preflight(root, state_dir, make_config())

    assert not result.ok
    assert "Git has unresolved merge conflicts" in result.errors


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_staged_changes_warn(tmp_path: Path) -> None:
    root, state_dir = make_vault(tmp_path)
    subprocess.run(["git", "init", "-q"], cwd=root, check=True)
    (root / "staged.md").write_text("x", encoding="utf-8")
    subprocess.run(["git", "add", "staged.md"], cwd=root, check=True)

    result = run_preflight(root, state_dir, make_config())

    assert result.ok
    assert "Git has 1 staged but uncommitted change(s)" in result.warnings


def test_scan_state_budget() -> None:
    scan = ScanState.start(max_files=2, timeout_seconds=60)
    assert scan.take()
    assert scan.take()
    assert not scan.take()
    assert scan.exhausted


def test_result_json() -> None:
    result = PreflightResult()
    result.add_warning("careful")
    result.add_error("broken")
    assert result.to_json() == {"ok": False, "errors": ["broken"], "warnings": ["careful"]}


def interrupted_write(monkeypatch: pytest.MonkeyPatch, path: Path) -> None:
    """Leave the temp file behind as a write killed before its rename would."""

    def crash(src, dst):
        raise OSError("killed before rename")

    with monkeypatch.context() as patch:
        patch.setattr(fsutil.os, "replace", crash)
        patch.setattr(fsutil.os, "unlink", lambda name: None)
        with pytest.raises(OSError):
            fsutil.atomic_write_json(path, [])


def test_interrupted_atomic_writes_are_flagged_then_recovered(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root, state_dir = make_vault(tmp_path)
    interrupted_write(monkeypatch, state_dir / "queue.json")
    interrupted_write(monkeypatch, state_dir / "metrics" / "2026-03-01.json")
    leftovers = sorted(path.relative_to(state_dir).as_posix() for path in fsutil.find_temp_artifacts(state_dir))
    assert len(leftovers) == 2

    result = run_preflight(root, state_dir, make_config())

    for name in leftovers:
        assert f"Leftover temp artifact from a previous run: {name}" in result.warnings

    report = recover(root, state_dir)

    assert sorted(report.fixed) == [f"Removed orphan {name}" for name in leftovers]
    assert fsutil.find_temp_artifacts(state_dir) == []
    assert not (state_dir / "queue.json").exists()
