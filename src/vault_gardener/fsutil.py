"""Filesystem helpers shared by every persisted artifact.

All JSON state is written with write-temp-then-rename so a concurrent reader
never observes a half-written file, and every reader treats a missing or
corrupt file as absent.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

MAX_SCAN_FILE_SIZE = 1_048_576

# Suffix of every temp file and staging directory the gardener creates.
TEMP_ARTIFACT_SUFFIX = ".gardener.tmp"

# Directories skipped during recursive vault walks.
SKIP_DIRS = frozenset(
    {
        ".git",
        ".obsidian",
        ".logseq",
        ".foam",
        ".gardener",
        ".trash",
        "node_modules",
    }
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Render ``moment`` as ISO-8601 UTC with a ``Z`` suffix."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""

    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def local_date(moment: datetime | None = None) -> str:
    """Format ``moment`` as YYYY-MM-DD in the local timezone."""

    return (moment or utc_now()).astimezone().strftime("%Y-%m-%d")


def local_time(moment: datetime | None = None) -> str:
    return (moment or utc_now()).astimezone().strftime("%H:%M")


def atomic_write_text(path: Path, text: str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f"{path.name}.", suffix=TEMP_ARTIFACT_SUFFIX)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2))


def read_json(path: Path, default: Any = None) -> Any:
    """Return the decoded JSON at ``path`` or ``default`` if absent or corrupt."""

    try:
        raw = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def read_json_array(path: Path) -> list[Any]:
    payload = read_json(path, default=[])
    return payload if isinstance(payload, list) else []


def append_json_array(path: Path, item: Any) -> None:
    """Append ``item`` to the JSON array stored at ``path``.

    A missing or corrupt file starts a fresh array.
    """

    entries = read_json_array(path)
    entries.append(item)
    atomic_write_json(path, entries)


def dated_json_files(directory: Path, days: int | None = None, *, today: datetime | None = None) -> list[Path]:
    """Return ``YYYY-MM-DD.json`` files in ``directory``, oldest first."""

    try:
        files = sorted(
            entry for entry in Path(directory).iterdir() if entry.is_file() and entry.suffix == ".json"
        )
    except OSError:
        return []

    if days and days > 0:
        cutoff = local_date((today or utc_now()) - timedelta(days=days))
        files = [entry for entry in files if entry.stem >= cutoff]
    return files


def read_json_array_dir(directory: Path, days: int | None = None, *, today: datetime | None = None) -> list[Any]:
    """Concatenate every per-day JSON array in ``directory``; corrupt files are skipped."""

    items: list[Any] = []
    for path in dated_json_files(directory, days, today=today):
        payload = read_json(path)
        if isinstance(payload, list):
            items.extend(payload)
    return items


def find_temp_artifacts(directory: Path) -> list[Path]:
    """Temp files and staging directories under ``directory``, outermost first."""

    try:
        found = sorted(Path(directory).rglob(f"*{TEMP_ARTIFACT_SUFFIX}"))
    except OSError:
        return []
    artifacts: list[Path] = []
    for path in found:
        if any(parent in artifacts for parent in path.parents):
            continue
        artifacts.append(path)
    return artifacts


def matches_in_head(path: Path, pattern: str, lines: int) -> bool:
    """Check whether the first ``lines`` lines of ``path`` contain ``pattern``."""

    try:
        if Path(path).stat().st_size > MAX_SCAN_FILE_SIZE:
            return False
        with open(path, encoding="utf-8", errors="replace") as handle:
            head = [line for _, line in zip(range(lines), handle)]
    except OSError:
        return False
    return pattern in "".join(head)


def remove_quietly(paths: Iterable[Path]) -> None:
    for path in paths:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            continue


def pid_alive(pid: int) -> bool:
    """Return True when a process with ``pid`` exists on this host."""

    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


__all__ = [
    "MAX_SCAN_FILE_SIZE",
    "SKIP_DIRS",
    "TEMP_ARTIFACT_SUFFIX",
    "append_json_array",
    "atomic_write_json",
    "atomic_write_text",
    "dated_json_files",
    "find_temp_artifacts",
    "isoformat",
    "local_date",
    "local_time",
    "matches_in_head",
    "parse_timestamp",
    "pid_alive",
    "read_json",
    "read_json_array",
    "read_json_array_dir",
    "remove_quietly",
    "utc_now",
]
