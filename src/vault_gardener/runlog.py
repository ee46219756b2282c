"""Rotating JSON-lines run log.

Every component records its lifecycle events here. Each :class:`RunLogger`
owns a private ``logging.Logger`` whose records travel through an
instance-owned queue to a size-rotated file handler, so callers never block
on disk and two loggers never see each other's pending writes.
"""

from __future__ import annotations

import json
import logging
import queue
import sys
import traceback
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from typing import Any

from .fsutil import isoformat

LOG_DIR = "logs"
LOG_FILE = "gardener.log"
DEFAULT_MAX_LOG_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_BACKUPS = 3

_LEVELS = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}
_LEVEL_NAMES = {value: key for key, value in _LEVELS.items()}


def configure_logging(level: str) -> None:
    """Configure root logging for console diagnostics."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def error_payload(exc: BaseException, *, code: str | None = None) -> dict[str, Any]:
    """Build the ``error`` field of a log entry from an exception."""

    payload: dict[str, Any] = {"message": str(exc) or exc.__class__.__name__}
    if code is None:
        code = getattr(exc, "code", None) or getattr(exc, "errno", None)
    if code is not None:
        payload["code"] = str(code)
    payload["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return payload


class JsonLineFormatter(logging.Formatter):
    """Render one record as a single LogEntry JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": isoformat(datetime.fromtimestamp(record.created, timezone.utc)),
            "level": _LEVEL_NAMES.get(record.levelno, record.levelname.lower()),
            "event": record.getMessage(),
        }
        entry.update(getattr(record, "entry_fields", {}))
        return json.dumps(entry, default=str)


class _RotatingLogFileHandler(RotatingFileHandler):
    def handleError(self, record: logging.LogRecord) -> None:
        level = _LEVEL_NAMES.get(record.levelno, record.levelname.lower())
        try:
            sys.stderr.write(f"[gardener] {level}: {record.getMessage()}\n")
        except (OSError, ValueError):
            pass


class RunLogger:
    """Append-only structured log under ``<state_dir>/logs/gardener.log``."""

    def __init__(
        self,
        state_dir: Path,
        *,
        verbose: bool = False,
        max_bytes: int = DEFAULT_MAX_LOG_BYTES,
        max_backups: int = DEFAULT_MAX_BACKUPS,
    ) -> None:
        self._path = Path(state_dir) / LOG_DIR / LOG_FILE
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._verbose = verbose

        self._handler = _RotatingLogFileHandler(
            self._path,
            maxBytes=max_bytes,
            backupCount=max_backups,
            encoding="utf-8",
            delay=True,
        )
        self._handler.setFormatter(JsonLineFormatter())

        self._pending: queue.Queue[logging.LogRecord] = queue.Queue()
        self._listener = QueueListener(self._pending, self._handler)
        self._listener.start()

        self._logger = logging.Logger(f"vault_gardener.runlog.{id(self):x}", logging.DEBUG)
        self._logger.propagate = False
        self._logger.addHandler(QueueHandler(self._pending))
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    def info(self, event: str, **fields: Any) -> None:
        self._log("info", event, fields)

    def warn(self, event: str, **fields: Any) -> None:
        self._log("warn", event, fields)

    warning = warn

    def error(self, event: str, **fields: Any) -> None:
        self._log("error", event, fields)

    def fatal(self, event: str, **fields: Any) -> None:
        self._log("fatal", event, fields)

    def flush(self) -> None:
        """Block until every entry logged so far has reached the file."""

        if self._closed:
            return
        self._pending.join()
        self._handler.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listener.stop()
        self._handler.close()

    def __enter__(self) -> "RunLogger":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _log(self, level: str, event: str, fields: dict[str, Any]) -> None:
        if self._closed:
            return
        entry_fields = {key: value for key, value in fields.items() if value is not None}
        error = entry_fields.get("error")
        if isinstance(error, dict) and "stack" in error and not self._verbose:
            entry_fields["error"] = {key: value for key, value in error.items() if key != "stack"}
        self._logger.log(_LEVELS[level], event, extra={"entry_fields": entry_fields})


class NullRunLogger:
    """Drop-in stand-in used when a component runs without a run log."""

    path = None

    def info(self, event: str, **fields: Any) -> None:
        return None

    warn = warning = error = fatal = info

    def flush(self) -> None:
        return None

    def close(self) -> None:
        return None


NULL_RUN_LOG = NullRunLogger()


__all__ = [
    "DEFAULT_MAX_BACKUPS",
    "DEFAULT_MAX_LOG_BYTES",
    "JsonLineFormatter",
    "LOG_DIR",
    "LOG_FILE",
    "NULL_RUN_LOG",
    "NullRunLogger",
    "RunLogger",
    "configure_logging",
    "error_payload",
]
