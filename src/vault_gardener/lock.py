"""Filesystem lock with heartbeat-based liveness.

The existence of ``<state_dir>/.lock`` is the lock. It is created with
``O_CREAT | O_EXCL`` so exactly one process wins; the holder then rewrites
``.lock-heartbeat`` on a fixed interval. A lock is live only while its holder
process exists and the heartbeat is fresh, so a crashed run never wedges the
vault for longer than the stale threshold.

Every acquisition carries a random token. Reclaiming a stale lock first moves
it aside and only deletes it if it is still the record that was judged stale,
and a holder whose record was replaced stops heartbeating.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import socket
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .errors import GardenerError
from .fsutil import (
    TEMP_ARTIFACT_SUFFIX,
    atomic_write_json,
    isoformat,
    parse_timestamp,
    pid_alive,
    read_json,
    remove_quietly,
    utc_now,
)
from .runlog import NULL_RUN_LOG
from .timers import RepeatingTimer

if TYPE_CHECKING:
    from .run_queue import QueueEntry, RunQueue

LOCK_FILE = ".lock"
HEARTBEAT_FILE = ".lock-heartbeat"
RECLAIM_SUFFIX = f".reclaim{TEMP_ARTIFACT_SUFFIX}"
MAX_RECLAIM_ATTEMPTS = 3
DEFAULT_STALE_THRESHOLD_SECONDS = 90.0
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 30.0

logger = logging.getLogger(__name__)


def new_token() -> str:
    return secrets.token_hex(8)


@dataclass(slots=True, frozen=True)
class LockRecord:
    holder_id: int
    started_at: str
    host: str
    token: str = ""

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"holderId": self.holder_id, "startedAt": self.started_at, "host": self.host}
        if self.token:
            payload["token"] = self.token
        return payload

    @classmethod
    def from_json(cls, payload: Any) -> LockRecord | None:
        if not isinstance(payload, dict):
            return None
        holder = payload.get("holderId", payload.get("pid"))
        if not isinstance(holder, int) or isinstance(holder, bool):
            return None
        host = payload.get("host", payload.get("hostname")) or ""
        return cls(
            holder_id=holder,
            started_at=str(payload.get("startedAt", "")),
            host=str(host),
            token=str(payload.get("token") or ""),
        )


@dataclass(slots=True, frozen=True)
class Heartbeat:
    holder_id: int
    timestamp: str
    token: str = ""

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"holderId": self.holder_id, "timestamp": self.timestamp}
        if self.token:
            payload["token"] = self.token
        return payload

    @classmethod
    def from_json(cls, payload: Any) -> Heartbeat | None:
        if not isinstance(payload, dict):
            return None
        holder = payload.get("holderId", payload.get("pid"))
        timestamp = payload.get("timestamp")
        if not isinstance(holder, int) or not isinstance(timestamp, str):
            return None
        return cls(holder_id=holder, timestamp=timestamp, token=str(payload.get("token") or ""))

    def belongs_to(self, record: LockRecord) -> bool:
        if self.holder_id != record.holder_id:
            return False
        return not (self.token and record.token and self.token != record.token)


class LockBusyError(GardenerError):
    """Raised when the lock is held by a live holder."""

    def __init__(self, holder: LockRecord | None) -> None:
        self.holder = holder
        if holder is None:
            message = "Another gardener run holds the lock"
        else:
            message = (
                f"Another gardener run is active (pid {holder.holder_id} on {holder.host or 'unknown host'}, "
                f"started {holder.started_at or 'at an unknown time'})"
            )
        super().__init__(message)


class LockHandle:
    """Ownership of an acquired lock; releases on ``release()`` or context exit."""

    def __init__(self, manager: LockManager, record: LockRecord) -> None:
        self._manager = manager
        self._record = record
        self._timer: RepeatingTimer | None = None
        self._released = False
        self._lost = False

    @property
    def record(self) -> LockRecord:
        return self._record

    @property
    def released(self) -> bool:
        return self._released

    @property
    def lost(self) -> bool:
        """True once the lock on disk was found to belong to someone else."""

        return self._lost

    @property
    def heartbeat_active(self) -> bool:
        return self._timer is not None and self._timer.active

    def beat(self) -> None:
        """Rewrite the heartbeat while this handle still owns the lock.

        Write failures are logged and ignored. Finding another record on disk
        marks the handle lost and stops the timer.
        """

        if self._released or self._lost:
            return
        current = self._manager.read_lock()
        if current is None:
            # Moved aside by a contender checking staleness; retry next tick.
            return
        if current != self._record:
            self._lost = True
            if self._timer is not None:
                self._timer.cancel()
            self._manager._report_lost(self._record, current)
            return
        heartbeat = Heartbeat(
            holder_id=self._record.holder_id,
            timestamp=isoformat(self._manager.now()),
            token=self._record.token,
        )
        try:
            atomic_write_json(self._manager.heartbeat_path, heartbeat.to_json())
        except OSError:
            logger.debug("Heartbeat write failed", exc_info=True, extra={"path": str(self._manager.heartbeat_path)})

    def start_heartbeat(self) -> None:
        if self._released or self._lost or self._timer is not None:
            return
        self._timer = RepeatingTimer(
            self._manager.heartbeat_interval_seconds, self.beat, name="gardener-lock-heartbeat"
        )
        self._timer.start()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._manager._release_owned(self._record)

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class LockManager:
    """Acquire, inspect and reclaim the per-vault run lock."""

    def __init__(
        self,
        state_dir: Path,
        *,
        stale_threshold_seconds: float = DEFAULT_STALE_THRESHOLD_SECONDS,
        heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        run_log=None,
        holder_id: int | None = None,
        host: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        pid_probe: Callable[[int], bool] = pid_alive,
    ) -> None:
        self._state_dir = Path(state_dir)
        self._stale_threshold = stale_threshold_seconds
        self._heartbeat_interval = heartbeat_interval_seconds
        self._run_log = run_log or NULL_RUN_LOG
        self._holder_id = holder_id if holder_id is not None else os.getpid()
        self._host = host if host is not None else socket.gethostname()
        self._clock = clock
        self._pid_probe = pid_probe

    @property
    def lock_path(self) -> Path:
        return self._state_dir / LOCK_FILE

    @property
    def heartbeat_path(self) -> Path:
        return self._state_dir / HEARTBEAT_FILE

    @property
    def heartbeat_interval_seconds(self) -> float:
        return self._heartbeat_interval

    def now(self) -> datetime:
        return self._clock()

    def acquire(self) -> LockHandle:
        """Take the lock, reclaiming a stale one.

        Raises :class:`LockBusyError` while a live holder owns the lock. Errors
        other than "already exists" propagate unchanged.
        """

        self._state_dir.mkdir(parents=True, exist_ok=True)
        for _ in range(MAX_RECLAIM_ATTEMPTS):
            record = LockRecord(
                holder_id=self._holder_id,
                started_at=isoformat(self.now()),
                host=self._host,
                token=new_token(),
            )
            if self._publish(record):
                lock = LockHandle(self, record)
                lock.beat()
                self._run_log.info("lock.acquired", context={"holderId": record.holder_id, "host": record.host})
                return lock

            existing = self.read_lock()
            if existing is None and self._lock_age_seconds() <= self._stale_threshold:
                # Unreadable but recent: most likely a holder still writing it.
                raise LockBusyError(None)
            if existing is not None and not self.is_stale(existing):
                raise LockBusyError(existing)
            # A lock that changed hands meanwhile is judged again on the next pass.
            self.reclaim(existing)

        raise LockBusyError(self.read_lock())

    def is_locked(self) -> bool:
        return self.lock_path.exists()

    def read_lock(self) -> LockRecord | None:
        return LockRecord.from_json(read_json(self.lock_path))

    def read_heartbeat(self) -> Heartbeat | None:
        return Heartbeat.from_json(read_json(self.heartbeat_path))

    def is_stale(self, record: LockRecord) -> bool:
        """Decide whether ``record`` belongs to a dead or unresponsive holder.

        The pid is only probed when the record was written on this host;
        otherwise heartbeat freshness alone decides.
        """

        if record.host in ("", self._host) and not self._pid_probe(record.holder_id):
            return True

        heartbeat = self.read_heartbeat()
        if heartbeat is None or not heartbeat.belongs_to(record):
            return True
        beat_at = parse_timestamp(heartbeat.timestamp)
        if beat_at is None:
            return True
        return (self.now() - beat_at).total_seconds() > self._stale_threshold

    def reclaim(self, expected: LockRecord | None) -> bool:
        """Delete the lock only if it still holds ``expected``.

        The lock is renamed to a claim file private to this manager, re-read,
        and put back when it no longer matches. Returns False in that case;
        True once the lock is gone.
        """

        claim = self._state_dir / f"{LOCK_FILE}.{self._holder_id}.{new_token()}{RECLAIM_SUFFIX}"
        try:
            os.rename(self.lock_path, claim)
        except FileNotFoundError:
            return True

        claimed = LockRecord.from_json(read_json(claim))
        if claimed != expected:
            self._restore(claim, claimed)
            return False

        remove_quietly([claim])
        heartbeat = self.read_heartbeat()
        if expected is not None and heartbeat is not None and heartbeat.belongs_to(expected):
            remove_quietly([self.heartbeat_path])
        self._run_log.warn(
            "lock.reclaimed",
            context={"holderId": expected.holder_id if expected else None, "host": expected.host if expected else None},
        )
        return True

    def force_release(self) -> None:
        """Remove the lock and heartbeat regardless of holder liveness."""

        holder = self.read_lock()
        remove_quietly([self.lock_path, self.heartbeat_path])
        self._run_log.warn(
            "lock.force_release",
            context={"holderId": holder.holder_id if holder else None, "host": holder.host if holder else None},
        )
        logger.warning("Lock force-released", extra={"path": str(self.lock_path)})

    def _publish(self, record: LockRecord) -> bool:
        return self._create_exclusive(json.dumps(record.to_json(), indent=2))

    def _create_exclusive(self, text: str) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
        except BaseException:
            remove_quietly([self.lock_path])
            raise
        return True

    def _restore(self, claim: Path, claimed: LockRecord | None) -> None:
        try:
            text = claim.read_text(encoding="utf-8")
            if not self._create_exclusive(text):
                # Someone published a newer lock while the claim was out.
                self._run_log.warn(
                    "lock.reclaim_dropped",
                    context={"holderId": claimed.holder_id if claimed else None},
                )
        finally:
            remove_quietly([claim])

    def _lock_age_seconds(self) -> float:
        try:
            return time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return float("inf")

    def _report_lost(self, record: LockRecord, current: LockRecord) -> None:
        self._run_log.warn(
            "lock.lost",
            context={"holderId": record.holder_id, "currentHolderId": current.holder_id, "host": current.host},
        )
        logger.warning("Lock taken over by another holder", extra={"path": str(self.lock_path)})

    def _release_owned(self, record: LockRecord) -> None:
        current = self.read_lock()
        if current is not None and current != record:
            self._run_log.warn(
                "lock.release_skipped",
                context={"holderId": current.holder_id, "host": current.host},
            )
            return
        remove_quietly([self.lock_path, self.heartbeat_path])
        self._run_log.info("lock.released", context={"holderId": record.holder_id})


def acquire_or_queue(
    manager: LockManager,
    queue: RunQueue,
    entry: QueueEntry,
    *,
    max_size: int = 10,
    max_age_hours: float = 24,
    run_log=None,
) -> LockHandle | None:
    """Acquire the lock, or defer ``entry`` to the queue when it is busy."""

    try:
        return manager.acquire()
    except LockBusyError as exc:
        queue.enqueue(entry, max_size=max_size, max_age_hours=max_age_hours)
        (run_log or NULL_RUN_LOG).info(
            "lock.queued",
            phase=entry.phase,
            provider=entry.provider,
            context={"reason": str(exc), "depth": queue.depth()},
        )
        return None


__all__ = [
    "HEARTBEAT_FILE",
    "Heartbeat",
    "LOCK_FILE",
    "LockBusyError",
    "LockHandle",
    "LockManager",
    "LockRecord",
    "acquire_or_queue",
]
