"""Bounded, age-limited FIFO of deferred run requests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from .fsutil import atomic_write_json, isoformat, parse_timestamp, read_json_array, utc_now

QUEUE_FILE = "queue.json"
DEFAULT_MAX_SIZE = 10
DEFAULT_MAX_AGE_HOURS = 24.0


@dataclass(slots=True, frozen=True)
class QueueEntry:
    """One run request deferred because the lock was busy."""

    phase: str
    provider: str
    tier: str
    queued_at: str
    reason: str = "lock busy"

    @classmethod
    def create(
        cls,
        phase: str,
        provider: str,
        tier: str,
        reason: str = "lock busy",
        *,
        now: datetime | None = None,
    ) -> QueueEntry:
        return cls(phase=phase, provider=provider, tier=tier, queued_at=isoformat(now or utc_now()), reason=reason)

    def to_json(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "provider": self.provider,
            "tier": self.tier,
            "queuedAt": self.queued_at,
            "reason": self.reason,
        }

    @classmethod
    def from_json(cls, payload: Any) -> QueueEntry | None:
        if not isinstance(payload, dict):
            return None
        try:
            return cls(
                phase=str(payload["phase"]),
                provider=str(payload["provider"]),
                tier=str(payload["tier"]),
                queued_at=str(payload.get("queuedAt", "")),
                reason=str(payload.get("reason", "")),
            )
        except KeyError:
            return None

    def is_expired(self, now: datetime, max_age_hours: float) -> bool:
        """Entries with an unreadable ``queuedAt`` count as expired."""

        queued_at = parse_timestamp(self.queued_at)
        if queued_at is None:
            return True
        return (now - queued_at).total_seconds() > max_age_hours * 3600


class RunQueue:
    """Persistent queue stored as a JSON array in ``<state_dir>/queue.json``.

    Insertion order is FIFO order. A missing or corrupt file reads as empty.
    Nothing drains the queue implicitly; :meth:`drain` must be called
    explicitly.
    """

    def __init__(self, state_dir: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._state_dir = Path(state_dir)
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._state_dir / QUEUE_FILE

    def entries(self) -> list[QueueEntry]:
        loaded = (QueueEntry.from_json(item) for item in read_json_array(self.path))
        return [entry for entry in loaded if entry is not None]

    def depth(self) -> int:
        return len(self.entries())

    def peek(self) -> QueueEntry | None:
        entries = self.entries()
        return entries[0] if entries else None

    def enqueue(
        self,
        entry: QueueEntry,
        max_size: int = DEFAULT_MAX_SIZE,
        max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
    ) -> list[QueueEntry]:
        """Append ``entry`` after dropping expired entries; trims the oldest beyond ``max_size``."""

        now = self._clock()
        entries = [item for item in self.entries() if not item.is_expired(now, max_age_hours)]
        entries.append(entry)
        if max_size > 0 and len(entries) > max_size:
            entries = entries[len(entries) - max_size :]
        self._write(entries)
        return entries

    def dequeue(self) -> QueueEntry | None:
        entries = self.entries()
        if not entries:
            return None
        head, rest = entries[0], entries[1:]
        self._write(rest)
        return head

    def purge_stale(self, max_age_hours: float = DEFAULT_MAX_AGE_HOURS) -> int:
        """Drop expired entries and return how many were removed."""

        raw = read_json_array(self.path)
        now = self._clock()
        kept = [item for item in self.entries() if not item.is_expired(now, max_age_hours)]
        removed = len(raw) - len(kept)
        if removed > 0:
            self._write(kept)
        return removed

    def drain(self, run_fn: Callable[[QueueEntry], Any]) -> int:
        """Pop entries in FIFO order and hand each to ``run_fn``.

        An entry is removed before ``run_fn`` sees it; an exception from
        ``run_fn`` stops the drain and propagates.
        """

        drained = 0
        while (entry := self.dequeue()) is not None:
            run_fn(entry)
            drained += 1
        return drained

    def _write(self, entries: list[QueueEntry]) -> None:
        atomic_write_json(self.path, [item.to_json() for item in entries])


__all__ = ["DEFAULT_MAX_AGE_HOURS", "DEFAULT_MAX_SIZE", "QUEUE_FILE", "QueueEntry", "RunQueue"]
