"""Cancellable repeating timers that never keep the interpreter alive."""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class RepeatingTimer:
    """Invoke ``callback`` every ``interval`` seconds on a daemon thread.

    Each instance owns its thread and stop event, so independent timers
    never interfere. Exceptions raised by the callback are logged and the
    timer keeps running.
    """

    def __init__(self, interval: float, callback: Callable[[], None], *, name: str = "repeating-timer") -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._callback = callback
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def cancel(self, timeout: float | None = 1.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._callback()
            except Exception:  # noqa: BLE001 - a failing tick must not kill the timer
                logger.debug("Timer callback failed", exc_info=True, extra={"timer": self._name})


__all__ = ["RepeatingTimer"]
