"""Two-phase termination of a provider's whole process group."""

from __future__ import annotations

import asyncio
import os
import signal


class ProcessTree:
    """A subprocess started in its own session, addressed as one group.

    ``terminate`` asks every member to exit, ``kill`` forces it; ``shutdown``
    runs both with a grace window in between.
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._group = process.pid

    @property
    def pid(self) -> int:
        return self._process.pid

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)

    async def shutdown(self, grace_seconds: float) -> int:
        """Terminate, wait up to ``grace_seconds``, then kill whatever remains."""

        self.terminate()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            pass
        self.kill()
        return await self._process.wait()

    def _signal(self, signum: int) -> None:
        try:
            os.killpg(self._group, signum)
        except ProcessLookupError:
            return
        except PermissionError:
            if self._process.returncode is None:
                self._process.send_signal(signum)


__all__ = ["ProcessTree"]
