"""Async runner for agent CLIs."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from ..errors import GardenerError
from .process import ProcessTree
from .utils import describe_exit, filter_environment, signal_name

MAX_OUTPUT_CHARS = 10 * 1024
TIMEOUT_EXIT_CODE = 124
DEFAULT_KILL_GRACE_SECONDS = 10.0
_READ_CHUNK = 4096

logger = logging.getLogger(__name__)


class ProviderRunError(GardenerError):
    """Raised when a provider process cannot be started."""


class ProviderNotFoundError(ProviderRunError):
    """Raised when the provider executable cannot be located."""


@dataclass(slots=True)
class ExecutionResult:
    """Holds the outcome of one provider invocation."""

    args: tuple[str, ...]
    returncode: int
    output: str
    duration_seconds: int
    reason: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class _OutputTail:
    def __init__(self, limit: int = MAX_OUTPUT_CHARS) -> None:
        self._limit = limit
        self._text = ""

    def append(self, chunk: str) -> None:
        self._text = (self._text + chunk)[-self._limit :]

    @property
    def text(self) -> str:
        return self._text


class ProviderRunner:
    """Execute an agent CLI under a wall-clock limit."""

    def __init__(self, executable: Path | str) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | str) -> Path:
        candidate = Path(explicit)
        if candidate.parent != Path("."):
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ProviderNotFoundError(f"Provider CLI not found at {candidate}")

        binary = shutil.which(str(explicit))
        if binary is None:
            raise ProviderNotFoundError(f"Provider CLI not found: {explicit}")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        timeout: float,
        extra_env: Mapping[str, str] | None = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        output_path: Path | None = None,
        verbose: bool = False,
    ) -> ExecutionResult:
        result = await self._invoke(
            tuple(args),
            cwd=Path(cwd),
            timeout=timeout,
            extra_env=extra_env,
            kill_grace_seconds=kill_grace_seconds,
            verbose=verbose,
        )
        if output_path is not None and result.output:
            _save_output(Path(output_path), result.output)
        return result

    async def _invoke(
        self,
        args: tuple[str, ...],
        *,
        cwd: Path,
        timeout: float,
        extra_env: Mapping[str, str] | None,
        kill_grace_seconds: float,
        verbose: bool,
    ) -> ExecutionResult:
        cmd = (str(self._executable_path), *args)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=filter_environment(extra_env),
                start_new_session=True,
            )
        except OSError as exc:
            raise ProviderRunError(f"Failed to start {cmd[0]}: {exc}") from exc

        tail = _OutputTail()
        reader = asyncio.create_task(_consume(process.stdout, tail, verbose))
        tree = ProcessTree(process)
        timed_out = False
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Provider timed out", extra={"pid": tree.pid, "timeout": timeout})
            await tree.shutdown(kill_grace_seconds)

        try:
            await asyncio.wait_for(reader, timeout=max(kill_grace_seconds, 1.0))
        except asyncio.TimeoutError:
            reader.cancel()

        duration = round(time.monotonic() - started)
        returncode = process.returncode
        if timed_out:
            return ExecutionResult(
                args=cmd,
                returncode=TIMEOUT_EXIT_CODE,
                output=tail.text.strip(),
                duration_seconds=duration,
                reason=f"Timeout after {timeout:g}s",
                timed_out=True,
            )

        killed_by = signal_name(-returncode) if returncode is not None and returncode < 0 else None
        exit_code = 128 - returncode if killed_by else (returncode if returncode is not None else 1)
        return ExecutionResult(
            args=cmd,
            returncode=exit_code,
            output=tail.text.strip(),
            duration_seconds=duration,
            reason=describe_exit(exit_code, killed_by),
        )


async def _consume(stream: asyncio.StreamReader | None, tail: _OutputTail, verbose: bool) -> None:
    if stream is None:
        return
    while chunk := await stream.read(_READ_CHUNK):
        text = chunk.decode("utf-8", errors="replace")
        tail.append(text)
        if verbose:
            sys.stdout.write(text)
            sys.stdout.flush()


def _save_output(path: Path, output: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(output[-MAX_OUTPUT_CHARS:], encoding="utf-8")
    except OSError:
        logger.debug("Could not save provider output", exc_info=True, extra={"path": str(path)})


class FakeProviderRunner(ProviderRunner):
    """Test double that records invocations and replays canned results."""

    def __init__(self, responses: Iterable[ExecutionResult] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._executable_path = Path("/tmp/fake-provider")

    async def _invoke(self, args: tuple[str, ...], **kwargs) -> ExecutionResult:  # type: ignore[override]
        self._invocations.append(args)
        if self._responses:
            return self._responses.pop(0)
        return ExecutionResult(args=args, returncode=0, output="", duration_seconds=0, reason="Success")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


__all__ = [
    "DEFAULT_KILL_GRACE_SECONDS",
    "ExecutionResult",
    "FakeProviderRunner",
    "MAX_OUTPUT_CHARS",
    "ProviderNotFoundError",
    "ProviderRunError",
    "ProviderRunner",
    "TIMEOUT_EXIT_CODE",
]
