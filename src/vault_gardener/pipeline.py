"""One gardening run, end to end, plus explicit queue draining."""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .config import GardenerSettings, get_settings
from .fsutil import atomic_write_text, isoformat, utc_now
from .lock import LockBusyError, LockManager, acquire_or_queue
from .metrics import build_run_metrics, collect_post, collect_pre, format_summary, write_metrics
from .notify import FailurePayload, notify_failure
from .preflight import PreflightResult, run_preflight
from .project import RUN_PHASES, ConfigLoadError, GardenerConfig, load_config, resolve_model
from .providers import ExecutionResult, ProviderRunError, ProviderRunner, build_command
from .reports import (
    ParsedReport,
    RunLogContext,
    archive_report,
    consume_report,
    detect_stale_features,
    parse_report,
    read_reports,
    write_run_log,
)
from .run_queue import QueueEntry, RunQueue
from .runlog import LOG_DIR, RunLogger, error_payload

LAST_RUN_FILE = "last-run.md"
LAST_OUTPUT_FILE = "last-run-output.txt"
STALE_FEATURE_THRESHOLD = 3
_MIB = 1024 * 1024

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunOptions:
    phase: str = "all"
    provider: str | None = None
    tier: str | None = None
    dry_run: bool = False
    verbose: bool = False
    force_unlock: bool = False
    no_queue: bool = False
    force: bool = False
    validate: bool = False


@dataclass(slots=True)
class RunOutcome:
    """What happened to one run attempt; ``exit_code`` is the process exit status."""

    status: str
    exit_code: int
    preflight: PreflightResult | None = None
    result: ExecutionResult | None = None
    metrics: dict[str, Any] | None = None
    report: ParsedReport | None = None
    messages: list[str] = field(default_factory=list)


def _echo_err(message: str) -> None:
    print(message, file=sys.stderr)


def _best_effort(run_log: RunLogger, event: str, func: Callable[..., Any], *args, **kwargs) -> Any:
    """Run one bookkeeping step; a failure is logged and reported as None."""

    try:
        return func(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001 - bookkeeping steps are independent
        logger.debug("Bookkeeping step failed", exc_info=True, extra={"event": event})
        run_log.warn(event, error=error_payload(exc))
        return None


def open_run_log(state_dir: Path, config: GardenerConfig, *, verbose: bool = False) -> RunLogger:
    resilience = config.resilience
    return RunLogger(
        state_dir,
        verbose=verbose,
        max_bytes=int(resilience.log_max_size_mb * _MIB),
        max_backups=resilience.log_max_backups,
    )


def reconcile_report(state_dir: Path, config: GardenerConfig, run_log: RunLogger) -> ParsedReport | None:
    """Parse, log, archive and consume the agent's run report."""

    report = parse_report(state_dir, config.enabled_features())
    if report is None:
        run_log.warn("report_not_found")
        return None

    diagnostics = report.diagnostics
    for error in diagnostics.parse_errors:
        run_log.warn("report_parse_error", context={"error": error})
    for warning in diagnostics.validation_warnings:
        run_log.warn("report_validation", context={"warning": warning})
    if diagnostics.missing_features:
        run_log.warn("report_missing_features", context={"features": diagnostics.missing_features})
    if diagnostics.unexpected_features:
        run_log.warn("report_unexpected_features", context={"features": diagnostics.unexpected_features})

    archive_report(state_dir, report)
    consume_report(state_dir)

    stale = detect_stale_features(read_reports(state_dir), STALE_FEATURE_THRESHOLD)
    if stale:
        run_log.warn("report_stale_features", context={"features": stale})
    return report


def _write_last_run(state_dir: Path, metrics: dict[str, Any]) -> None:
    content = (
        "---\n"
        f"date: {metrics['date']}\n"
        f"timestamp: {metrics['timestamp']}\n"
        f"phase: {metrics['phase']}\n"
        f"provider: {metrics['provider']}\n"
        f"model: {metrics['model']}\n"
        f"duration: {metrics['duration_seconds']}s\n"
        f"exitCode: {metrics['exitCode']}\n"
        "---\n"
    )
    atomic_write_text(Path(state_dir) / LAST_RUN_FILE, content)


def run_once(
    workdir: Path,
    options: RunOptions,
    *,
    settings: GardenerSettings | None = None,
    runner_factory: Callable[[str], ProviderRunner] = ProviderRunner,
    echo: Callable[[str], None] = print,
    echo_err: Callable[[str], None] = _echo_err,
) -> RunOutcome:
    """Preflight, lock, invoke the provider, then record metrics and the report."""

    settings = settings or get_settings()
    workdir = Path(workdir).resolve()
    state_dir = settings.state_dir(workdir)

    if options.phase not in RUN_PHASES:
        message = f'Invalid phase "{options.phase}". Use: seed, nurture, tend, or all'
        echo_err(message)
        return RunOutcome(status="invalid_phase", exit_code=1, messages=[message])

    try:
        config = load_config(state_dir)
    except ConfigLoadError as exc:
        echo_err(str(exc))
        return RunOutcome(status="config_error", exit_code=1, messages=[str(exc)])

    overrides = {key: value for key, value in (("provider", options.provider), ("tier", options.tier)) if value}
    if overrides:
        config = config.model_copy(update=overrides)

    run_log = open_run_log(state_dir, config, verbose=options.verbose or settings.verbose)
    try:
        return _run_with_log(workdir, state_dir, config, options, run_log, runner_factory, echo, echo_err)
    finally:
        run_log.close()


def _run_with_log(
    workdir: Path,
    state_dir: Path,
    config: GardenerConfig,
    options: RunOptions,
    run_log: RunLogger,
    runner_factory: Callable[[str], ProviderRunner],
    echo: Callable[[str], None],
    echo_err: Callable[[str], None],
) -> RunOutcome:
    phase = options.phase
    resilience = config.resilience

    run_log.info("run_start", phase=phase, provider=config.provider, model=resolve_model(config))

    preflight: PreflightResult | None = None
    if options.validate or (not options.force and resilience.preflight_enabled):
        preflight = run_preflight(workdir, state_dir, config, run_log)
        for warning in preflight.warnings:
            echo(f"  [warn] {warning}")
        if not preflight.ok:
            for error in preflight.errors:
                echo_err(f"  [error] {error}")
            return RunOutcome(status="preflight_failed", exit_code=1, preflight=preflight)

    if options.validate:
        echo("Preflight checks passed.")
        return RunOutcome(status="validated", exit_code=0, preflight=preflight)

    try:
        command = build_command(config, phase, state_dir)
    except ProviderRunError as exc:
        run_log.error("run_failed", phase=phase, provider=config.provider, error=error_payload(exc))
        echo_err(str(exc))
        return RunOutcome(status="command_error", exit_code=1, preflight=preflight, messages=[str(exc)])

    echo(f"vault-gardener run {phase}: {config.provider}/{command.model}")

    if options.dry_run:
        echo("Dry run, would execute:")
        echo(f"  Provider: {config.provider}")
        echo(f"  Model: {command.model}")
        echo(f"  Prompt: {command.prompt_file}")
        echo(f"  Context: {command.context_file}")
        echo(f"  Timeout: {command.timeout}s")
        echo(f"  CWD: {workdir}")
        return RunOutcome(status="dry_run", exit_code=0, preflight=preflight)

    manager = LockManager(
        state_dir,
        stale_threshold_seconds=resilience.lock_stale_threshold_seconds,
        heartbeat_interval_seconds=resilience.lock_heartbeat_interval_seconds,
        run_log=run_log,
    )
    if options.force_unlock:
        manager.force_release()

    try:
        if options.no_queue or not resilience.queue_enabled:
            handle = manager.acquire()
        else:
            entry = QueueEntry.create(phase, config.provider, config.tier, reason="lock_busy")
            handle = acquire_or_queue(
                manager,
                RunQueue(state_dir),
                entry,
                max_size=resilience.queue_max_size,
                max_age_hours=resilience.queue_max_age_hours,
                run_log=run_log,
            )
            if handle is None:
                echo("Gardener busy: run queued for next invocation.")
                return RunOutcome(status="queued", exit_code=0, preflight=preflight)
    except (LockBusyError, OSError) as exc:
        run_log.error("lock_failed", phase=phase, error=error_payload(exc))
        echo_err(str(exc))
        return RunOutcome(status="lock_busy", exit_code=1, preflight=preflight, messages=[str(exc)])

    handle.start_heartbeat()
    started = time.monotonic()
    exit_code = 0
    reason = "Success"
    result: ExecutionResult | None = None
    metrics: dict[str, Any] | None = None
    report: ParsedReport | None = None

    try:
        pre = _best_effort(run_log, "metrics_pre_failed", collect_pre, workdir, config)

        try:
            runner = runner_factory(command.executable)
            result = asyncio.run(
                runner.run(
                    command.args,
                    cwd=workdir,
                    timeout=command.timeout,
                    extra_env=command.env,
                    kill_grace_seconds=resilience.provider_kill_grace_seconds,
                    output_path=state_dir / LOG_DIR / LAST_OUTPUT_FILE,
                    verbose=options.verbose,
                )
            )
            exit_code = result.returncode
            reason = result.reason
        except ProviderRunError as exc:
            exit_code = 1
            reason = str(exc)
            run_log.error("provider_start_failed", phase=phase, provider=config.provider, error=error_payload(exc))

        if exit_code != 0:
            echo_err(f"Provider exited with code {exit_code} ({reason})")
            if result is not None and result.output:
                echo_err(result.output[-500:])

        post = _best_effort(run_log, "metrics_post_failed", collect_post, workdir, config, pre) if pre is not None else None
        duration = round(time.monotonic() - started)

        report = _best_effort(run_log, "report_parse_failed", reconcile_report, state_dir, config, run_log)
        _best_effort(
            run_log,
            "run_log_write_failed",
            write_run_log,
            state_dir,
            report,
            RunLogContext(
                phase=phase,
                provider=config.provider,
                model=command.model,
                duration_seconds=duration,
                pre=pre,
                post=post,
                exit_code=exit_code,
            ),
        )

        metrics = build_run_metrics(
            phase=phase,
            provider=config.provider,
            tier=config.tier,
            model=command.model,
            duration_seconds=duration,
            exit_code=exit_code,
            pre=pre,
            post=post,
        )
        if _best_effort(run_log, "metrics_write_failed", write_metrics, state_dir, metrics) is not None:
            echo(format_summary(metrics))
        _best_effort(run_log, "last_run_write_failed", _write_last_run, state_dir, metrics)
    finally:
        handle.release()

    duration = round(time.monotonic() - started)
    if exit_code != 0:
        notify_failure(
            FailurePayload(
                phase=phase,
                duration_seconds=duration,
                exit_code=exit_code,
                reason=f"Provider exited with code {exit_code}: {reason}",
                timestamp=isoformat(utc_now()),
            ),
            run_log,
        )
        run_log.error(
            "run_failed",
            phase=phase,
            provider=config.provider,
            model=command.model,
            duration_seconds=duration,
            exitCode=exit_code,
            error={"message": reason},
        )
        status = "failed"
    else:
        run_log.info(
            "run_complete",
            phase=phase,
            provider=config.provider,
            model=command.model,
            duration_seconds=duration,
            exitCode=0,
        )
        status = "completed"

    return RunOutcome(
        status=status,
        exit_code=0 if exit_code == 0 else 1,
        preflight=preflight,
        result=result,
        metrics=metrics,
        report=report,
    )


def drain_queue(
    workdir: Path,
    run_fn: Callable[[QueueEntry], Any] | None = None,
    *,
    settings: GardenerSettings | None = None,
) -> int:
    """Replay every queued run in FIFO order; returns how many were drained.

    Replays never re-queue: a replay that finds the lock busy fails instead.
    """

    settings = settings or get_settings()
    workdir = Path(workdir).resolve()
    queue = RunQueue(settings.state_dir(workdir))

    def replay(entry: QueueEntry) -> RunOutcome:
        options = RunOptions(phase=entry.phase, provider=entry.provider, tier=entry.tier, no_queue=True)
        return run_once(workdir, options, settings=settings)

    return queue.drain(run_fn or replay)


__all__ = [
    "LAST_RUN_FILE",
    "RunOptions",
    "RunOutcome",
    "drain_queue",
    "open_run_log",
    "reconcile_report",
    "run_once",
]
