"""vault-gardener command line."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from . import __version__
from .config import GardenerSettings, get_settings
from .lock import LockManager
from .metrics import read_metrics
from .pipeline import RunOptions, drain_queue, open_run_log, run_once
from .project import RUN_PHASES, ConfigLoadError, load_config
from .recover import recover
from .run_queue import RunQueue
from .runlog import RunLogger, configure_logging
from .scheduler import (
    DaemonSupervisor,
    InvalidCronError,
    PID_FILE,
    generate_launchd_plist,
    generate_systemd_unit,
    invoke_run,
    is_daemon_running,
    read_daemon_health,
    read_daemon_pid,
    start_daemon,
    stop_daemon,
    write_daemon_pid,
)

RECENT_RUNS = 10


def _workdir(args: argparse.Namespace) -> Path:
    return Path(args.vault).resolve()


def _load_config_or_exit(state_dir: Path):
    try:
        return load_config(state_dir)
    except ConfigLoadError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1)


def cmd_run(args: argparse.Namespace) -> int:
    options = RunOptions(
        phase=args.phase,
        provider=args.provider,
        tier=args.tier,
        dry_run=args.dry_run,
        verbose=args.verbose,
        force_unlock=args.force_unlock,
        no_queue=args.no_queue,
        force=args.force,
        validate=args.validate,
    )
    return run_once(_workdir(args), options).exit_code


def cmd_start(args: argparse.Namespace) -> int:
    settings = get_settings()
    workdir = _workdir(args)
    state_dir = settings.state_dir(workdir)
    config = _load_config_or_exit(state_dir)
    cron = config.schedule.cron

    if args.install:
        if sys.platform == "darwin":
            path = generate_launchd_plist(workdir, cron, state_dir_name=settings.state_dir_name)
            print(f"Installed launchd plist: {path}")
            print(f"Run: launchctl load {path}")
        elif sys.platform.startswith("linux"):
            path = generate_systemd_unit(workdir, cron, state_dir_name=settings.state_dir_name)
            print(f"Generated systemd unit: {path}")
            print(f"Run: systemctl --user enable --now {path.stem}.timer")
        else:
            print(f"Platform {sys.platform} not supported for --install. Use the daemon instead.", file=sys.stderr)
            return 1
        return 0

    running = is_daemon_running(state_dir)
    if running is not None:
        print(f"Daemon already running (PID: {running})")
        return 0

    try:
        pid = start_daemon(workdir, cron, settings=settings)
    except (InvalidCronError, OSError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"Gardener started. Cron: {cron}. PID: {pid}")
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    state_dir = get_settings().state_dir(_workdir(args))
    pid = read_daemon_pid(state_dir)
    if pid is None:
        print("No daemon running.")
        return 0
    if stop_daemon(state_dir) is not None:
        print(f"Gardener stopped (PID: {pid})")
    else:
        print(f"Process {pid} not found. Cleaned up stale PID file.")
    return 0


def _status_payload(settings: GardenerSettings, workdir: Path) -> dict:
    state_dir = settings.state_dir(workdir)
    config = _load_config_or_exit(state_dir)
    metrics = read_metrics(state_dir, 30)
    pid = is_daemon_running(state_dir)
    health = read_daemon_health(state_dir)

    vault_health = None
    if metrics:
        latest = metrics[0].get("vault_health") or {}
        vault_health = {
            "totalNotes": latest.get("total_notes", 0),
            "inboxItems": latest.get("inbox_items", 0),
            "seedNotes": latest.get("seed_notes", 0),
        }

    daemon: dict = {"running": pid is not None}
    if pid is not None:
        daemon["pid"] = pid
    if health is not None:
        daemon["health"] = health.to_json()

    return {
        "config": {
            "provider": config.provider,
            "tier": config.tier,
            "schedule": config.schedule.model_dump(),
        },
        "daemon": daemon,
        "locked": LockManager(state_dir).is_locked(),
        "queueDepth": RunQueue(state_dir).depth(),
        "recentRuns": metrics[:RECENT_RUNS],
        "vaultHealth": vault_health,
    }


def cmd_status(args: argparse.Namespace) -> int:
    payload = _status_payload(get_settings(), _workdir(args))
    if args.json:
        print(json.dumps(payload, indent=2))
        return 0

    config = payload["config"]
    daemon = payload["daemon"]
    schedule = config["schedule"]
    print("vault-gardener status\n")
    print("Configuration")
    print(f"  Provider: {config['provider']} / {config['tier']}")
    print(f"  Schedule: {schedule['cron'] if schedule['enabled'] else 'disabled'}")
    print(f"  Daemon: {'running (PID: %s)' % daemon['pid'] if daemon['running'] else 'stopped'}")
    if "health" in daemon:
        health = daemon["health"]
        print(f"  Daemon health: {health['status']} (failures: {health['consecutiveFailures']})")
    print(f"  Lock: {'active' if payload['locked'] else 'free'}")
    print(f"  Queue: {payload['queueDepth']} pending")

    runs = payload["recentRuns"]
    if not runs:
        print("\nNo runs yet. Run `vault-gardener run` to start.")
        return 0

    print("\nRecent Runs")
    print("  Date              Phase     Duration  Inbox  Links  Status")
    for record in runs:
        counts = record.get("metrics") or {}
        stamp = str(record.get("timestamp", ""))[:16].replace("T", " ")
        print(
            f"  {stamp:<16}  {str(record.get('phase', '')):<8}  {str(record.get('duration_seconds', 0)) + 's':>8}"
            f"  {counts.get('inbox_processed', 0):>5}  {counts.get('links_added', 0):>5}"
            f"  {'ok' if record.get('exitCode') == 0 else 'fail'}"
        )

    health = payload["vaultHealth"]
    if health:
        print("\nVault Health")
        print(f"  Total notes: {health['totalNotes']}")
        print(f"  Inbox items: {health['inboxItems']}")
        print(f"  Seed notes: {health['seedNotes']}")
    return 0


def cmd_recover(args: argparse.Namespace) -> int:
    settings = get_settings()
    workdir = _workdir(args)
    state_dir = settings.state_dir(workdir)
    run_log = RunLogger(state_dir) if state_dir.is_dir() else None

    print("vault-gardener recover\n")
    try:
        report = recover(workdir, state_dir, run_log=run_log)
    finally:
        if run_log is not None:
            run_log.close()

    for line in report.fixed:
        print(f"  [FIXED] {line}")
    for line in report.reported:
        print(f"  [REPORT] {line}")
    print("")
    print(report.summary())
    return 0


def cmd_queue(args: argparse.Namespace) -> int:
    settings = get_settings()
    workdir = _workdir(args)
    queue = RunQueue(settings.state_dir(workdir))

    if args.queue_cmd == "drain":
        drained = drain_queue(workdir, settings=settings)
        print(f"Drained {drained} queued run(s).")
        return 0
    if args.queue_cmd == "purge":
        purged = queue.purge_stale(args.max_age_hours)
        print(f"Purged {purged} stale queue entry(ies).")
        return 0

    entries = queue.entries()
    if args.json:
        print(json.dumps([entry.to_json() for entry in entries], indent=2))
    elif not entries:
        print("Queue is empty.")
    else:
        for entry in entries:
            print(f"{entry.queued_at}  {entry.phase:<8} {entry.provider}/{entry.tier}  ({entry.reason})")
    return 0


def cmd_daemon(args: argparse.Namespace) -> int:
    settings = get_settings()
    workdir = _workdir(args)
    state_dir = settings.state_dir(workdir)
    config = _load_config_or_exit(state_dir)
    resilience = config.resilience
    run_log = open_run_log(state_dir, config)

    try:
        supervisor = DaemonSupervisor(
            state_dir,
            args.cron or config.schedule.cron,
            lambda: invoke_run(workdir),
            max_consecutive_failures=resilience.daemon_max_consecutive_failures,
            backoff_base_seconds=resilience.daemon_backoff_base_seconds,
            backoff_max_exponent=resilience.daemon_backoff_max_exponent,
            health_interval_seconds=resilience.daemon_health_interval_seconds,
            shutdown_deadline_seconds=resilience.daemon_shutdown_deadline_seconds,
            run_log=run_log,
        )
    except InvalidCronError as exc:
        run_log.close()
        print(str(exc), file=sys.stderr)
        return 1

    write_daemon_pid(state_dir, os.getpid())
    try:
        supervisor.serve()
    finally:
        if read_daemon_pid(state_dir) == os.getpid():
            (state_dir / PID_FILE).unlink(missing_ok=True)
        run_log.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vault-gardener",
        description="Scheduled agent maintenance for markdown vaults",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-C", "--vault", default=".", help="Vault directory (default: current directory)")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Run the gardening pipeline once")
    p_run.add_argument("phase", nargs="?", default="all", help=f"One of: {', '.join(RUN_PHASES)} (default: all)")
    p_run.add_argument("--provider", choices=("claude", "codex", "gemini"), help="Override the configured provider")
    p_run.add_argument("--tier", choices=("power", "fast"), help="Override the configured tier")
    p_run.add_argument("--dry-run", action="store_true", help="Show what would run without executing")
    p_run.add_argument("--verbose", action="store_true", help="Stream provider output to the terminal")
    p_run.add_argument("--force-unlock", action="store_true", help="Force-release the lock before running")
    p_run.add_argument("--no-queue", action="store_true", help="Fail immediately if locked instead of queueing")
    p_run.add_argument("--force", action="store_true", help="Skip preflight checks")
    p_run.add_argument("--validate", action="store_true", help="Run preflight only, then exit")
    p_run.set_defaults(func=cmd_run)

    p_start = sub.add_parser("start", help="Start the background daemon")
    p_start.add_argument("--install", action="store_true", help="Install a launchd/systemd schedule instead")
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Stop the background daemon")
    p_stop.set_defaults(func=cmd_stop)

    p_status = sub.add_parser("status", help="Show configuration, daemon state and recent runs")
    p_status.add_argument("--json", action="store_true", help="Output JSON")
    p_status.set_defaults(func=cmd_status)

    p_recover = sub.add_parser("recover", help="Diagnose and fix stale state (locks, queue, metrics)")
    p_recover.set_defaults(func=cmd_recover)

    p_queue = sub.add_parser("queue", help="Inspect or replay deferred runs")
    queue_sub = p_queue.add_subparsers(dest="queue_cmd")
    p_list = queue_sub.add_parser("list", help="List queued runs")
    p_list.add_argument("--json", action="store_true", help="Output JSON")
    queue_sub.add_parser("drain", help="Replay queued runs in FIFO order")
    p_purge = queue_sub.add_parser("purge", help="Drop queued runs older than the age limit")
    p_purge.add_argument("--max-age-hours", type=float, default=24.0)
    p_queue.set_defaults(func=cmd_queue, queue_cmd="list", json=False)

    p_daemon = sub.add_parser("daemon", help=argparse.SUPPRESS)
    p_daemon.add_argument("--cron", help="Cron expression (defaults to schedule.cron)")
    p_daemon.set_defaults(func=cmd_daemon)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0
    configure_logging(get_settings().log_level)
    return args.func(args)


__all__ = ["build_parser", "main"]
