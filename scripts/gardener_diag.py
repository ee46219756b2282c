"""vault-gardener diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from vault_gardener.config import get_settings
from vault_gardener.metrics import format_markdown_table, read_metrics
from vault_gardener.reports import detect_stale_features, read_reports
from vault_gardener.run_queue import RunQueue
from vault_gardener.scheduler import is_daemon_running, read_daemon_health


def state_dir_for(args: argparse.Namespace) -> Path:
    state_dir = get_settings().state_dir(Path(args.vault).resolve())
    if not state_dir.is_dir():
        print(f"No gardener state directory at {state_dir}")
        raise SystemExit(1)
    return state_dir


def cmd_metrics(args: argparse.Namespace) -> None:
    records = read_metrics(state_dir_for(args), args.days)
    if args.json:
        print(json.dumps(records, indent=2))
        return

    failures = sum(1 for record in records if record.get("exitCode") != 0)
    print(format_markdown_table(records))
    print(f"\n{len(records)} run(s), {failures} failed")


def cmd_reports(args: argparse.Namespace) -> None:
    reports = read_reports(state_dir_for(args), args.days)
    if args.limit is not None and args.limit > 0:
        reports = reports[: args.limit]
    if args.json:
        print(json.dumps([report.to_json() for report in reports], indent=2))
        return
    for report in reports:
        statuses = report.feature_statuses()
        counts: dict[str, int] = {}
        for values in statuses.values():
            for status in values:
                counts[status] = counts.get(status, 0) + 1
        summary = ", ".join(f"{status}={count}" for status, count in sorted(counts.items())) or "no features"
        print(f"{report.timestamp or '?'}  {summary}")


def cmd_stale_features(args: argparse.Namespace) -> None:
    reports = read_reports(state_dir_for(args), args.days)
    stale = detect_stale_features(reports, args.threshold)
    print(json.dumps({"threshold": args.threshold, "reports": len(reports), "stale": stale}, indent=2))


def cmd_queue(args: argparse.Namespace) -> None:
    queue = RunQueue(state_dir_for(args))
    print(json.dumps([entry.to_json() for entry in queue.entries()], indent=2))


def cmd_health(args: argparse.Namespace) -> None:
    state_dir = state_dir_for(args)
    health = read_daemon_health(state_dir)
    pid = is_daemon_running(state_dir)
    payload = {
        "running": pid is not None,
        "pid": pid,
        "health": health.to_json() if health else None,
    }
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="vault-gardener diagnostics")
    parser.add_argument("--vault", default=".", help="Vault directory (default: current directory)")
    sub = parser.add_subparsers(dest="cmd")

    p_metrics = sub.add_parser("metrics", help="Show recorded run metrics")
    p_metrics.add_argument("--days", type=int, default=30)
    p_metrics.add_argument("--json", action="store_true", help="Output JSON")
    p_metrics.set_defaults(func=cmd_metrics)

    p_reports = sub.add_parser("reports", help="List archived run reports")
    p_reports.add_argument("--days", type=int, default=30)
    p_reports.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N reports",
    )
    p_reports.add_argument("--json", action="store_true", help="Output JSON")
    p_reports.set_defaults(func=cmd_reports)

    p_stale = sub.add_parser("stale-features", help="Features skipped in every recent report")
    p_stale.add_argument("--days", type=int, default=30)
    p_stale.add_argument("--threshold", type=int, default=3)
    p_stale.set_defaults(func=cmd_stale_features)

    p_queue = sub.add_parser("queue", help="Dump the deferred run queue")
    p_queue.set_defaults(func=cmd_queue)

    p_health = sub.add_parser("health", help="Show daemon liveness and health record")
    p_health.set_defaults(func=cmd_health)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
