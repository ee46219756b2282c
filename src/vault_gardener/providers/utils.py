"""Environment and exit-status helpers for provider subprocesses."""

from __future__ import annotations

import os
import signal
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

ENV_DENYLIST = frozenset(
    {
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "GITHUB_TOKEN",
        "GH_TOKEN",
        "GITLAB_TOKEN",
        "NPM_TOKEN",
        "NODE_AUTH_TOKEN",
        "DATABASE_URL",
        "DB_PASSWORD",
        "PGPASSWORD",
        "REDIS_URL",
        "REDIS_PASSWORD",
        "SSH_AUTH_SOCK",
        "SSH_AGENT_PID",
        "DOCKER_AUTH_CONFIG",
        "SLACK_TOKEN",
        "SLACK_WEBHOOK_URL",
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "STRIPE_SECRET_KEY",
        "STRIPE_API_KEY",
        "SECRET_KEY",
        "SECRET_KEY_BASE",
        "ENCRYPTION_KEY",
        "MASTER_KEY",
        "GARDENER_WEBHOOK_URL",
    }
)
_DENIED_FRAGMENTS = ("SECRET", "PASSWORD", "PRIVATE_KEY")

EXIT_REASONS = {
    0: "Success",
    1: "General error",
    124: "Timeout",
    137: "Killed (OOM or SIGKILL)",
    139: "Segfault",
}


def filter_environment(
    additional: Mapping[str, str] | None = None,
    *,
    source: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the parent environment minus credentials and virtualenv leakage.

    ``additional`` is merged last, so it can re-grant a specific variable the
    provider needs.
    """

    env: dict[str, str] = {}
    for key, value in (os.environ if source is None else source).items():
        upper = key.upper()
        if key in _SANITIZED_VARS or key in ENV_DENYLIST:
            continue
        if any(fragment in upper for fragment in _DENIED_FRAGMENTS):
            continue
        env[key] = value
    if additional:
        env.update(additional)
    return env


def describe_exit(returncode: int | None, signal_name: str | None = None) -> str:
    if signal_name:
        return f"Signal: {signal_name}"
    if returncode is None:
        return "Unknown"
    return EXIT_REASONS.get(returncode, f"Exit code: {returncode}")


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


__all__ = ["ENV_DENYLIST", "EXIT_REASONS", "describe_exit", "filter_environment", "signal_name"]
