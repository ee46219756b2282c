"""Failure webhook."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

import httpx

from .config import get_settings
from .runlog import NULL_RUN_LOG

NOTIFY_TIMEOUT_SECONDS = 5.0

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FailurePayload:
    phase: str
    duration_seconds: int
    exit_code: int
    reason: str
    timestamp: str


def validate_webhook_url(url: str) -> bool:
    """Accept only absolute http(s) URLs with a host."""

    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.host)


def notify_failure(
    payload: FailurePayload,
    run_log=None,
    *,
    webhook_url: str | None = None,
    transport: httpx.BaseTransport | None = None,
) -> bool:
    """POST ``payload`` to the configured webhook; never raises.

    Returns True when the webhook accepted the notification.
    """

    run_log = run_log or NULL_RUN_LOG
    url = webhook_url if webhook_url is not None else get_settings().webhook_url
    if not url:
        run_log.info("notify_skip", context={"reason": "GARDENER_WEBHOOK_URL not set"})
        return False
    if not validate_webhook_url(url):
        run_log.warn("notify_skip", context={"reason": "GARDENER_WEBHOOK_URL is not a valid URL"})
        return False

    try:
        with httpx.Client(timeout=httpx.Timeout(NOTIFY_TIMEOUT_SECONDS), transport=transport) as client:
            response = client.post(url, json=asdict(payload))
    except httpx.HTTPError as exc:
        logger.warning("Webhook delivery failed: %s", exc)
        run_log.warn("notify_failed", phase=payload.phase, error={"message": str(exc) or exc.__class__.__name__})
        return False

    if not response.is_success:
        run_log.warn(
            "notify_failed",
            phase=payload.phase,
            error={"message": f"HTTP {response.status_code}", "code": str(response.status_code)},
        )
        return False

    run_log.info("notify_sent", phase=payload.phase)
    return True


__all__ = ["FailurePayload", "NOTIFY_TIMEOUT_SECONDS", "notify_failure", "validate_webhook_url"]
