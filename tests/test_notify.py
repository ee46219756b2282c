from __future__ import annotations

import json

import httpx
import pytest

from vault_gardener.notify import FailurePayload, notify_failure, validate_webhook_url


class StubRunLog:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    def info(self, event: str, **fields) -> None:
        self.events.append(("info", event, fields))

    def warn(self, event: str, **fields) -> None:
        self.events.append(("warn", event, fields))


PAYLOAD = FailurePayload(
    phase="seed",
    duration_seconds=12,
    exit_code=124,
    reason="Provider exited with code 124: Timeout after 600s",
    timestamp="2026-03-01T12:00:00.000Z",
)


@pytest.mark.parametrize(
    ("url", "valid"),
    [
        ("https://hooks.example.com/gardener", True),
        ("http://localhost:8080/hook", True),
        ("ftp://example.com/hook", False),
        ("not a url", False),
        ("https://", False),
    ],
)
def test_validate_webhook_url(url: str, valid: bool) -> None:
    assert validate_webhook_url(url) is valid


def test_unset_webhook_is_skipped() -> None:
    log = StubRunLog()
    assert notify_failure(PAYLOAD, log, webhook_url="") is False
    assert log.events[0][:2] == ("info", "notify_skip")


def test_invalid_webhook_is_skipped_with_warning() -> None:
    log = StubRunLog()
    calls: list[httpx.Request] = []
    transport = httpx.MockTransport(lambda request: calls.append(request) or httpx.Response(200))

    assert notify_failure(PAYLOAD, log, webhook_url="ftp://example.com/x", transport=transport) is False
    assert calls == []
    assert log.events[0][:2] == ("warn", "notify_skip")


def test_webhook_receives_json_payload() -> None:
    log = StubRunLog()
    received: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    ok = notify_failure(
        PAYLOAD,
        log,
        webhook_url="https://hooks.example.com/gardener",
        transport=httpx.MockTransport(handler),
    )

    assert ok is True
    assert received == [
        {
            "phase": "seed",
            "duration_seconds": 12,
            "exit_code": 124,
            "reason": "Provider exited with code 124: Timeout after 600s",
            "timestamp": "2026-03-01T12:00:00.000Z",
        }
    ]
    assert log.events[-1][:2] == ("info", "notify_sent")


def test_http_error_status_is_logged_not_raised() -> None:
    log = StubRunLog()
    transport = httpx.MockTransport(lambda request: httpx.Response(500))

    assert notify_failure(PAYLOAD, log, webhook_url="https://hooks.example.com/x", transport=transport) is False
    level, event, fields = log.events[-1]
    assert (level, event) == ("warn", "notify_failed")
    assert fields["error"]["code"] == "500"


def test_transport_failure_is_logged_not_raised() -> None:
    log = StubRunLog()

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert (
        notify_failure(PAYLOAD, log, webhook_url="https://hooks.example.com/x", transport=httpx.MockTransport(handler))
        is False
    )
    assert log.events[-1][1] == "notify_failed"


def test_webhook_url_comes_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GARDENER_WEBHOOK_URL", "https://hooks.example.com/env")
    hits: list[str] = []
    transport = httpx.MockTransport(lambda request: hits.append(str(request.url)) or httpx.Response(200))

    assert notify_failure(PAYLOAD, transport=transport) is True
    assert hits == ["https://hooks.example.com/env"]
