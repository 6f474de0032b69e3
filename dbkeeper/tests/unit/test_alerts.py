from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import IntegrationUnavailableError
from dbkeeper.domain.models import AlertRecord
from dbkeeper.services.alerts import (
    HEADER_EVENT,
    HEADER_SIGNATURE,
    AlertEvent,
    DatabaseAlertSink,
    FanoutAlertSink,
    LoggingAlertSink,
    WebhookAlertSink,
    build_alert_sink,
    compute_signature,
    verify_payload_signature,
)
from dbkeeper.services.resilience import RetryPolicy
from dbkeeper.tests.utils.fakes import FailingAlertSink, RecordingAlertSink


FAST = RetryPolicy(timeout_ms=2000, max_attempts=3, backoff_ms=1)


def _event() -> AlertEvent:
    return AlertEvent(
        event_type="backup.failed",
        severity="critical",
        message="backup of orders failed: lost connection",
        target="orders",
        run_id=7,
        details={"error_code": "CONNECTION_FAILED"},
    )


def test_signature_matches_receiver_recomputation() -> None:
    raw = b'{"a":1}'
    signature = compute_signature(raw, "secret")
    assert signature.startswith("sha256=")
    assert verify_payload_signature(raw, "secret", signature) is True
    assert verify_payload_signature(raw, "other", signature) is False
    assert verify_payload_signature(raw, "secret", None) is False


@pytest.mark.asyncio
async def test_webhook_posts_signed_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    sink = WebhookAlertSink(
        "https://alerts.example/hook",
        secret="hook-secret",
        policy=FAST,
        transport=httpx.MockTransport(handler),
    )
    await sink.emit(_event())

    assert len(seen) == 1
    request = seen[0]
    body = request.content
    assert request.headers[HEADER_EVENT] == "backup.failed"
    assert verify_payload_signature(body, "hook-secret", request.headers[HEADER_SIGNATURE])
    payload = json.loads(body)
    assert payload["target"] == "orders"
    assert payload["details"] == {"error_code": "CONNECTION_FAILED"}


@pytest.mark.asyncio
async def test_webhook_retries_server_errors_then_succeeds() -> None:
    statuses = iter([503, 500, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    sink = WebhookAlertSink("https://alerts.example/hook", policy=FAST, transport=httpx.MockTransport(handler))
    await sink.emit(_event())


@pytest.mark.asyncio
async def test_webhook_client_errors_are_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(400)

    sink = WebhookAlertSink("https://alerts.example/hook", policy=FAST, transport=httpx.MockTransport(handler))
    with pytest.raises(IntegrationUnavailableError):
        await sink.emit(_event())
    assert calls == 1


@pytest.mark.asyncio
async def test_fanout_is_best_effort() -> None:
    recorder = RecordingAlertSink()
    sink = FanoutAlertSink([FailingAlertSink(), recorder])
    await sink.emit(_event())
    assert recorder.types() == ["backup.failed"]


@pytest.mark.asyncio
async def test_database_sink_persists_alerts(session_factory) -> None:
    await DatabaseAlertSink(session_factory).emit(_event())
    async with session_factory() as session:
        rows = list((await session.execute(select(AlertRecord))).scalars())
    assert len(rows) == 1
    assert rows[0].event_type == "backup.failed"
    assert rows[0].run_id == 7
    assert rows[0].details_json == {"error_code": "CONNECTION_FAILED"}


def test_build_alert_sink_follows_settings(monkeypatch) -> None:
    monkeypatch.setenv("ALERT_PERSIST_ENABLED", "false")
    get_settings.cache_clear()
    assert [type(sink) for sink in build_alert_sink().sinks] == [LoggingAlertSink]

    monkeypatch.setenv("ALERT_PERSIST_ENABLED", "true")
    monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://alerts.example/hook")
    get_settings.cache_clear()
    assert [type(sink) for sink in build_alert_sink().sinks] == [LoggingAlertSink, DatabaseAlertSink, WebhookAlertSink]
