from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import IntegrationUnavailableError
from dbkeeper.domain.models import AlertRecord
from dbkeeper.persistence.db import SessionLocal
from dbkeeper.services.resilience import RetryPolicy, alert_retry_policy, retry_async


logger = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

HEADER_EVENT = "x-dbkeeper-event"
HEADER_TIMESTAMP = "x-dbkeeper-timestamp"
HEADER_SIGNATURE = "x-dbkeeper-signature"

_LOG_LEVELS = {
    SEVERITY_INFO: logging.INFO,
    SEVERITY_WARNING: logging.WARNING,
    SEVERITY_CRITICAL: logging.ERROR,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AlertEvent:
    event_type: str
    severity: str
    message: str
    target: str | None = None
    run_id: int | None = None
    artifact_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=_utc_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "severity": self.severity,
            "message": self.message,
            "target": self.target,
            "run_id": self.run_id,
            "artifact_id": self.artifact_id,
            "details": self.details,
            "occurred_at": self.occurred_at.isoformat(),
        }


class AlertSink(Protocol):
    async def emit(self, event: AlertEvent) -> None:
        ...


def serialize_payload(payload: dict[str, Any]) -> bytes:
    # Deterministic bytes so receivers can recompute the signature.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_payload_signature(raw_body: bytes, secret: str, provided: str | None) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(compute_signature(raw_body, secret), provided.strip())


class LoggingAlertSink:
    async def emit(self, event: AlertEvent) -> None:
        logger.log(
            _LOG_LEVELS.get(event.severity, logging.WARNING),
            "alert event=%s severity=%s target=%s artifact=%s message=%s",
            event.event_type,
            event.severity,
            event.target,
            event.artifact_id,
            event.message,
        )


def _webhook_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


class WebhookAlertSink:
    """POST signed JSON alerts to an operator webhook."""

    def __init__(
        self,
        url: str,
        *,
        secret: str | None = None,
        policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._policy = policy or alert_retry_policy()
        self._transport = transport

    def build_headers(self, event: AlertEvent, raw_body: bytes) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            HEADER_EVENT: event.event_type,
            HEADER_TIMESTAMP: event.occurred_at.isoformat(),
        }
        if self._secret:
            headers[HEADER_SIGNATURE] = compute_signature(raw_body, self._secret)
        return headers

    async def emit(self, event: AlertEvent) -> None:
        raw_body = serialize_payload(event.to_payload())
        headers = self.build_headers(event, raw_body)
        timeout_s = max(0.2, (self._policy.timeout_ms or 5000) / 1000.0)

        async def _post() -> None:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                response = await client.post(self._url, content=raw_body, headers=headers)
                if response.status_code >= 400:
                    raise httpx.HTTPStatusError(
                        f"Alert webhook rejected delivery ({response.status_code})",
                        request=response.request,
                        response=response,
                    )

        try:
            await retry_async(_post, policy=self._policy, retryable=_webhook_retryable)
        except (httpx.HTTPError, TimeoutError) as exc:
            raise IntegrationUnavailableError(f"alert webhook delivery failed: {exc}") from exc


class DatabaseAlertSink:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def emit(self, event: AlertEvent) -> None:
        async with self._session_factory() as session:
            session.add(
                AlertRecord(
                    event_type=event.event_type,
                    severity=event.severity,
                    target=event.target,
                    run_id=event.run_id,
                    artifact_id=event.artifact_id,
                    message=event.message,
                    details_json=event.details or None,
                    occurred_at=event.occurred_at,
                )
            )
            await session.commit()


class FanoutAlertSink:
    """Best-effort delivery to every channel; a broken channel never fails the caller."""

    def __init__(self, sinks: Iterable[AlertSink]) -> None:
        self._sinks = list(sinks)

    @property
    def sinks(self) -> list[AlertSink]:
        return list(self._sinks)

    async def emit(self, event: AlertEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception as exc:  # noqa: BLE001 - alert delivery is best effort
                logger.warning(
                    "alert_delivery_failed sink=%s event=%s error=%s",
                    type(sink).__name__,
                    event.event_type,
                    exc,
                )


def build_alert_sink(session_factory: async_sessionmaker[AsyncSession] | None = None) -> FanoutAlertSink:
    # Compose channels from settings; logging is always on.
    settings = get_settings()
    sinks: list[AlertSink] = [LoggingAlertSink()]
    if settings.alert_persist_enabled:
        sinks.append(DatabaseAlertSink(session_factory))
    if settings.alert_webhook_url:
        sinks.append(WebhookAlertSink(settings.alert_webhook_url, secret=settings.alert_webhook_secret))
    return FanoutAlertSink(sinks)
