"""Outbound notifications: fiduciary webhooks and data-principal messages.

Callers enqueue rows in ``outbound_notifications`` after their own transaction
has committed; ``process_pending_notifications`` drains the queue, signs and
posts webhooks, hands principal messages to a ``MessageTransport`` and records
every webhook attempt in ``webhook_logs``.
"""

import base64
import hashlib
import hmac
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.canonical import canonical_json
from core.config import Settings, get_settings
from core.errors import ValidationFailedError
from core.failure_modes import classify_failure
from core.logging_utils import log_structured
from core.observability import (
    METRIC_NOTIFICATION_DELIVERED,
    METRIC_NOTIFICATION_DELIVERY_FAILED,
    METRIC_NOTIFICATION_ENQUEUE_FAILED,
    increment_metric,
)
from core.principals import contact_details
from core.timeutils import as_utc, utc_now
from models.fiduciary import DataFiduciary
from models.notification import NotificationKind, NotificationStatus, OutboundNotification, WebhookLog

SUPPORTED_CHANNELS = ("EMAIL", "SMS", "PUSH")
RETRY_SCHEDULE_SECONDS = [60, 300, 900, 3600]


@dataclass
class NotificationEvent:
    type: str
    fiduciary_id: uuid.UUID
    artifact_id: uuid.UUID | None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class PrincipalMessageRequest:
    fiduciary_id: uuid.UUID
    user_id: uuid.UUID
    type: str
    channels: list[str] = field(default_factory=lambda: ["EMAIL"])
    metadata: dict[str, Any] = field(default_factory=dict)
    language: str = "en"
    artifact_id: uuid.UUID | None = None


@dataclass
class NotifyResult:
    success: bool
    message: str
    notification_id: uuid.UUID | None = None


class MessageTransport(Protocol):
    def send(self, *, channel: str, address: str, message_type: str, language: str, metadata: dict[str, Any]) -> None: ...


class LoggingMessageTransport:
    """Default transport: records the send without contact details."""

    def send(self, *, channel: str, address: str, message_type: str, language: str, metadata: dict[str, Any]) -> None:
        log_structured(
            "notification.principal_message_sent",
            channel=channel,
            event_type=message_type,
            artifact_id=metadata.get("artifact_id"),
        )


def validate_webhook_url(url: str, *, env: str | None = None) -> str:
    parsed = urllib.parse.urlparse(url.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationFailedError("Invalid webhook URL")
    if (env or get_settings().env) == "prod" and parsed.scheme != "https":
        raise ValidationFailedError("Webhook URL must use https in prod")
    return url.strip()


def derive_webhook_secret(fiduciary_id: uuid.UUID, signing_secret: str | None = None) -> str:
    server_secret = signing_secret or get_settings().webhook_signing_secret
    digest = hmac.new(
        server_secret.encode("utf-8"),
        f"fiduciary:{fiduciary_id}".encode("utf-8"),
        hashlib.sha256,
    ).digest()
    token = base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")
    return f"whsec_{token}"


def mask_secret(secret: str) -> str:
    tail = secret[-4:] if len(secret) >= 4 else secret
    return f"****{tail}"


def compute_webhook_signature(secret: str, timestamp: int, body_text: str) -> str:
    signing_payload = f"{timestamp}.{body_text}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), signing_payload, hashlib.sha256).hexdigest()


def build_webhook_headers(timestamp: int, signature: str, event_type: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Webhook-Event": event_type,
        "X-Webhook-Timestamp": str(timestamp),
        "X-Webhook-Signature": signature,
    }


def send_webhook_http(url: str, body_text: str, headers: dict[str, str], timeout: int = 10) -> int:
    request = urllib.request.Request(
        url=url,
        data=body_text.encode("utf-8"),
        method="POST",
        headers=headers,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:  # noqa: S310
            return int(response.status)
    except urllib.error.HTTPError as exc:
        return int(exc.code)


class NotificationDispatcher:
    """Enqueues outbound notifications in their own short transaction.

    Enqueue failures are logged and counted and reported through ``NotifyResult``;
    they never propagate to the caller whose state change already committed.
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], datetime] = utc_now) -> None:
        self.settings = settings or get_settings()
        self.clock = clock

    def notify(self, db: Session, event: NotificationEvent) -> NotifyResult:
        try:
            fiduciary = db.get(DataFiduciary, event.fiduciary_id)
            if fiduciary is None or not fiduciary.webhook_url:
                return NotifyResult(success=False, message="no webhook configured")
            now = self.clock()
            body = {
                "type": event.type,
                "artifact_id": str(event.artifact_id) if event.artifact_id else None,
                "data_fiduciary_id": str(event.fiduciary_id),
                "timestamp": now.isoformat(),
                **event.payload,
            }
            notification = OutboundNotification(
                data_fiduciary_id=event.fiduciary_id,
                kind=NotificationKind.WEBHOOK,
                event_type=event.type,
                artifact_id=event.artifact_id,
                channels=[],
                payload_json=body,
                status=NotificationStatus.PENDING,
                attempt_count=0,
                next_attempt_at=now,
                created_at=now,
            )
            db.add(notification)
            db.commit()
        except Exception as exc:
            db.rollback()
            self._enqueue_failed(exc, event.type, event.fiduciary_id, event.artifact_id)
            return NotifyResult(success=False, message="enqueue failed")
        log_structured(
            "notification.webhook_enqueued",
            event_type=event.type,
            fiduciary_id=str(event.fiduciary_id),
            artifact_id=str(event.artifact_id) if event.artifact_id else None,
            notification_id=str(notification.id),
        )
        return NotifyResult(success=True, message="queued", notification_id=notification.id)

    def send_principal_message(self, db: Session, message: PrincipalMessageRequest) -> NotifyResult:
        channels = [channel.upper() for channel in message.channels if channel]
        unsupported = [channel for channel in channels if channel not in SUPPORTED_CHANNELS]
        if not channels or unsupported:
            return NotifyResult(success=False, message="unsupported channel")
        try:
            now = self.clock()
            notification = OutboundNotification(
                data_fiduciary_id=message.fiduciary_id,
                kind=NotificationKind.PRINCIPAL_MESSAGE,
                event_type=message.type,
                artifact_id=message.artifact_id,
                data_principal_id=message.user_id,
                channels=channels,
                payload_json={"language": message.language, "metadata": message.metadata},
                status=NotificationStatus.PENDING,
                attempt_count=0,
                next_attempt_at=now,
                created_at=now,
            )
            db.add(notification)
            db.commit()
        except Exception as exc:
            db.rollback()
            self._enqueue_failed(exc, message.type, message.fiduciary_id, message.artifact_id)
            return NotifyResult(success=False, message="enqueue failed")
        return NotifyResult(success=True, message="queued", notification_id=notification.id)

    def _enqueue_failed(self, exc: Exception, event_type: str, fiduciary_id, artifact_id) -> None:
        increment_metric(METRIC_NOTIFICATION_ENQUEUE_FAILED, reason=event_type)
        log_structured(
            "notification.enqueue_failed",
            event_type=event_type,
            fiduciary_id=str(fiduciary_id),
            artifact_id=str(artifact_id) if artifact_id else None,
            failure_class=classify_failure(exc).value,
            error_class=exc.__class__.__name__,
        )


def _retry_delay_seconds(next_attempt_number: int) -> int:
    index = min(max(next_attempt_number - 1, 0), len(RETRY_SCHEDULE_SECONDS) - 1)
    return RETRY_SCHEDULE_SECONDS[index]


def _mark_sent(notification: OutboundNotification, now: datetime) -> None:
    notification.status = NotificationStatus.SENT
    notification.last_error = None
    notification.next_attempt_at = None
    notification.attempt_count += 1
    notification.last_attempt_at = now
    increment_metric(METRIC_NOTIFICATION_DELIVERED, reason=notification.event_type)


def _mark_failed(notification: OutboundNotification, now: datetime, error: str, max_attempts: int, *, final: bool = False) -> None:
    next_attempt_number = notification.attempt_count + 1
    if final or next_attempt_number >= max_attempts:
        notification.status = NotificationStatus.FAILED
        notification.next_attempt_at = None
    else:
        notification.status = NotificationStatus.PENDING
        notification.next_attempt_at = now + timedelta(seconds=_retry_delay_seconds(next_attempt_number))
    notification.last_error = error[:500]
    notification.attempt_count = next_attempt_number
    notification.last_attempt_at = now
    increment_metric(METRIC_NOTIFICATION_DELIVERY_FAILED, reason=notification.event_type)
    log_structured(
        "notification.delivery_failed",
        notification_id=str(notification.id),
        fiduciary_id=str(notification.data_fiduciary_id),
        event_type=notification.event_type,
        reason=error[:120],
        status=notification.status.value,
    )


def _deliver_webhook(db: Session, notification: OutboundNotification, now: datetime, settings: Settings) -> None:
    fiduciary = db.get(DataFiduciary, notification.data_fiduciary_id)
    if fiduciary is None or not fiduciary.webhook_url:
        _mark_failed(notification, now, "Webhook endpoint unavailable", settings.webhook_max_attempts, final=True)
        return

    secret = derive_webhook_secret(fiduciary.id, settings.webhook_signing_secret)
    timestamp = int(time.time())
    body_text = canonical_json(notification.payload_json)
    signature = compute_webhook_signature(secret, timestamp, body_text)
    headers = build_webhook_headers(timestamp, signature, notification.event_type)

    started = time.perf_counter()
    status_code: int | None = None
    error: str | None = None
    try:
        status_code = send_webhook_http(fiduciary.webhook_url, body_text, headers, timeout=settings.webhook_timeout_seconds)
        if not 200 <= status_code < 300:
            error = f"HTTP {status_code}"
    except Exception as exc:
        error = str(exc)[:500] or exc.__class__.__name__
    elapsed_ms = int((time.perf_counter() - started) * 1000)

    db.add(
        WebhookLog(
            data_fiduciary_id=fiduciary.id,
            notification_id=notification.id,
            event_type=notification.event_type,
            url=fiduciary.webhook_url,
            method="POST",
            status_code=status_code,
            response_time_ms=elapsed_ms,
            success=error is None,
            error_message=error,
            created_at=now,
        )
    )
    if error is None:
        _mark_sent(notification, now)
    else:
        _mark_failed(notification, now, error, settings.webhook_max_attempts)


def _deliver_principal_message(
    db: Session,
    notification: OutboundNotification,
    now: datetime,
    settings: Settings,
    transport: MessageTransport,
) -> None:
    contact = contact_details(db, notification.data_principal_id)
    if contact is None:
        _mark_failed(notification, now, "Data principal not found", settings.webhook_max_attempts, final=True)
        return
    payload = notification.payload_json or {}
    metadata = dict(payload.get("metadata") or {})
    metadata.setdefault("artifact_id", str(notification.artifact_id) if notification.artifact_id else None)
    language = payload.get("language") or contact.language

    deliverable = [(channel, contact.address_for(channel)) for channel in notification.channels or []]
    deliverable = [(channel, address) for channel, address in deliverable if address]
    if not deliverable:
        _mark_failed(notification, now, "Missing contact details", settings.webhook_max_attempts, final=True)
        return
    try:
        for channel, address in deliverable:
            transport.send(
                channel=channel,
                address=address,
                message_type=notification.event_type,
                language=language,
                metadata=metadata,
            )
    except Exception as exc:
        _mark_failed(notification, now, str(exc) or exc.__class__.__name__, settings.webhook_max_attempts)
        return
    _mark_sent(notification, now)


def process_pending_notifications(
    db: Session,
    *,
    fiduciary_id: uuid.UUID | None = None,
    now: datetime | None = None,
    max_batch: int = 100,
    transport: MessageTransport | None = None,
    settings: Settings | None = None,
) -> int:
    settings = settings or get_settings()
    transport = transport or LoggingMessageTransport()
    now = now or utc_now()
    stmt = select(OutboundNotification).where(
        OutboundNotification.status == NotificationStatus.PENDING,
        OutboundNotification.next_attempt_at.is_not(None),
        OutboundNotification.next_attempt_at <= now,
    )
    if fiduciary_id is not None:
        stmt = stmt.where(OutboundNotification.data_fiduciary_id == fiduciary_id)
    notifications = list(
        db.scalars(stmt.order_by(OutboundNotification.created_at.asc()).limit(max_batch)).all()
    )

    processed = 0
    for notification in notifications:
        if as_utc(notification.next_attempt_at) > now:
            continue
        if notification.kind == NotificationKind.WEBHOOK:
            _deliver_webhook(db, notification, now, settings)
        else:
            _deliver_principal_message(db, notification, now, settings, transport)
        processed += 1

    if processed:
        db.commit()
    return processed
