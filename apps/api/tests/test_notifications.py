import json
import unittest
from datetime import timedelta
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from core.canonical import canonical_json
from core.config import get_settings
from core.errors import ValidationFailedError
from core.notifications import (
    NotificationDispatcher,
    NotificationEvent,
    PrincipalMessageRequest,
    compute_webhook_signature,
    derive_webhook_secret,
    process_pending_notifications,
    validate_webhook_url,
)
from core.timeutils import as_utc
from factories import Clock, add_fiduciary, add_purpose, build_engine, grant, memory_session_factory
from models.notification import NotificationKind, NotificationStatus, OutboundNotification, WebhookLog


class NotificationDeliveryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.SessionLocal = memory_session_factory()
        self.db = self.SessionLocal()
        self.clock = Clock()
        self.settings = get_settings()
        self.fiduciary = add_fiduciary(self.db, "fiduciary-notify", webhook_url="http://localhost:9000/hook")
        self.dispatcher = NotificationDispatcher(settings=self.settings, clock=self.clock)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _enqueue(self, event_type: str = "consent.granted") -> OutboundNotification:
        result = self.dispatcher.notify(
            self.db,
            NotificationEvent(type=event_type, fiduciary_id=self.fiduciary.id, artifact_id=None, payload={"k": "v"}),
        )
        self.assertTrue(result.success)
        return self.db.get(OutboundNotification, result.notification_id)

    def test_successful_delivery_is_signed_and_logged(self) -> None:
        notification = self._enqueue()
        with patch("core.notifications.send_webhook_http", return_value=204) as mock_send:
            processed = process_pending_notifications(self.db, now=self.clock.now, settings=self.settings)

        self.assertEqual(processed, 1)
        url, body_text, headers = mock_send.call_args.args[:3]
        self.assertEqual(url, "http://localhost:9000/hook")
        body = json.loads(body_text)
        self.assertEqual(body["type"], "consent.granted")
        self.assertEqual(body["k"], "v")
        secret = derive_webhook_secret(self.fiduciary.id, self.settings.webhook_signing_secret)
        expected = compute_webhook_signature(secret, int(headers["X-Webhook-Timestamp"]), body_text)
        self.assertEqual(headers["X-Webhook-Signature"], expected)
        self.assertEqual(body_text, canonical_json(body))

        self.db.refresh(notification)
        self.assertEqual(notification.status, NotificationStatus.SENT)
        log = self.db.scalar(select(WebhookLog).where(WebhookLog.notification_id == notification.id))
        self.assertTrue(log.success)
        self.assertEqual(log.status_code, 204)
        self.assertEqual(log.method, "POST")

    def test_failed_delivery_is_retried_on_schedule(self) -> None:
        notification = self._enqueue()
        with patch("core.notifications.send_webhook_http", return_value=500):
            process_pending_notifications(self.db, now=self.clock.now, settings=self.settings)

        self.db.refresh(notification)
        self.assertEqual(notification.status, NotificationStatus.PENDING)
        self.assertEqual(notification.attempt_count, 1)
        self.assertEqual(as_utc(notification.next_attempt_at), self.clock.now + timedelta(seconds=60))
        self.assertEqual(notification.last_error, "HTTP 500")

        with patch("core.notifications.send_webhook_http", return_value=200) as mock_send:
            self.assertEqual(process_pending_notifications(self.db, now=self.clock.now, settings=self.settings), 0)
            mock_send.assert_not_called()

        logs = list(self.db.scalars(select(WebhookLog).where(WebhookLog.notification_id == notification.id)).all())
        self.assertEqual(len(logs), 1)
        self.assertFalse(logs[0].success)

    def test_delivery_gives_up_after_max_attempts(self) -> None:
        notification = self._enqueue()
        now = self.clock.now
        with patch("core.notifications.send_webhook_http", side_effect=ConnectionError("refused")):
            for _ in range(self.settings.webhook_max_attempts):
                process_pending_notifications(self.db, now=now, settings=self.settings)
                now = now + timedelta(hours=2)

        self.db.refresh(notification)
        self.assertEqual(notification.status, NotificationStatus.FAILED)
        self.assertEqual(notification.attempt_count, self.settings.webhook_max_attempts)
        self.assertIsNone(notification.next_attempt_at)
        logs = list(self.db.scalars(select(WebhookLog).where(WebhookLog.notification_id == notification.id)).all())
        self.assertEqual(len(logs), self.settings.webhook_max_attempts)
        self.assertEqual(logs[0].error_message, "refused")

    def test_fiduciary_without_webhook_gets_nothing_queued(self) -> None:
        silent = add_fiduciary(self.db, "fiduciary-silent")
        result = self.dispatcher.notify(
            self.db, NotificationEvent(type="consent.granted", fiduciary_id=silent.id, artifact_id=None)
        )
        self.assertFalse(result.success)
        self.assertEqual(self.db.scalars(select(OutboundNotification)).all(), [])

    def test_enqueue_failure_does_not_raise(self) -> None:
        failing_db = MagicMock()
        failing_db.get.return_value = self.fiduciary
        failing_db.commit.side_effect = RuntimeError("write failed")
        result = self.dispatcher.notify(
            failing_db,
            NotificationEvent(type="consent.granted", fiduciary_id=self.fiduciary.id, artifact_id=None),
        )
        self.assertFalse(result.success)
        failing_db.rollback.assert_called_once()

    def test_unsupported_principal_channel_is_rejected(self) -> None:
        result = self.dispatcher.send_principal_message(
            self.db,
            PrincipalMessageRequest(
                fiduciary_id=self.fiduciary.id,
                user_id=self.fiduciary.id,
                type="consent_granted",
                channels=["FAX"],
            ),
        )
        self.assertFalse(result.success)

    def test_webhook_url_validation(self) -> None:
        self.assertEqual(validate_webhook_url(" https://example.com/hook "), "https://example.com/hook")
        with self.assertRaises(ValidationFailedError):
            validate_webhook_url("ftp://example.com/hook")
        with self.assertRaises(ValidationFailedError):
            validate_webhook_url("http://example.com/hook", env="prod")


class PrincipalMessageDeliveryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.SessionLocal = memory_session_factory()
        self.db = self.SessionLocal()
        self.clock = Clock()
        self.fiduciary = add_fiduciary(self.db, "fiduciary-messages")
        self.purpose, _ = add_purpose(self.db, self.fiduciary, "Marketing", self.clock)
        self.consent_engine = build_engine(self.clock)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_grant_message_goes_to_every_known_channel(self) -> None:
        artifact = grant(
            self.db,
            self.consent_engine,
            self.fiduciary,
            [self.purpose],
            self.clock,
            email="p@example.com",
            phone="+15550100",
        )
        transport = MagicMock()
        processed = process_pending_notifications(self.db, now=self.clock.now, transport=transport)

        self.assertEqual(processed, 1)
        channels = sorted(call.kwargs["channel"] for call in transport.send.call_args_list)
        self.assertEqual(channels, ["EMAIL", "SMS"])
        addresses = {call.kwargs["channel"]: call.kwargs["address"] for call in transport.send.call_args_list}
        self.assertEqual(addresses, {"EMAIL": "p@example.com", "SMS": "+15550100"})
        self.assertEqual(transport.send.call_args.kwargs["metadata"]["artifact_id"], str(artifact.id))

        row = self.db.scalar(
            select(OutboundNotification).where(OutboundNotification.kind == NotificationKind.PRINCIPAL_MESSAGE)
        )
        self.assertEqual(row.status, NotificationStatus.SENT)

    def test_message_without_contact_fails_permanently(self) -> None:
        grant(self.db, self.consent_engine, self.fiduciary, [self.purpose], self.clock)
        transport = MagicMock()
        process_pending_notifications(self.db, now=self.clock.now, transport=transport)

        transport.send.assert_not_called()
        row = self.db.scalar(
            select(OutboundNotification).where(OutboundNotification.kind == NotificationKind.PRINCIPAL_MESSAGE)
        )
        self.assertEqual(row.status, NotificationStatus.FAILED)
        self.assertEqual(row.last_error, "Missing contact details")


if __name__ == "__main__":
    unittest.main()
