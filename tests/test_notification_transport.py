import hashlib
import hmac
import uuid
from unittest.mock import MagicMock, patch

import httpx
import pytest

from app.models.approval import (
    ApprovalNotification,
    NotificationChannel,
    NotificationType,
)
from app.models.inbox import InboxNotification
from app.services.notification_transport import (
    DeliveryFailure,
    EmailTransport,
    InAppTransport,
    Recipient,
    SmsTransport,
    WebhookTransport,
    get_transport,
    load_recipient,
)
from tests.mocks import FakeHTTPXResponse, fake_httpx_client


def _notification(data=None):
    return ApprovalNotification(
        id=uuid.uuid4(),
        instance_id=uuid.uuid4(),
        notification_type=NotificationType.escalated,
        recipient_user_id=uuid.uuid4(),
        channel=NotificationChannel.webhook,
        template="approval_escalated",
        data=data or {},
    )


def _settings(**overrides):
    mock_settings = MagicMock()
    mock_settings.transport_timeout_seconds = 5
    mock_settings.sms_gateway_token = ""
    mock_settings.webhook_secret = ""
    mock_settings.default_webhook_url = ""
    for key, value in overrides.items():
        setattr(mock_settings, key, value)
    return mock_settings


RECIPIENT = Recipient(
    user_id=uuid.uuid4(),
    name="Ada Lovelace",
    email="ada@example.com",
    phone="+15550100",
    known=True,
)


class TestRecipients:
    def test_load_known(self, db_session, person) -> None:
        recipient = load_recipient(db_session, person.id)
        assert recipient.known
        assert recipient.name == "Submitter User"
        assert recipient.email == person.email

    def test_load_unknown(self, db_session) -> None:
        recipient = load_recipient(db_session, uuid.uuid4())
        assert not recipient.known
        assert recipient.email is None

    def test_get_transport(self) -> None:
        assert isinstance(get_transport(NotificationChannel.sms), SmsTransport)


class TestEmailTransport:
    def test_requires_address(self) -> None:
        with pytest.raises(DeliveryFailure):
            EmailTransport().send(
                Recipient(user_id=uuid.uuid4()),
                "s",
                "b",
                db=None,
                notification=_notification(),
            )

    def test_smtp_send(self) -> None:
        with patch(
            "app.services.notification_transport.settings",
            _settings(smtp_host="smtp.example.com", smtp_port=25, smtp_use_tls=False,
                      smtp_username="", smtp_from_address="noreply@example.com"),
        ), patch("app.services.notification_transport.smtplib.SMTP") as mock_smtp:
            EmailTransport().send(
                RECIPIENT, "Subject", "Body", db=None, notification=_notification()
            )
        smtp = mock_smtp.return_value.__enter__.return_value
        message = smtp.send_message.call_args[0][0]
        assert message["To"] == "ada@example.com"
        assert message["Subject"] == "Subject"

    def test_smtp_error_is_delivery_failure(self) -> None:
        import smtplib

        with patch(
            "app.services.notification_transport.settings",
            _settings(smtp_host="smtp.example.com", smtp_port=25, smtp_use_tls=False,
                      smtp_username=""),
        ), patch(
            "app.services.notification_transport.smtplib.SMTP",
            side_effect=smtplib.SMTPException("refused"),
        ):
            with pytest.raises(DeliveryFailure):
                EmailTransport().send(
                    RECIPIENT, "s", "b", db=None, notification=_notification()
                )


class TestSmsTransport:
    def test_posts_to_gateway(self) -> None:
        client_class, client = fake_httpx_client()
        with patch(
            "app.services.notification_transport.settings",
            _settings(sms_gateway_url="https://sms.example.com/send"),
        ), patch("app.services.notification_transport.httpx.Client", client_class):
            SmsTransport().send(
                RECIPIENT, "Reminder", "Please review", db=None, notification=_notification()
            )
        url = client.post.call_args[0][0]
        body = client.post.call_args[1]["json"]
        assert url == "https://sms.example.com/send"
        assert body["to"] == "+15550100"

    def test_non_2xx_fails(self) -> None:
        client_class, _ = fake_httpx_client(FakeHTTPXResponse(status_code=503))
        with patch(
            "app.services.notification_transport.settings",
            _settings(sms_gateway_url="https://sms.example.com/send"),
        ), patch("app.services.notification_transport.httpx.Client", client_class):
            with pytest.raises(DeliveryFailure, match="503"):
                SmsTransport().send(
                    RECIPIENT, "s", "b", db=None, notification=_notification()
                )


class TestWebhookTransport:
    def test_signed_post(self) -> None:
        client_class, client = fake_httpx_client()
        with patch(
            "app.services.notification_transport.settings",
            _settings(webhook_secret="test-secret"),
        ), patch("app.services.notification_transport.httpx.Client", client_class):
            WebhookTransport().send(
                RECIPIENT,
                "Escalated",
                "Body",
                db=None,
                notification=_notification({"webhook_url": "https://hooks.example.com"}),
            )
        kwargs = client.post.call_args[1]
        expected = hmac.new(
            b"test-secret", kwargs["content"].encode(), hashlib.sha256
        ).hexdigest()
        assert client.post.call_args[0][0] == "https://hooks.example.com"
        assert kwargs["headers"]["X-Webhook-Signature"] == expected
        assert kwargs["headers"]["X-Notification-Type"] == "escalated"

    def test_no_signature_without_secret(self) -> None:
        client_class, client = fake_httpx_client()
        with patch(
            "app.services.notification_transport.settings",
            _settings(default_webhook_url="https://default.example.com"),
        ), patch("app.services.notification_transport.httpx.Client", client_class):
            WebhookTransport().send(
                RECIPIENT, "s", "b", db=None, notification=_notification()
            )
        assert "X-Webhook-Signature" not in client.post.call_args[1]["headers"]

    def test_no_url_fails(self) -> None:
        with patch("app.services.notification_transport.settings", _settings()):
            with pytest.raises(DeliveryFailure):
                WebhookTransport().send(
                    RECIPIENT, "s", "b", db=None, notification=_notification()
                )

    def test_network_error_fails(self) -> None:
        client_class, _ = fake_httpx_client(error=httpx.ConnectError("refused"))
        with patch(
            "app.services.notification_transport.settings",
            _settings(default_webhook_url="https://default.example.com"),
        ), patch("app.services.notification_transport.httpx.Client", client_class):
            with pytest.raises(DeliveryFailure):
                WebhookTransport().send(
                    RECIPIENT, "s", "b", db=None, notification=_notification()
                )


class TestInAppTransport:
    def test_unknown_recipient_fails(self, db_session) -> None:
        with pytest.raises(DeliveryFailure):
            InAppTransport().send(
                Recipient(user_id=uuid.uuid4()),
                "s",
                "b",
                db=db_session,
                notification=_notification(),
            )

    def test_writes_inbox_item(self, db_session, person) -> None:
        InAppTransport().send(
            load_recipient(db_session, person.id),
            "Subject",
            "Body",
            db=db_session,
            notification=_notification(),
            action_url="https://app.example.com/approvals/1",
        )
        db_session.commit()
        item = db_session.query(InboxNotification).one()
        assert item.person_id == person.id
        assert item.event_type == "approval.escalated"
        assert item.action_url == "https://app.example.com/approvals/1"
