import hashlib
import hmac
import json
import logging
import smtplib
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from types import MappingProxyType
from typing import Protocol

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.models.approval import ApprovalNotification, NotificationChannel
from app.models.inbox import InboxNotification
from app.models.person import Person

logger = logging.getLogger(__name__)


class DeliveryFailure(Exception):
    """A transport could not deliver a message. Retried by the dispatcher."""


@dataclass(frozen=True)
class Recipient:
    user_id: uuid.UUID
    name: str = ""
    email: str | None = None
    phone: str | None = None
    known: bool = False


def load_recipient(db: Session, user_id) -> Recipient:
    person = db.get(Person, user_id)
    if not person:
        return Recipient(user_id=user_id)
    return Recipient(
        user_id=person.id,
        name=person.display_name,
        email=person.email,
        phone=person.phone,
        known=True,
    )


class NotificationTransport(Protocol):
    def send(
        self,
        recipient: Recipient,
        subject: str,
        body: str,
        *,
        db: Session,
        notification: ApprovalNotification,
        action_url: str | None = None,
    ) -> None: ...


class EmailTransport:
    def send(self, recipient, subject, body, *, db, notification, action_url=None):
        if not recipient.email:
            raise DeliveryFailure(f"No email address for {recipient.user_id}")
        if not settings.smtp_host:
            logger.info("Would send email to %s: %s", recipient.email, subject)
            return

        message = EmailMessage()
        message["From"] = settings.smtp_from_address
        message["To"] = recipient.email
        message["Subject"] = subject
        message.set_content(body)
        try:
            with smtplib.SMTP(
                settings.smtp_host,
                settings.smtp_port,
                timeout=settings.transport_timeout_seconds,
            ) as smtp:
                if settings.smtp_use_tls:
                    smtp.starttls()
                if settings.smtp_username:
                    smtp.login(settings.smtp_username, settings.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailure(f"SMTP delivery failed: {e}") from e


class SmsTransport:
    def send(self, recipient, subject, body, *, db, notification, action_url=None):
        if not settings.sms_gateway_url:
            raise DeliveryFailure("SMS gateway is not configured")
        if not recipient.phone:
            raise DeliveryFailure(f"No phone number for {recipient.user_id}")

        headers = {"Content-Type": "application/json"}
        if settings.sms_gateway_token:
            headers["Authorization"] = f"Bearer {settings.sms_gateway_token}"
        try:
            with httpx.Client(timeout=settings.transport_timeout_seconds) as client:
                resp = client.post(
                    settings.sms_gateway_url,
                    json={"to": recipient.phone, "message": f"{subject}: {body}"},
                    headers=headers,
                )
        except (httpx.HTTPError, OSError) as e:
            raise DeliveryFailure(f"SMS gateway error: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise DeliveryFailure(f"SMS gateway returned HTTP {resp.status_code}")


class InAppTransport:
    def send(self, recipient, subject, body, *, db, notification, action_url=None):
        if not recipient.known:
            raise DeliveryFailure(f"Recipient {recipient.user_id} not found")
        inbox_item = InboxNotification(
            person_id=recipient.user_id,
            title=subject[:500],
            body=body,
            event_type=f"approval.{notification.notification_type.value}",
            entity_type="approval_instance",
            entity_id=str(notification.instance_id),
            action_url=action_url,
            metadata_={"approval_notification_id": str(notification.id)},
        )
        db.add(inbox_item)
        db.flush()


class WebhookTransport:
    def send(self, recipient, subject, body, *, db, notification, action_url=None):
        url = (notification.data or {}).get("webhook_url") or settings.default_webhook_url
        if not url:
            raise DeliveryFailure("No webhook URL configured")

        payload = {
            "notification_id": str(notification.id),
            "instance_id": str(notification.instance_id),
            "type": notification.notification_type.value,
            "recipient": str(recipient.user_id),
            "subject": subject,
            "body": body,
            "action_url": action_url,
            "data": notification.data or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        content = json.dumps(payload, default=str)
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "X-Notification-Type": notification.notification_type.value,
        }
        if settings.webhook_secret:
            sig = hmac.new(
                settings.webhook_secret.encode(), content.encode(), hashlib.sha256
            ).hexdigest()
            headers["X-Webhook-Signature"] = sig

        try:
            with httpx.Client(timeout=settings.transport_timeout_seconds) as client:
                resp = client.post(url, content=content, headers=headers)
        except (httpx.HTTPError, OSError) as e:
            raise DeliveryFailure(f"Webhook delivery failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise DeliveryFailure(f"Webhook returned HTTP {resp.status_code}")


TRANSPORTS = MappingProxyType(
    {
        NotificationChannel.email: EmailTransport(),
        NotificationChannel.sms: SmsTransport(),
        NotificationChannel.in_app: InAppTransport(),
        NotificationChannel.webhook: WebhookTransport(),
    }
)


def get_transport(channel: NotificationChannel) -> NotificationTransport:
    try:
        return TRANSPORTS[channel]
    except KeyError:
        raise DeliveryFailure(f"Unsupported notification channel: {channel}") from None
