"""Approval notification queue and dispatcher.

Notifications are enqueued inside the approval transaction that produced
them and delivered later by the scheduler. Delivery failures never roll back
the approval action; they are retried with exponential backoff until the
retry budget is spent.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import List

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.approval import (
    ApprovalInstance,
    ApprovalNotification,
    ApprovalWorkflow,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
)
from app.observability import (
    NOTIFICATIONS_ABANDONED,
    NOTIFICATIONS_FAILED,
    NOTIFICATIONS_SENT,
)
from app.services.common import coerce_uuid, utcnow
from app.services.document_store import DocumentStore, document_store
from app.services.notification_transport import (
    DeliveryFailure,
    get_transport,
    load_recipient,
)

logger = logging.getLogger(__name__)

MAX_RETRIES = settings.approval_notification_max_retries
BACKOFF_BASE_MINUTES = 5


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NotificationTemplate:
    subject: str
    body: str


TEMPLATES = MappingProxyType(
    {
        NotificationType.request: NotificationTemplate(
            subject="Approval required: {{document_title}}",
            body=(
                "Hello {{recipient_name}},\n\n"
                "You have a new document approval request.\n\n"
                "Document: {{document_title}}\n"
                "Level: {{level}} - {{level_name}}\n"
                "Urgency: {{urgency}}\n"
                "Submitted: {{submitted_at}}\n\n"
                "Please review and approve or reject this document.\n\n"
                "View: {{action_url}}"
            ),
        ),
        NotificationType.reminder: NotificationTemplate(
            subject="Reminder: approval pending for {{document_title}}",
            body=(
                "Hello {{recipient_name}},\n\n"
                "This is a reminder that an approval request has been waiting "
                "for {{days_pending}} day(s).\n\n"
                "Document: {{document_title}}\n"
                "Level: {{level}} - {{level_name}}\n"
                "Submitted: {{submitted_at}}\n\n"
                "View: {{action_url}}"
            ),
        ),
        NotificationType.approved: NotificationTemplate(
            subject="Document approved at level {{level}}: {{document_title}}",
            body=(
                "Document {{document_title}} was approved at level {{level}}.\n\n"
                "Approved by: {{approved_by}}\n"
                "Comments: {{comments}}\n\n"
                "View: {{action_url}}"
            ),
        ),
        NotificationType.rejected: NotificationTemplate(
            subject="Document rejected: {{document_title}}",
            body=(
                "Document {{document_title}} was rejected at level {{level}}.\n\n"
                "Rejected by: {{rejected_by}}\n"
                "Reason: {{reason}}\n\n"
                "Please review the feedback and resubmit if necessary.\n\n"
                "View: {{action_url}}"
            ),
        ),
        NotificationType.escalated: NotificationTemplate(
            subject="Approval escalated: {{document_title}}",
            body=(
                "An approval has been escalated.\n\n"
                "Document: {{document_title}}\n"
                "From level: {{from_level}}\n"
                "To level: {{to_level}}\n"
                "Reason: {{reason}}\n\n"
                "View: {{action_url}}"
            ),
        ),
        NotificationType.delegated: NotificationTemplate(
            subject="Approval delegated to you: {{document_title}}",
            body=(
                "Hello {{recipient_name}},\n\n"
                "An approval has been delegated to you.\n\n"
                "Document: {{document_title}}\n"
                "Level: {{level}}\n"
                "Delegated by: {{delegated_by}}\n"
                "Reason: {{reason}}\n\n"
                "View: {{action_url}}"
            ),
        ),
        NotificationType.completed: NotificationTemplate(
            subject="Approval completed: {{document_title}}",
            body=(
                "The approval workflow for {{document_title}} is complete.\n\n"
                "Completed: {{completed_at}}\n"
                "{{reason}}\n\n"
                "View: {{action_url}}"
            ),
        ),
    }
)

DEFAULT_CHANNELS = MappingProxyType(
    {
        NotificationType.request: NotificationChannel.in_app,
        NotificationType.reminder: NotificationChannel.email,
        NotificationType.approved: NotificationChannel.in_app,
        NotificationType.rejected: NotificationChannel.in_app,
        NotificationType.escalated: NotificationChannel.email,
        NotificationType.delegated: NotificationChannel.in_app,
        NotificationType.completed: NotificationChannel.in_app,
    }
)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


def render_template(template: NotificationTemplate, values: dict) -> tuple[str, str]:
    """Substitute ``{{key}}`` placeholders; unknown keys render as ''."""

    def _sub(match: re.Match) -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template.subject), _PLACEHOLDER.sub(_sub, template.body)


def retry_delay(retry_count: int) -> timedelta:
    return timedelta(minutes=(3**retry_count) * BACKOFF_BASE_MINUTES)


def _action_url(notification_type: NotificationType, instance_id, document_id) -> str:
    base = settings.web_app_url.rstrip("/")
    if notification_type in (
        NotificationType.request,
        NotificationType.reminder,
        NotificationType.delegated,
        NotificationType.escalated,
    ):
        return f"{base}/approvals/{instance_id}"
    return f"{base}/documents/{document_id}"


def _policy_for(workflow: ApprovalWorkflow | None, notification_type: NotificationType):
    if workflow is None:
        return None
    for policy in workflow.notification_policies or []:
        if policy.get("notification_type") == notification_type.value:
            return policy
    return None


# ---------------------------------------------------------------------------
# ApprovalNotifications
# ---------------------------------------------------------------------------


class ApprovalNotifications:
    def __init__(self, documents: DocumentStore = document_store):
        self.documents = documents

    def enqueue(
        self,
        db: Session,
        instance: ApprovalInstance,
        notification_type: NotificationType,
        recipient_user_id,
        data: dict | None = None,
        now: datetime | None = None,
    ) -> List[ApprovalNotification]:
        """Queue one notification per configured channel.

        Joins the caller's transaction; nothing is committed here.
        """
        now = now or utcnow()
        policy = _policy_for(instance.workflow, notification_type)
        if policy and policy.get("channels"):
            channels = [NotificationChannel(c) for c in policy["channels"]]
        else:
            channels = [DEFAULT_CHANNELS[notification_type]]
        delay = timedelta(minutes=(policy or {}).get("delay_minutes") or 0)

        created = []
        for channel in channels:
            notification = ApprovalNotification(
                instance_id=instance.id,
                notification_type=notification_type,
                recipient_user_id=coerce_uuid(recipient_user_id),
                channel=channel,
                template=f"approval_{notification_type.value}",
                data=_jsonable(data or {}),
                status=NotificationStatus.pending,
                scheduled_at=now + delay,
                retry_count=0,
                created_at=now,
            )
            db.add(notification)
            created.append(notification)
        db.flush()
        logger.debug(
            "Queued %s notification for %s on instance %s",
            notification_type.value,
            recipient_user_id,
            instance.id,
        )
        return created

    def build_context(self, db: Session, notification: ApprovalNotification) -> dict:
        instance = db.get(ApprovalInstance, notification.instance_id)
        if not instance:
            return {}
        context = {
            "instance_id": str(instance.id),
            "document_id": str(instance.document_id),
            "current_level": instance.current_level,
            "status": instance.status.value,
            "urgency": instance.urgency.value,
            "submitted_at": instance.started_at.isoformat() if instance.started_at else "",
            "brand_name": settings.brand_name,
            "action_url": _action_url(
                notification.notification_type, instance.id, instance.document_id
            ),
        }
        document = self.documents.get_document(db, instance.document_id)
        if document:
            context["document_title"] = document.title
            context["document_type"] = str(document.document_type_id)
        return context

    def deliver(self, db: Session, notification: ApprovalNotification) -> None:
        template = TEMPLATES.get(notification.notification_type)
        if template is None:
            raise DeliveryFailure(
                f"Template not found: {notification.notification_type.value}"
            )
        recipient = load_recipient(db, notification.recipient_user_id)
        values = {**self.build_context(db, notification), **(notification.data or {})}
        values.setdefault("recipient_name", recipient.name)
        subject, body = render_template(template, values)
        transport = get_transport(notification.channel)
        transport.send(
            recipient,
            subject,
            body,
            db=db,
            notification=notification,
            action_url=values.get("action_url"),
        )

    def process_pending(
        self, db: Session, now: datetime | None = None, batch_size: int | None = None
    ) -> dict:
        now = now or utcnow()
        batch_size = batch_size or settings.approval_notification_batch_size
        ids = db.scalars(
            select(ApprovalNotification.id)
            .where(
                ApprovalNotification.status == NotificationStatus.pending,
                ApprovalNotification.scheduled_at <= now,
                ApprovalNotification.retry_count < MAX_RETRIES,
            )
            .order_by(ApprovalNotification.scheduled_at.asc())
            .limit(batch_size)
        ).all()

        sent = failed = 0
        for notification_id in ids:
            notification = db.get(ApprovalNotification, notification_id)
            if not notification or notification.status != NotificationStatus.pending:
                continue
            try:
                self.deliver(db, notification)
                notification.status = NotificationStatus.sent
                notification.sent_at = now
                notification.error_message = None
                db.commit()
                NOTIFICATIONS_SENT.labels(channel=notification.channel.value).inc()
                sent += 1
            except Exception as e:
                if not isinstance(e, DeliveryFailure):
                    logger.exception("Unexpected error sending %s", notification_id)
                db.rollback()
                self._mark_failed(db, notification_id, str(e))
                failed += 1

        if ids:
            logger.info("Processed %d notifications: %d sent, %d failed", len(ids), sent, failed)
        return {"sent": sent, "failed": failed}

    @staticmethod
    def _mark_failed(db: Session, notification_id, error: str) -> None:
        notification = db.get(ApprovalNotification, notification_id)
        if not notification:
            return
        notification.status = NotificationStatus.failed
        notification.error_message = error[:4000]
        notification.retry_count = min(notification.retry_count + 1, MAX_RETRIES)
        db.commit()
        NOTIFICATIONS_FAILED.labels(channel=notification.channel.value).inc()
        logger.warning(
            "Notification %s failed (attempt %d/%d): %s",
            notification_id,
            notification.retry_count,
            MAX_RETRIES,
            error,
        )
        if notification.retry_count >= MAX_RETRIES:
            NOTIFICATIONS_ABANDONED.inc()
            logger.error(
                "Notification %s abandoned after %d attempts",
                notification_id,
                notification.retry_count,
            )

    def retry_failed(self, db: Session, now: datetime | None = None) -> dict:
        now = now or utcnow()
        failed = db.scalars(
            select(ApprovalNotification).where(
                ApprovalNotification.status == NotificationStatus.failed,
                ApprovalNotification.retry_count < MAX_RETRIES,
            )
        ).all()
        for notification in failed:
            notification.status = NotificationStatus.pending
            notification.scheduled_at = now + retry_delay(notification.retry_count)
        db.commit()
        if failed:
            logger.info("Rescheduled %d failed notifications", len(failed))
        return {"rescheduled": len(failed)}

    def purge(
        self, db: Session, now: datetime | None = None, retention_days: int | None = None
    ) -> int:
        now = now or utcnow()
        if retention_days is None:
            retention_days = settings.approval_notification_retention_days
        cutoff = now - timedelta(days=retention_days)
        result = db.execute(
            delete(ApprovalNotification)
            .where(
                ApprovalNotification.created_at < cutoff,
                or_(
                    ApprovalNotification.status == NotificationStatus.sent,
                    (ApprovalNotification.status == NotificationStatus.failed)
                    & (ApprovalNotification.retry_count >= MAX_RETRIES),
                ),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        deleted = result.rowcount or 0
        logger.info("Deleted %d notifications older than %d days", deleted, retention_days)
        return deleted

    @staticmethod
    def list_for_instance(db: Session, instance_id: str) -> List[ApprovalNotification]:
        return db.scalars(
            select(ApprovalNotification)
            .where(ApprovalNotification.instance_id == coerce_uuid(instance_id))
            .order_by(ApprovalNotification.created_at.desc())
        ).all()


def _jsonable(data: dict) -> dict:
    out = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, (str, int, float, bool)) or value is None:
            out[key] = value
        else:
            out[key] = str(value)
    return out


approval_notifications = ApprovalNotifications()
