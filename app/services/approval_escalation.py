import logging
import math
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.approval import (
    ApprovalInstance,
    ApprovalInstanceStatus,
    ApprovalRecord,
    ApprovalRecordStatus,
    EscalationType,
    NotificationType,
)
from app.services.approval_instance import ApprovalInstances, approval_instances
from app.services.common import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def find_timeout_rule(workflow, level: dict) -> dict | None:
    timeout = level.get("timeout_hours")
    if not timeout:
        return None
    for rule in workflow.escalation_rules or []:
        if (
            rule.get("from_level") == level.get("level")
            and (rule.get("trigger_after_hours") or 0) <= timeout
        ):
            return rule
    return None


def reminder_boundary(started_at: datetime, now: datetime) -> int:
    """Number of whole reminder intervals elapsed since ``started_at``."""
    elapsed = ensure_utc(now) - ensure_utc(started_at)
    interval = timedelta(hours=settings.approval_reminder_interval_hours)
    return max(0, math.floor(elapsed / interval))


class ApprovalEscalations:
    def __init__(self, instances: ApprovalInstances = approval_instances):
        self.instances = instances

    def evaluate(self, db: Session, now: datetime | None = None) -> dict:
        """Run timeout and reminder checks over every in-progress instance.

        Each instance is handled in its own transaction; a failure is logged,
        rolled back, and does not stop the rest of the batch.
        """
        now = now or utcnow()
        report = {"checked": 0, "escalated": 0, "auto_approved": 0, "reminders": 0, "errors": 0}
        ids = db.scalars(
            select(ApprovalInstance.id)
            .where(ApprovalInstance.status == ApprovalInstanceStatus.in_progress)
            .order_by(ApprovalInstance.started_at.asc())
        ).all()
        for instance_id in ids:
            report["checked"] += 1
            try:
                outcome = self.check_timeout(db, instance_id, now)
                if outcome:
                    report[outcome] += 1
                db.commit()
            except Exception:
                db.rollback()
                report["errors"] += 1
                logger.exception("Timeout check failed for approval instance %s", instance_id)
                continue
            try:
                report["reminders"] += self.send_reminders(db, instance_id, now)
                db.commit()
            except Exception:
                db.rollback()
                report["errors"] += 1
                logger.exception("Reminder check failed for approval instance %s", instance_id)
        return report

    def check_timeout(self, db: Session, instance_id, now: datetime) -> str | None:
        instance = self.instances.lock(db, instance_id)
        # Re-check under the lock; a decision may have landed since the scan.
        if instance.status != ApprovalInstanceStatus.in_progress:
            return None
        workflow = instance.workflow
        level = workflow.get_level(instance.current_level)
        if not level or not level.get("timeout_hours"):
            return None
        deadline = ensure_utc(instance.started_at) + timedelta(
            hours=level["timeout_hours"]
        )
        if ensure_utc(now) <= deadline:
            return None
        rule = find_timeout_rule(workflow, level)
        if rule is None:
            return None

        reason = (
            f"Automatic escalation due to timeout after {level['timeout_hours']} hours"
        )
        if rule.get("auto_approve"):
            self.instances.transition_to_level(
                db,
                instance,
                rule["to_level"],
                reason=reason,
                escalation_type=EscalationType.timeout,
                notify_users=rule.get("notify_users"),
                now=now,
                open_level=False,
            )
            self.instances.complete(
                db, instance, now, reason="Auto-approved due to escalation rule"
            )
            return "auto_approved"

        self.instances.transition_to_level(
            db,
            instance,
            rule["to_level"],
            reason=reason,
            escalation_type=EscalationType.timeout,
            notify_users=rule.get("notify_users"),
            now=now,
        )
        return "escalated"

    def send_reminders(self, db: Session, instance_id, now: datetime) -> int:
        instance = db.get(ApprovalInstance, instance_id)
        if not instance or instance.status != ApprovalInstanceStatus.in_progress:
            return 0
        boundary = reminder_boundary(instance.started_at, now)
        if boundary < 1:
            return 0

        records = db.scalars(
            select(ApprovalRecord).where(
                ApprovalRecord.instance_id == instance.id,
                ApprovalRecord.level == instance.current_level,
                ApprovalRecord.status == ApprovalRecordStatus.pending,
                ApprovalRecord.reminders_sent < boundary,
            )
        ).all()
        level = instance.workflow.get_level(instance.current_level) or {}
        days_pending = (ensure_utc(now) - ensure_utc(instance.started_at)).days
        for record in records:
            self.instances.notifications.enqueue(
                db,
                instance,
                NotificationType.reminder,
                record.approver_user_id,
                data={
                    "level": record.level,
                    "level_name": level.get("name"),
                    "days_pending": days_pending,
                },
                now=now,
            )
            record.reminders_sent = boundary
        if records:
            logger.info(
                "Queued %d reminders for approval instance %s", len(records), instance.id
            )
        return len(records)


approval_escalations = ApprovalEscalations()
