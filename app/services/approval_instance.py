import logging
from datetime import datetime
from typing import List

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app.models.approval import (
    ApprovalInstance,
    ApprovalInstanceStatus,
    ApprovalRecord,
    ApprovalRecordStatus,
    ApprovalWorkflow,
    DelegationRecord,
    EscalationRecord,
    EscalationType,
    NotificationType,
)
from app.models.person import Person
from app.observability import ESCALATIONS
from app.schemas.approval import (
    ApprovalDecisionRequest,
    CancelApprovalRequest,
    DelegateApprovalRequest,
    EscalateApprovalRequest,
    SubmitForApprovalRequest,
)
from app.services.approval_notification import (
    ApprovalNotifications,
    approval_notifications,
)
from app.services.approval_workflow import approval_workflows
from app.services.approver_resolver import ApproverResolver, approver_resolver
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    ensure_utc,
    utcnow,
)
from app.services.document_store import (
    DocumentSnapshot,
    DocumentStore,
    document_store,
)
from app.services.errors import (
    ApprovalError,
    ApprovalNotFound,
    InvalidApprovalState,
    NoPendingApproval,
    NoWorkflowConfigured,
)
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def _lookup(content: dict, path: str):
    value = content
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def condition_holds(condition: dict, content: dict) -> bool:
    actual = _lookup(content, condition.get("field", ""))
    expected = condition.get("value")
    operator = condition.get("operator")
    try:
        if operator == "equals":
            return actual == expected
        if operator == "less_than":
            return actual is not None and actual < expected
        if operator == "greater_than":
            return actual is not None and actual > expected
        if operator == "contains":
            return actual is not None and expected in actual
    except TypeError:
        return False
    return False


def should_skip_level(level: dict, document: DocumentSnapshot) -> bool:
    """A level is skipped only when it has conditions and all of them hold."""
    conditions = level.get("skip_conditions") or []
    if not conditions:
        return False
    return all(condition_holds(c, document.content) for c in conditions)


def _person_name(db: Session, user_id) -> str:
    person = db.get(Person, user_id) if user_id else None
    return person.display_name if person else str(user_id or "")


# ---------------------------------------------------------------------------
# ApprovalInstances
# ---------------------------------------------------------------------------


class ApprovalInstances(ListResponseMixin):
    def __init__(
        self,
        documents: DocumentStore = document_store,
        resolver: ApproverResolver = approver_resolver,
        notifications: ApprovalNotifications = approval_notifications,
    ):
        self.documents = documents
        self.resolver = resolver
        self.notifications = notifications

    # -- commands ----------------------------------------------------------

    def submit(
        self,
        db: Session,
        document_id: str,
        payload: SubmitForApprovalRequest,
        now: datetime | None = None,
    ) -> ApprovalInstance:
        now = now or utcnow()
        document = self.documents.get_document(db, document_id)
        if not document:
            raise ApprovalNotFound("Document not found")
        if document.status != "draft":
            raise InvalidApprovalState(
                f"Document must be in draft status to submit (is {document.status})"
            )
        workflow = approval_workflows.find_for_document_type(
            db, document.document_type_id
        )
        if not workflow:
            raise NoWorkflowConfigured(
                "No approval workflow configured for this document type",
                details={"document_type_id": str(document.document_type_id)},
            )

        instance = ApprovalInstance(
            document_id=document.id,
            workflow=workflow,
            current_level=1,
            status=ApprovalInstanceStatus.pending,
            urgency=payload.urgency,
            submitted_by=payload.submitted_by,
            comments=payload.comments,
            started_at=now,
        )
        try:
            db.add(instance)
            db.flush()
            self.documents.set_document_status(db, document.id, "submitted")

            first_level = self._next_level(workflow, document, after=0)
            if first_level is None:
                self.complete(
                    db, instance, now, reason="All approval levels were skipped"
                )
            else:
                instance.status = ApprovalInstanceStatus.in_progress
                instance.current_level = first_level
                self._open_level(db, instance, workflow, first_level, now)
        except ApprovalError:
            db.rollback()
            raise

        db.commit()
        db.refresh(instance)
        logger.info(
            "Submitted document %s for approval: instance %s (workflow %s)",
            document.id,
            instance.id,
            workflow.id,
        )
        return instance

    def process(
        self,
        db: Session,
        instance_id: str,
        payload: ApprovalDecisionRequest,
        now: datetime | None = None,
    ) -> ApprovalInstance:
        now = now or utcnow()
        instance = self.lock(db, instance_id)
        if instance.status != ApprovalInstanceStatus.in_progress:
            raise InvalidApprovalState(
                f"Approval instance is not in progress (is {instance.status.value})"
            )
        if payload.action not in ("approve", "reject"):
            raise InvalidApprovalState(f"Invalid action: {payload.action}")
        document = self.documents.get_document(db, instance.document_id)
        if not document:
            raise ApprovalNotFound("Document not found")

        record = None
        if payload.level == instance.current_level:
            record = self._pending_record(
                db, instance.id, payload.level, payload.approver_user_id
            )
        if not record:
            raise NoPendingApproval(
                "No pending approval for this approver at the current level",
                details={
                    "level": payload.level,
                    "approver_user_id": str(payload.approver_user_id),
                },
            )

        record.comments = payload.comments
        record.decided_at = now
        decided_by = _person_name(db, payload.approver_user_id)

        if payload.action == "reject":
            record.status = ApprovalRecordStatus.rejected
            instance.status = ApprovalInstanceStatus.rejected
            instance.completed_at = now
            self.documents.set_document_status(db, instance.document_id, "rejected")
            self.notifications.enqueue(
                db,
                instance,
                NotificationType.rejected,
                instance.submitted_by,
                data={
                    "level": payload.level,
                    "rejected_by": decided_by,
                    "reason": payload.comments,
                },
                now=now,
            )
            logger.info(
                "Approval instance %s rejected at level %d by %s",
                instance.id,
                payload.level,
                payload.approver_user_id,
            )
        else:
            record.status = ApprovalRecordStatus.approved
            self.notifications.enqueue(
                db,
                instance,
                NotificationType.approved,
                instance.submitted_by,
                data={
                    "level": payload.level,
                    "approved_by": decided_by,
                    "comments": payload.comments,
                },
                now=now,
            )
            db.flush()
            if self._level_satisfied(db, instance, payload.level):
                try:
                    self._advance(db, instance, document, now)
                except ApprovalError:
                    db.rollback()
                    raise

        db.commit()
        db.refresh(instance)
        return instance

    def delegate(
        self,
        db: Session,
        instance_id: str,
        payload: DelegateApprovalRequest,
        now: datetime | None = None,
    ) -> ApprovalInstance:
        now = now or utcnow()
        instance = self.lock(db, instance_id)
        if instance.status != ApprovalInstanceStatus.in_progress:
            raise InvalidApprovalState(
                f"Approval instance is not in progress (is {instance.status.value})"
            )
        if payload.from_user_id == payload.to_user_id:
            raise InvalidApprovalState("Cannot delegate an approval to the same user")

        record = None
        if payload.level == instance.current_level:
            record = self._pending_record(
                db, instance.id, payload.level, payload.from_user_id
            )
        if not record:
            raise NoPendingApproval(
                "No pending approval to delegate for this user at the current level"
            )
        existing = db.scalars(
            select(ApprovalRecord.id).where(
                ApprovalRecord.instance_id == instance.id,
                ApprovalRecord.level == payload.level,
                ApprovalRecord.approver_user_id == payload.to_user_id,
            )
        ).first()
        if existing:
            raise InvalidApprovalState(
                "Delegate already holds an approval at this level"
            )

        record.original_approver_user_id = (
            record.original_approver_user_id or payload.from_user_id
        )
        record.approver_user_id = payload.to_user_id
        db.add(
            DelegationRecord(
                instance_id=instance.id,
                level=payload.level,
                from_user_id=payload.from_user_id,
                to_user_id=payload.to_user_id,
                reason=payload.reason,
                delegated_at=now,
            )
        )
        self.notifications.enqueue(
            db,
            instance,
            NotificationType.delegated,
            payload.to_user_id,
            data={
                "level": payload.level,
                "delegated_by": _person_name(db, payload.from_user_id),
                "reason": payload.reason,
            },
            now=now,
        )
        db.commit()
        db.refresh(instance)
        logger.info(
            "Delegated level %d approval on %s from %s to %s",
            payload.level,
            instance.id,
            payload.from_user_id,
            payload.to_user_id,
        )
        return instance

    def escalate(
        self,
        db: Session,
        instance_id: str,
        payload: EscalateApprovalRequest,
        now: datetime | None = None,
    ) -> ApprovalInstance:
        now = now or utcnow()
        instance = self.lock(db, instance_id)
        if instance.status != ApprovalInstanceStatus.in_progress:
            raise InvalidApprovalState(
                f"Approval instance is not in progress (is {instance.status.value})"
            )
        if payload.from_level != instance.current_level:
            raise InvalidApprovalState(
                "Escalation must start from the current level",
                details={"current_level": instance.current_level},
            )
        if payload.to_level <= payload.from_level:
            raise InvalidApprovalState("Escalation must move to a higher level")
        if instance.workflow.get_level(payload.to_level) is None:
            raise InvalidApprovalState(
                f"Workflow has no level {payload.to_level}"
            )

        try:
            self.transition_to_level(
                db,
                instance,
                payload.to_level,
                reason=payload.reason,
                escalation_type=EscalationType.manual,
                escalated_by=payload.escalated_by,
                now=now,
            )
        except ApprovalError:
            db.rollback()
            raise
        db.commit()
        db.refresh(instance)
        return instance

    def cancel(
        self,
        db: Session,
        instance_id: str,
        payload: CancelApprovalRequest,
        now: datetime | None = None,
    ) -> ApprovalInstance:
        now = now or utcnow()
        instance = self.lock(db, instance_id)
        if instance.is_terminal:
            raise InvalidApprovalState(
                f"Approval instance is already {instance.status.value}"
            )
        instance.status = ApprovalInstanceStatus.cancelled
        instance.completed_at = now
        if payload.reason:
            instance.comments = payload.reason
        self.documents.set_document_status(db, instance.document_id, "draft")
        db.commit()
        db.refresh(instance)
        logger.info("Approval instance %s cancelled by %s", instance.id, payload.cancelled_by)
        return instance

    # -- transitions shared with the escalation evaluator --------------------

    def transition_to_level(
        self,
        db: Session,
        instance: ApprovalInstance,
        to_level: int,
        reason: str,
        escalation_type: EscalationType,
        escalated_by=None,
        notify_users=None,
        now: datetime | None = None,
        open_level: bool = True,
    ) -> EscalationRecord:
        """Move an in-progress instance off its current level.

        Pending records at the old level are closed as escalated and one
        escalation record is appended. The instance moves to ``to_level``, and
        with ``open_level`` that level's records are generated. Escalated
        notifications go to ``notify_users``, or to the new level's approvers
        when none are given.
        """
        now = now or utcnow()
        from_level = instance.current_level
        for record in self._records_at(db, instance.id, from_level):
            if record.status == ApprovalRecordStatus.pending:
                record.status = ApprovalRecordStatus.escalated
                record.decided_at = now

        escalation = EscalationRecord(
            instance_id=instance.id,
            from_level=from_level,
            to_level=to_level,
            reason=reason,
            escalation_type=escalation_type,
            escalated_by=escalated_by,
            escalated_at=now,
        )
        db.add(escalation)

        recipients = list(notify_users or [])
        instance.current_level = to_level
        if open_level:
            records = self._generate_records(db, instance, to_level, now)
            if not recipients:
                recipients = [r.approver_user_id for r in records]
        db.flush()

        for user_id in recipients:
            self.notifications.enqueue(
                db,
                instance,
                NotificationType.escalated,
                user_id,
                data={"from_level": from_level, "to_level": to_level, "reason": reason},
                now=now,
            )
        ESCALATIONS.labels(escalation_type=escalation_type.value).inc()
        logger.info(
            "Escalated approval instance %s from level %d to %d (%s)",
            instance.id,
            from_level,
            to_level,
            escalation_type.value,
        )
        return escalation

    def complete(
        self, db: Session, instance: ApprovalInstance, now: datetime, reason: str | None = None
    ) -> None:
        instance.status = ApprovalInstanceStatus.approved
        instance.completed_at = now
        self.documents.set_document_status(db, instance.document_id, "approved")
        self.notifications.enqueue(
            db,
            instance,
            NotificationType.completed,
            instance.submitted_by,
            data={"completed_at": now.isoformat(), "reason": reason},
            now=now,
        )
        logger.info("Approval instance %s approved", instance.id)

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def lock(db: Session, instance_id) -> ApprovalInstance:
        instance = db.scalars(
            select(ApprovalInstance)
            .where(ApprovalInstance.id == coerce_uuid(instance_id))
            .with_for_update()
        ).first()
        if not instance:
            raise ApprovalNotFound("Approval instance not found")
        return instance

    @staticmethod
    def _pending_record(db: Session, instance_id, level: int, approver_user_id):
        return db.scalars(
            select(ApprovalRecord).where(
                ApprovalRecord.instance_id == instance_id,
                ApprovalRecord.level == level,
                ApprovalRecord.approver_user_id == coerce_uuid(approver_user_id),
                ApprovalRecord.status == ApprovalRecordStatus.pending,
            )
        ).first()

    @staticmethod
    def _records_at(db: Session, instance_id, level: int):
        return db.scalars(
            select(ApprovalRecord).where(
                ApprovalRecord.instance_id == instance_id,
                ApprovalRecord.level == level,
            )
        ).all()

    @staticmethod
    def _level_satisfied(db: Session, instance: ApprovalInstance, level: int) -> bool:
        config = instance.workflow.get_level(level) or {}
        approved = db.scalar(
            select(func.count(ApprovalRecord.id)).where(
                ApprovalRecord.instance_id == instance.id,
                ApprovalRecord.level == level,
                ApprovalRecord.status == ApprovalRecordStatus.approved,
            )
        )
        return approved >= config.get("required_approvals", 1)

    @staticmethod
    def _next_level(
        workflow: ApprovalWorkflow, document: DocumentSnapshot, after: int
    ) -> int | None:
        for number in range(after + 1, workflow.max_level + 1):
            level = workflow.get_level(number)
            if level is None:
                continue
            if should_skip_level(level, document):
                logger.info("Skipping approval level %d for document %s", number, document.id)
                continue
            return number
        return None

    def _advance(
        self,
        db: Session,
        instance: ApprovalInstance,
        document: DocumentSnapshot,
        now: datetime,
    ) -> None:
        next_level = self._next_level(instance.workflow, document, instance.current_level)
        if next_level is None:
            self.complete(db, instance, now)
            return
        logger.info(
            "Approval instance %s advanced from level %d to %d",
            instance.id,
            instance.current_level,
            next_level,
        )
        instance.current_level = next_level
        self._open_level(db, instance, instance.workflow, next_level, now)

    def _open_level(
        self,
        db: Session,
        instance: ApprovalInstance,
        workflow: ApprovalWorkflow,
        level: int,
        now: datetime,
    ) -> None:
        records = self._generate_records(db, instance, level, now)
        config = workflow.get_level(level) or {}
        for record in records:
            self.notifications.enqueue(
                db,
                instance,
                NotificationType.request,
                record.approver_user_id,
                data={"level": level, "level_name": config.get("name")},
                now=now,
            )

    def _generate_records(
        self, db: Session, instance: ApprovalInstance, level: int, now: datetime
    ) -> list[ApprovalRecord]:
        workflow = instance.workflow
        config = workflow.get_level(level)
        if config is None:
            raise InvalidApprovalState(f"Workflow has no level {level}")
        approvers = self.resolver.resolve_approvers(db, config)
        if not approvers:
            raise InvalidApprovalState(
                f"No approvers could be resolved for level {level}"
            )

        # A level can be re-entered by escalation; reopen rows instead of
        # colliding with the (instance, level, approver) unique key.
        existing = {
            record.approver_user_id: record
            for record in self._records_at(db, instance.id, level)
        }
        records = []
        assigned = set()
        for approver_id in approvers:
            delegate_to = _active_delegate(workflow, approver_id, level, now)
            holder = delegate_to or approver_id
            if holder in assigned:
                continue
            assigned.add(holder)
            if holder in existing:
                record = existing[holder]
                record.status = ApprovalRecordStatus.pending
                record.decided_at = None
                record.reminders_sent = 0
                records.append(record)
                continue
            record = ApprovalRecord(
                instance_id=instance.id,
                level=level,
                approver_user_id=holder,
                original_approver_user_id=approver_id if delegate_to else None,
                status=ApprovalRecordStatus.pending,
            )
            db.add(record)
            records.append(record)
            if delegate_to:
                db.add(
                    DelegationRecord(
                        instance_id=instance.id,
                        level=level,
                        from_user_id=approver_id,
                        to_user_id=delegate_to,
                        reason="Delegation rule",
                        delegated_at=now,
                    )
                )
        db.flush()
        return records

    # -- queries -------------------------------------------------------------

    @staticmethod
    def get(db: Session, instance_id: str) -> ApprovalInstance:
        instance = db.get(ApprovalInstance, coerce_uuid(instance_id))
        if not instance:
            raise ApprovalNotFound("Approval instance not found")
        return instance

    @staticmethod
    def list(
        db: Session,
        document_id: str | None,
        workflow_id: str | None,
        status: str | None,
        submitted_by: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[ApprovalInstance]:
        stmt = select(ApprovalInstance)
        if document_id is not None:
            stmt = stmt.where(ApprovalInstance.document_id == coerce_uuid(document_id))
        if workflow_id is not None:
            stmt = stmt.where(ApprovalInstance.workflow_id == coerce_uuid(workflow_id))
        if status is not None:
            try:
                status_value = ApprovalInstanceStatus(status)
            except ValueError:
                raise InvalidApprovalState(f"Invalid status: {status}")
            stmt = stmt.where(ApprovalInstance.status == status_value)
        if submitted_by is not None:
            stmt = stmt.where(ApprovalInstance.submitted_by == coerce_uuid(submitted_by))
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "started_at": ApprovalInstance.started_at,
                "completed_at": ApprovalInstance.completed_at,
                "created_at": ApprovalInstance.created_at,
            },
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def pending_for(db: Session, approver_id: str) -> List[dict]:
        rows = db.execute(
            select(ApprovalRecord, ApprovalInstance)
            .join(ApprovalInstance, ApprovalInstance.id == ApprovalRecord.instance_id)
            .where(
                ApprovalRecord.approver_user_id == coerce_uuid(approver_id),
                ApprovalRecord.status == ApprovalRecordStatus.pending,
                ApprovalInstance.status == ApprovalInstanceStatus.in_progress,
                ApprovalRecord.level == ApprovalInstance.current_level,
            )
            .order_by(ApprovalInstance.started_at.asc())
        ).all()
        return [
            {
                "id": record.id,
                "instance_id": record.instance_id,
                "level": record.level,
                "approver_user_id": record.approver_user_id,
                "original_approver_user_id": record.original_approver_user_id,
                "status": record.status,
                "comments": record.comments,
                "decided_at": record.decided_at,
                "created_at": record.created_at,
                "document_id": instance.document_id,
                "workflow_id": instance.workflow_id,
                "urgency": instance.urgency,
                "started_at": instance.started_at,
            }
            for record, instance in rows
        ]

    @staticmethod
    def history(db: Session, document_id: str) -> List[ApprovalInstance]:
        return db.scalars(
            select(ApprovalInstance)
            .where(ApprovalInstance.document_id == coerce_uuid(document_id))
            .options(
                selectinload(ApprovalInstance.approval_records),
                selectinload(ApprovalInstance.escalation_records),
                selectinload(ApprovalInstance.delegation_records),
            )
            .order_by(ApprovalInstance.started_at.desc())
        ).all()

    @staticmethod
    def metrics(db: Session) -> dict:
        by_status = {status.value: 0 for status in ApprovalInstanceStatus}
        for status, count in db.execute(
            select(ApprovalInstance.status, func.count(ApprovalInstance.id)).group_by(
                ApprovalInstance.status
            )
        ).all():
            by_status[status.value] = count
        total = sum(by_status.values())

        durations = [
            (ensure_utc(completed) - ensure_utc(started)).total_seconds() / 3600
            for started, completed in db.execute(
                select(ApprovalInstance.started_at, ApprovalInstance.completed_at).where(
                    ApprovalInstance.status == ApprovalInstanceStatus.approved,
                    ApprovalInstance.completed_at.is_not(None),
                )
            ).all()
        ]
        escalated = db.scalar(
            select(func.count(func.distinct(EscalationRecord.instance_id)))
        )
        return {
            "total_instances": total,
            "by_status": by_status,
            "average_completion_hours": (
                round(sum(durations) / len(durations), 2) if durations else None
            ),
            "rejection_rate": round(by_status["rejected"] / total, 4) if total else 0.0,
            "escalation_rate": round((escalated or 0) / total, 4) if total else 0.0,
        }


def _active_delegate(workflow: ApprovalWorkflow, approver_id, level: int, now: datetime):
    now = ensure_utc(now)
    for rule in workflow.delegation_rules or []:
        if not rule.get("is_active", True):
            continue
        if coerce_uuid(rule.get("from_user_id")) != approver_id:
            continue
        levels = rule.get("levels")
        if levels and level not in levels:
            continue
        start = ensure_utc(datetime.fromisoformat(rule["start_date"]))
        end = ensure_utc(datetime.fromisoformat(rule["end_date"]))
        if start <= now <= end:
            return coerce_uuid(rule.get("to_user_id"))
    return None


approval_instances = ApprovalInstances()
