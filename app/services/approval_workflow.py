import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.approval import (
    ApprovalInstance,
    ApprovalInstanceStatus,
    ApprovalWorkflow,
)
from app.schemas.approval import (
    ApprovalLevel,
    ApprovalWorkflowCreate,
    ApprovalWorkflowUpdate,
    EscalationRule,
)
from app.services.common import apply_ordering, apply_pagination, coerce_uuid
from app.services.errors import (
    ApprovalNotFound,
    InvalidApprovalState,
    WorkflowValidationError,
)
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

_JSON_FIELDS = (
    "document_type_ids",
    "levels",
    "escalation_rules",
    "delegation_rules",
    "notification_policies",
)


def validate_levels(levels: list[ApprovalLevel]) -> None:
    if not levels:
        raise WorkflowValidationError("Workflow must have at least one level")

    numbers = sorted(level.level for level in levels)
    if numbers != list(range(1, len(numbers) + 1)):
        raise WorkflowValidationError(
            "Workflow levels must be numbered consecutively starting from 1",
            details={"levels": numbers},
        )

    for level in levels:
        if level.required_approvals < 1:
            raise WorkflowValidationError(
                f"Level {level.level} must require at least 1 approval"
            )
        if not level.approver_ids and not level.approver_roles:
            raise WorkflowValidationError(
                f"Level {level.level} must specify at least one approver or role"
            )
        if level.timeout_hours is not None and level.timeout_hours <= 0:
            raise WorkflowValidationError(
                f"Level {level.level} timeout_hours must be positive"
            )


def validate_escalation_rules(
    rules: list[EscalationRule], levels: list[ApprovalLevel]
) -> None:
    known = {level.level for level in levels}
    for rule in rules:
        if rule.from_level not in known or rule.to_level not in known:
            raise WorkflowValidationError(
                "Escalation rule references an unknown level",
                details={"from_level": rule.from_level, "to_level": rule.to_level},
            )
        if rule.to_level == rule.from_level:
            raise WorkflowValidationError(
                "Escalation rule must move to a different level",
                details={"from_level": rule.from_level},
            )


def _dump_json_fields(payload, fields) -> dict:
    data = {}
    for name in fields:
        value = getattr(payload, name)
        if value is None:
            continue
        data[name] = [
            item.model_dump(mode="json") if hasattr(item, "model_dump") else str(item)
            for item in value
        ]
    return data


# ---------------------------------------------------------------------------
# ApprovalWorkflows
# ---------------------------------------------------------------------------


class ApprovalWorkflows(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: ApprovalWorkflowCreate) -> ApprovalWorkflow:
        validate_levels(payload.levels)
        validate_escalation_rules(payload.escalation_rules, payload.levels)
        if db.scalars(
            select(ApprovalWorkflow).where(ApprovalWorkflow.name == payload.name)
        ).first():
            raise InvalidApprovalState(f"Workflow name already exists: {payload.name}")

        workflow = ApprovalWorkflow(
            name=payload.name,
            description=payload.description,
            is_active=payload.is_active,
            created_by=payload.created_by,
            **_dump_json_fields(payload, _JSON_FIELDS),
        )
        db.add(workflow)
        db.commit()
        db.refresh(workflow)
        logger.info("Created approval workflow %s (%s)", workflow.id, workflow.name)
        return workflow

    @staticmethod
    def get(db: Session, workflow_id: str) -> ApprovalWorkflow:
        workflow = db.get(ApprovalWorkflow, coerce_uuid(workflow_id))
        if not workflow:
            raise ApprovalNotFound("Approval workflow not found")
        return workflow

    @staticmethod
    def list(
        db: Session,
        document_type_id: str | None,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[ApprovalWorkflow]:
        stmt = select(ApprovalWorkflow)
        if is_active is None:
            stmt = stmt.where(ApprovalWorkflow.is_active.is_(True))
        else:
            stmt = stmt.where(ApprovalWorkflow.is_active == is_active)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "name": ApprovalWorkflow.name,
                "created_at": ApprovalWorkflow.created_at,
            },
        )
        if document_type_id is None:
            return db.scalars(apply_pagination(stmt, limit, offset)).all()
        # document_type_ids is a JSON array; filter portably in Python.
        wanted = str(coerce_uuid(document_type_id))
        matches = [
            wf for wf in db.scalars(stmt).all() if wanted in (wf.document_type_ids or [])
        ]
        return matches[offset : offset + limit]

    @staticmethod
    def find_for_document_type(db: Session, document_type_id) -> ApprovalWorkflow | None:
        wanted = str(coerce_uuid(document_type_id))
        stmt = (
            select(ApprovalWorkflow)
            .where(ApprovalWorkflow.is_active.is_(True))
            .order_by(ApprovalWorkflow.created_at.asc())
        )
        for workflow in db.scalars(stmt).all():
            if wanted in (workflow.document_type_ids or []):
                return workflow
        return None

    @staticmethod
    def update(
        db: Session, workflow_id: str, payload: ApprovalWorkflowUpdate
    ) -> ApprovalWorkflow:
        workflow = db.get(ApprovalWorkflow, coerce_uuid(workflow_id))
        if not workflow:
            raise ApprovalNotFound("Approval workflow not found")

        changed = payload.model_dump(exclude_unset=True)
        if set(changed) - {"is_active"} and _is_referenced(db, workflow.id):
            raise InvalidApprovalState(
                "Workflow is referenced by approval instances; only is_active "
                "may change"
            )

        levels = payload.levels
        if levels is not None:
            validate_levels(levels)
        if payload.escalation_rules is not None or levels is not None:
            current_levels = levels or [
                ApprovalLevel.model_validate(lvl) for lvl in workflow.levels
            ]
            rules = payload.escalation_rules
            if rules is None:
                rules = [
                    EscalationRule.model_validate(r) for r in workflow.escalation_rules
                ]
            validate_escalation_rules(rules, current_levels)

        json_fields = [name for name in _JSON_FIELDS if name in changed]
        for key, value in _dump_json_fields(payload, json_fields).items():
            setattr(workflow, key, value)
        for key in ("name", "description", "is_active"):
            if key in changed and changed[key] is not None:
                setattr(workflow, key, changed[key])
        db.commit()
        db.refresh(workflow)
        logger.info("Updated approval workflow %s", workflow.id)
        return workflow

    @staticmethod
    def delete(db: Session, workflow_id: str) -> None:
        workflow = db.get(ApprovalWorkflow, coerce_uuid(workflow_id))
        if not workflow:
            raise ApprovalNotFound("Approval workflow not found")
        active = db.scalars(
            select(ApprovalInstance.id).where(
                ApprovalInstance.workflow_id == workflow.id,
                ApprovalInstance.status.in_(
                    [ApprovalInstanceStatus.pending, ApprovalInstanceStatus.in_progress]
                ),
            )
        ).first()
        if active:
            raise InvalidApprovalState(
                "Cannot delete workflow with active approval instances"
            )
        workflow.is_active = False
        db.commit()
        logger.info("Soft-deleted approval workflow %s", workflow_id)


def _is_referenced(db: Session, workflow_id) -> bool:
    return (
        db.scalars(
            select(ApprovalInstance.id).where(ApprovalInstance.workflow_id == workflow_id)
        ).first()
        is not None
    )


approval_workflows = ApprovalWorkflows()
