from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.approval import (
    ApprovalInstanceStatus,
    ApprovalRecordStatus,
    ApprovalUrgency,
    EscalationType,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
)


# ---------------------------------------------------------------------------
# Workflow configuration
# ---------------------------------------------------------------------------


class SkipCondition(BaseModel):
    field: str
    operator: Literal["equals", "less_than", "greater_than", "contains"]
    value: Any = None


class ApprovalLevel(BaseModel):
    level: int
    name: str | None = None
    approver_ids: list[UUID] = Field(default_factory=list)
    approver_roles: list[str] = Field(default_factory=list)
    required_approvals: int = 1
    is_parallel: bool = False
    timeout_hours: float | None = None
    skip_conditions: list[SkipCondition] = Field(default_factory=list)


class EscalationRule(BaseModel):
    from_level: int
    to_level: int
    trigger_after_hours: float = 0
    escalation_type: EscalationType = EscalationType.timeout
    notify_users: list[UUID] = Field(default_factory=list)
    auto_approve: bool = False


class DelegationRule(BaseModel):
    from_user_id: UUID
    to_user_id: UUID
    start_date: datetime
    end_date: datetime
    levels: list[int] | None = None
    is_active: bool = True


class NotificationPolicy(BaseModel):
    notification_type: NotificationType
    channels: list[NotificationChannel] = Field(default_factory=list)
    delay_minutes: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# ApprovalWorkflow
# ---------------------------------------------------------------------------


class ApprovalWorkflowBase(BaseModel):
    name: str
    description: str | None = None
    document_type_ids: list[UUID] = Field(default_factory=list)
    levels: list[ApprovalLevel]
    escalation_rules: list[EscalationRule] = Field(default_factory=list)
    delegation_rules: list[DelegationRule] = Field(default_factory=list)
    notification_policies: list[NotificationPolicy] = Field(default_factory=list)
    is_active: bool = True


class ApprovalWorkflowCreate(ApprovalWorkflowBase):
    created_by: UUID | None = None


class ApprovalWorkflowUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    document_type_ids: list[UUID] | None = None
    levels: list[ApprovalLevel] | None = None
    escalation_rules: list[EscalationRule] | None = None
    delegation_rules: list[DelegationRule] | None = None
    notification_policies: list[NotificationPolicy] | None = None
    is_active: bool | None = None


class ApprovalWorkflowRead(ApprovalWorkflowBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_by: UUID | None = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class SubmitForApprovalRequest(BaseModel):
    submitted_by: UUID
    urgency: ApprovalUrgency = ApprovalUrgency.normal
    comments: str | None = None


class ApprovalDecisionRequest(BaseModel):
    level: int
    approver_user_id: UUID
    action: Literal["approve", "reject"]
    comments: str | None = None


class DelegateApprovalRequest(BaseModel):
    level: int
    from_user_id: UUID
    to_user_id: UUID
    reason: str | None = None


class EscalateApprovalRequest(BaseModel):
    from_level: int
    to_level: int
    reason: str
    escalated_by: UUID | None = None


class CancelApprovalRequest(BaseModel):
    cancelled_by: UUID
    reason: str | None = None


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class ApprovalRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    instance_id: UUID
    level: int
    approver_user_id: UUID
    original_approver_user_id: UUID | None = None
    status: ApprovalRecordStatus
    comments: str | None = None
    decided_at: datetime | None = None
    created_at: datetime


class EscalationRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    instance_id: UUID
    from_level: int
    to_level: int
    reason: str
    escalation_type: EscalationType
    escalated_by: UUID | None = None
    escalated_at: datetime


class DelegationRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    instance_id: UUID
    level: int
    from_user_id: UUID
    to_user_id: UUID
    reason: str | None = None
    delegated_at: datetime


class ApprovalInstanceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    document_id: UUID
    workflow_id: UUID
    current_level: int
    status: ApprovalInstanceStatus
    urgency: ApprovalUrgency
    submitted_by: UUID
    comments: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ApprovalInstanceDetail(ApprovalInstanceRead):
    approval_records: list[ApprovalRecordRead] = Field(default_factory=list)
    escalation_records: list[EscalationRecordRead] = Field(default_factory=list)
    delegation_records: list[DelegationRecordRead] = Field(default_factory=list)


class PendingApprovalRead(ApprovalRecordRead):
    document_id: UUID
    workflow_id: UUID
    urgency: ApprovalUrgency
    started_at: datetime


class ApprovalNotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    instance_id: UUID
    notification_type: NotificationType
    recipient_user_id: UUID
    channel: NotificationChannel
    template: str
    data: dict[str, Any]
    status: NotificationStatus
    scheduled_at: datetime
    sent_at: datetime | None = None
    error_message: str | None = None
    retry_count: int
    created_at: datetime


class ApprovalMetrics(BaseModel):
    total_instances: int
    by_status: dict[str, int]
    average_completion_hours: float | None = None
    rejection_rate: float
    escalation_rate: float
