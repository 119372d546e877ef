import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ApprovalInstanceStatus(enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    approved = "approved"
    rejected = "rejected"
    escalated = "escalated"
    cancelled = "cancelled"


TERMINAL_INSTANCE_STATUSES = frozenset(
    {
        ApprovalInstanceStatus.approved,
        ApprovalInstanceStatus.rejected,
        ApprovalInstanceStatus.cancelled,
    }
)


class ApprovalRecordStatus(enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    delegated = "delegated"
    escalated = "escalated"


class ApprovalUrgency(enum.Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class EscalationType(enum.Enum):
    timeout = "timeout"
    rejection = "rejection"
    manual = "manual"


class NotificationType(enum.Enum):
    request = "request"
    reminder = "reminder"
    approved = "approved"
    rejected = "rejected"
    escalated = "escalated"
    delegated = "delegated"
    completed = "completed"


class NotificationChannel(enum.Enum):
    email = "email"
    sms = "sms"
    in_app = "in_app"
    webhook = "webhook"


class NotificationStatus(enum.Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


class ApprovalWorkflow(Base):
    __tablename__ = "approval_workflows"
    __table_args__ = (
        UniqueConstraint("name", name="uq_approval_workflows_name"),
        Index("ix_approval_workflows_is_active", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    document_type_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    levels: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    escalation_rules: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    delegation_rules: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    notification_policies: Mapped[list] = mapped_column(
        JSON, nullable=False, default=list
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    instances = relationship("ApprovalInstance", back_populates="workflow")

    def get_level(self, level_number: int) -> dict | None:
        for level in self.levels or []:
            if level.get("level") == level_number:
                return level
        return None

    @property
    def max_level(self) -> int:
        return max((lvl.get("level", 0) for lvl in self.levels or []), default=0)


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------


class ApprovalInstance(Base):
    __tablename__ = "approval_instances"
    __table_args__ = (
        Index("ix_approval_instances_document_id", "document_id"),
        Index("ix_approval_instances_workflow_id", "workflow_id"),
        Index("ix_approval_instances_status_level", "status", "current_level"),
        Index("ix_approval_instances_submitted_by", "submitted_by"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("documents.id"), nullable=False
    )
    workflow_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_workflows.id"), nullable=False
    )
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[ApprovalInstanceStatus] = mapped_column(
        Enum(ApprovalInstanceStatus), default=ApprovalInstanceStatus.pending
    )
    urgency: Mapped[ApprovalUrgency] = mapped_column(
        Enum(ApprovalUrgency), default=ApprovalUrgency.normal
    )
    submitted_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    comments: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    workflow = relationship("ApprovalWorkflow", back_populates="instances")
    document = relationship("Document")
    approval_records = relationship(
        "ApprovalRecord",
        back_populates="instance",
        order_by="ApprovalRecord.created_at",
    )
    escalation_records = relationship(
        "EscalationRecord",
        back_populates="instance",
        order_by="EscalationRecord.escalated_at",
    )
    delegation_records = relationship(
        "DelegationRecord",
        back_populates="instance",
        order_by="DelegationRecord.delegated_at",
    )
    notifications = relationship("ApprovalNotification", back_populates="instance")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INSTANCE_STATUSES


# ---------------------------------------------------------------------------
# Approval records
# ---------------------------------------------------------------------------


class ApprovalRecord(Base):
    __tablename__ = "approval_records"
    __table_args__ = (
        UniqueConstraint(
            "instance_id",
            "level",
            "approver_user_id",
            name="uq_approval_records_instance_level_approver",
        ),
        Index("ix_approval_records_instance_id", "instance_id"),
        Index("ix_approval_records_approver_status", "approver_user_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_instances.id"), nullable=False
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    original_approver_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True)
    )
    status: Mapped[ApprovalRecordStatus] = mapped_column(
        Enum(ApprovalRecordStatus), default=ApprovalRecordStatus.pending
    )
    comments: Mapped[str | None] = mapped_column(Text)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reminders_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    instance = relationship("ApprovalInstance", back_populates="approval_records")


# ---------------------------------------------------------------------------
# Audit trail (append-only)
# ---------------------------------------------------------------------------


class EscalationRecord(Base):
    __tablename__ = "escalation_records"
    __table_args__ = (Index("ix_escalation_records_instance_id", "instance_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_instances.id"), nullable=False
    )
    from_level: Mapped[int] = mapped_column(Integer, nullable=False)
    to_level: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    escalation_type: Mapped[EscalationType] = mapped_column(
        Enum(EscalationType), nullable=False
    )
    escalated_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    escalated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    instance = relationship("ApprovalInstance", back_populates="escalation_records")


class DelegationRecord(Base):
    __tablename__ = "delegation_records"
    __table_args__ = (
        Index("ix_delegation_records_instance_id", "instance_id"),
        Index("ix_delegation_records_to_user_id", "to_user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_instances.id"), nullable=False
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    from_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    to_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    delegated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    instance = relationship("ApprovalInstance", back_populates="delegation_records")


# ---------------------------------------------------------------------------
# Notification queue
# ---------------------------------------------------------------------------


class ApprovalNotification(Base):
    __tablename__ = "approval_notifications"
    __table_args__ = (
        Index("ix_approval_notifications_instance_id", "instance_id"),
        Index("ix_approval_notifications_recipient", "recipient_user_id"),
        Index("ix_approval_notifications_status_scheduled", "status", "scheduled_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_instances.id"), nullable=False
    )
    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType), nullable=False
    )
    recipient_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    channel: Mapped[NotificationChannel] = mapped_column(
        Enum(NotificationChannel), nullable=False
    )
    template: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus), default=NotificationStatus.pending
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    instance = relationship("ApprovalInstance", back_populates="notifications")
