"""approval workflow engine

Revision ID: f6a7b8c9d0e1
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "f6a7b8c9d0e1"
down_revision = None
branch_labels = None
depends_on = None

_ENUMS = {
    "documentstatus": ("draft", "submitted", "approved", "rejected", "archived"),
    "approvalinstancestatus": (
        "pending",
        "in_progress",
        "approved",
        "rejected",
        "escalated",
        "cancelled",
    ),
    "approvalurgency": ("low", "normal", "high", "urgent"),
    "approvalrecordstatus": ("pending", "approved", "rejected", "delegated", "escalated"),
    "escalationtype": ("timeout", "rejection", "manual"),
    "notificationtype": (
        "request",
        "reminder",
        "approved",
        "rejected",
        "escalated",
        "delegated",
        "completed",
    ),
    "notificationchannel": ("email", "sms", "in_app", "webhook"),
    "notificationstatus": ("pending", "sent", "failed"),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*_ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in _ENUMS.items():
        sa.Enum(*values, name=name).create(bind, checkfirst=True)

    # --- Directory ---
    op.create_table(
        "people",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("first_name", sa.String(length=80), nullable=False),
        sa.Column("last_name", sa.String(length=80), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_people_email"),
    )
    op.create_table(
        "roles",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_roles_name"),
    )
    op.create_table(
        "person_roles",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("person_id", sa.UUID(), nullable=False),
        sa.Column("role_id", sa.UUID(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["person_id"], ["people.id"]),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("person_id", "role_id", name="uq_person_roles_person_role"),
    )
    op.create_index("ix_person_roles_role_id", "person_roles", ["role_id"])

    # --- Documents ---
    op.create_table(
        "documents",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("document_type_id", sa.UUID(), nullable=False),
        sa.Column("status", _enum("documentstatus"), nullable=False),
        sa.Column("content", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.UUID(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["created_by"], ["people.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_documents_document_type_id", "documents", ["document_type_id"])
    op.create_index("ix_documents_status", "documents", ["status"])

    op.create_table(
        "inbox_notifications",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("person_id", sa.UUID(), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=80), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("action_url", sa.String(length=2048), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["person_id"], ["people.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_inbox_notifications_person_read",
        "inbox_notifications",
        ["person_id", "is_read"],
    )
    op.create_index(
        "ix_inbox_notifications_entity",
        "inbox_notifications",
        ["entity_type", "entity_id"],
    )

    # --- Approval workflows ---
    op.create_table(
        "approval_workflows",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("document_type_ids", sa.JSON(), nullable=False),
        sa.Column("levels", sa.JSON(), nullable=False),
        sa.Column("escalation_rules", sa.JSON(), nullable=False),
        sa.Column("delegation_rules", sa.JSON(), nullable=False),
        sa.Column("notification_policies", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.UUID(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_approval_workflows_name"),
    )
    op.create_index(
        "ix_approval_workflows_is_active", "approval_workflows", ["is_active"]
    )

    op.create_table(
        "approval_instances",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("document_id", sa.UUID(), nullable=False),
        sa.Column("workflow_id", sa.UUID(), nullable=False),
        sa.Column("current_level", sa.Integer(), nullable=False),
        sa.Column("status", _enum("approvalinstancestatus"), nullable=False),
        sa.Column("urgency", _enum("approvalurgency"), nullable=False),
        sa.Column("submitted_by", sa.UUID(), nullable=False),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["document_id"], ["documents.id"]),
        sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflows.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_approval_instances_document_id", "approval_instances", ["document_id"]
    )
    op.create_index(
        "ix_approval_instances_workflow_id", "approval_instances", ["workflow_id"]
    )
    op.create_index(
        "ix_approval_instances_status_level",
        "approval_instances",
        ["status", "current_level"],
    )
    op.create_index(
        "ix_approval_instances_submitted_by", "approval_instances", ["submitted_by"]
    )

    op.create_table(
        "approval_records",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("instance_id", sa.UUID(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("approver_user_id", sa.UUID(), nullable=False),
        sa.Column("original_approver_user_id", sa.UUID(), nullable=True),
        sa.Column("status", _enum("approvalrecordstatus"), nullable=False),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminders_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instance_id"], ["approval_instances.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "instance_id",
            "level",
            "approver_user_id",
            name="uq_approval_records_instance_level_approver",
        ),
    )
    op.create_index(
        "ix_approval_records_instance_id", "approval_records", ["instance_id"]
    )
    op.create_index(
        "ix_approval_records_approver_status",
        "approval_records",
        ["approver_user_id", "status"],
    )

    op.create_table(
        "escalation_records",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("instance_id", sa.UUID(), nullable=False),
        sa.Column("from_level", sa.Integer(), nullable=False),
        sa.Column("to_level", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("escalation_type", _enum("escalationtype"), nullable=False),
        sa.Column("escalated_by", sa.UUID(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instance_id"], ["approval_instances.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_escalation_records_instance_id", "escalation_records", ["instance_id"]
    )

    op.create_table(
        "delegation_records",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("instance_id", sa.UUID(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("from_user_id", sa.UUID(), nullable=False),
        sa.Column("to_user_id", sa.UUID(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("delegated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instance_id"], ["approval_instances.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_delegation_records_instance_id", "delegation_records", ["instance_id"]
    )
    op.create_index(
        "ix_delegation_records_to_user_id", "delegation_records", ["to_user_id"]
    )

    op.create_table(
        "approval_notifications",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("instance_id", sa.UUID(), nullable=False),
        sa.Column("notification_type", _enum("notificationtype"), nullable=False),
        sa.Column("recipient_user_id", sa.UUID(), nullable=False),
        sa.Column("channel", _enum("notificationchannel"), nullable=False),
        sa.Column("template", sa.String(length=100), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("status", _enum("notificationstatus"), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instance_id"], ["approval_instances.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_approval_notifications_instance_id",
        "approval_notifications",
        ["instance_id"],
    )
    op.create_index(
        "ix_approval_notifications_recipient",
        "approval_notifications",
        ["recipient_user_id"],
    )
    op.create_index(
        "ix_approval_notifications_status_scheduled",
        "approval_notifications",
        ["status", "scheduled_at"],
    )


def downgrade() -> None:
    for table in (
        "approval_notifications",
        "delegation_records",
        "escalation_records",
        "approval_records",
        "approval_instances",
        "approval_workflows",
        "inbox_notifications",
        "documents",
        "person_roles",
        "roles",
        "people",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for name in reversed(list(_ENUMS)):
        sa.Enum(name=name).drop(bind, checkfirst=True)
