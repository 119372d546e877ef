from app.models.person import Person, PersonRole, Role  # noqa: F401
from app.models.document import Document, DocumentStatus  # noqa: F401
from app.models.inbox import InboxNotification  # noqa: F401
from app.models.approval import (  # noqa: F401
    ApprovalInstance,
    ApprovalInstanceStatus,
    ApprovalNotification,
    ApprovalRecord,
    ApprovalRecordStatus,
    ApprovalUrgency,
    ApprovalWorkflow,
    DelegationRecord,
    EscalationRecord,
    EscalationType,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
)
