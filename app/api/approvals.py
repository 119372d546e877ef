from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.schemas.approval import (
    ApprovalDecisionRequest,
    ApprovalInstanceDetail,
    ApprovalInstanceRead,
    ApprovalMetrics,
    ApprovalNotificationRead,
    ApprovalWorkflowCreate,
    ApprovalWorkflowRead,
    ApprovalWorkflowUpdate,
    CancelApprovalRequest,
    DelegateApprovalRequest,
    EscalateApprovalRequest,
    PendingApprovalRead,
    SubmitForApprovalRequest,
)
from app.schemas.common import ListResponse
from app.services import approval_instance as instance_service
from app.services import approval_notification as notification_service
from app.services import approval_workflow as workflow_service

router = APIRouter(prefix="/approvals", tags=["approvals"])


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ------------------------------------------------------------------
# Workflows
# ------------------------------------------------------------------


@router.post(
    "/workflows",
    response_model=ApprovalWorkflowRead,
    status_code=status.HTTP_201_CREATED,
)
def create_workflow(payload: ApprovalWorkflowCreate, db: Session = Depends(get_db)):
    return workflow_service.approval_workflows.create(db, payload)


@router.get("/workflows/{workflow_id}", response_model=ApprovalWorkflowRead)
def get_workflow(workflow_id: str, db: Session = Depends(get_db)):
    return workflow_service.approval_workflows.get(db, workflow_id)


@router.get("/workflows", response_model=ListResponse[ApprovalWorkflowRead])
def list_workflows(
    document_type_id: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return workflow_service.approval_workflows.list_response(
        db, document_type_id, is_active, order_by, order_dir, limit, offset
    )


@router.patch("/workflows/{workflow_id}", response_model=ApprovalWorkflowRead)
def update_workflow(
    workflow_id: str,
    payload: ApprovalWorkflowUpdate,
    db: Session = Depends(get_db),
):
    return workflow_service.approval_workflows.update(db, workflow_id, payload)


@router.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workflow(workflow_id: str, db: Session = Depends(get_db)):
    workflow_service.approval_workflows.delete(db, workflow_id)


# ------------------------------------------------------------------
# Submission and decisions
# ------------------------------------------------------------------


@router.post(
    "/documents/{document_id}/submit",
    response_model=ApprovalInstanceRead,
    status_code=status.HTTP_201_CREATED,
)
def submit_for_approval(
    document_id: str,
    payload: SubmitForApprovalRequest,
    db: Session = Depends(get_db),
):
    return instance_service.approval_instances.submit(db, document_id, payload)


@router.post("/instances/{instance_id}/decision", response_model=ApprovalInstanceRead)
def process_approval(
    instance_id: str,
    payload: ApprovalDecisionRequest,
    db: Session = Depends(get_db),
):
    return instance_service.approval_instances.process(db, instance_id, payload)


@router.post("/instances/{instance_id}/delegate", response_model=ApprovalInstanceRead)
def delegate_approval(
    instance_id: str,
    payload: DelegateApprovalRequest,
    db: Session = Depends(get_db),
):
    return instance_service.approval_instances.delegate(db, instance_id, payload)


@router.post("/instances/{instance_id}/escalate", response_model=ApprovalInstanceRead)
def escalate_approval(
    instance_id: str,
    payload: EscalateApprovalRequest,
    db: Session = Depends(get_db),
):
    return instance_service.approval_instances.escalate(db, instance_id, payload)


@router.post("/instances/{instance_id}/cancel", response_model=ApprovalInstanceRead)
def cancel_approval(
    instance_id: str,
    payload: CancelApprovalRequest,
    db: Session = Depends(get_db),
):
    return instance_service.approval_instances.cancel(db, instance_id, payload)


# ------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------


@router.get("/instances/{instance_id}", response_model=ApprovalInstanceDetail)
def get_instance(instance_id: str, db: Session = Depends(get_db)):
    return instance_service.approval_instances.get(db, instance_id)


@router.get("/instances", response_model=ListResponse[ApprovalInstanceRead])
def list_instances(
    document_id: str | None = None,
    workflow_id: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    submitted_by: str | None = None,
    order_by: str = Query(default="started_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return instance_service.approval_instances.list_response(
        db,
        document_id,
        workflow_id,
        status_filter,
        submitted_by,
        order_by,
        order_dir,
        limit,
        offset,
    )


@router.get(
    "/instances/{instance_id}/notifications",
    response_model=list[ApprovalNotificationRead],
)
def list_instance_notifications(instance_id: str, db: Session = Depends(get_db)):
    instance_service.approval_instances.get(db, instance_id)
    return notification_service.approval_notifications.list_for_instance(
        db, instance_id
    )


@router.get("/pending", response_model=list[PendingApprovalRead])
def get_pending_approvals(approver_id: str, db: Session = Depends(get_db)):
    return instance_service.approval_instances.pending_for(db, approver_id)


@router.get(
    "/documents/{document_id}/history",
    response_model=list[ApprovalInstanceDetail],
)
def get_approval_history(document_id: str, db: Session = Depends(get_db)):
    return instance_service.approval_instances.history(db, document_id)


@router.get("/metrics", response_model=ApprovalMetrics)
def get_approval_metrics(db: Session = Depends(get_db)):
    return instance_service.approval_instances.metrics(db)
