from fastapi import HTTPException


class ApprovalError(HTTPException):
    status_code = 400
    code = "approval_error"

    def __init__(self, message: str, details=None):
        self.message = message
        self.details = details
        super().__init__(
            status_code=self.status_code,
            detail={"code": self.code, "message": message, "details": details},
        )


class ApprovalNotFound(ApprovalError):
    status_code = 404
    code = "not_found"


class InvalidApprovalState(ApprovalError):
    status_code = 409
    code = "invalid_state"


class WorkflowValidationError(ApprovalError):
    status_code = 422
    code = "workflow_validation_error"


class NoWorkflowConfigured(ApprovalError):
    status_code = 422
    code = "no_workflow_configured"


class NoPendingApproval(ApprovalError):
    status_code = 409
    code = "no_pending_approval"
