import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from app.services.errors import ApprovalError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str, details=None):
    return JSONResponse(
        status_code=status_code,
        content={"code": code, "message": message, "details": details},
    )


def register_error_handlers(app) -> None:
    @app.exception_handler(ApprovalError)
    async def approval_error_handler(request: Request, exc: ApprovalError):
        logger.info(
            "%s %s rejected: %s (%s)",
            request.method,
            request.url.path,
            exc.code,
            exc.message,
        )
        return _error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict):
            return _error_response(
                exc.status_code,
                exc.detail.get("code", f"http_{exc.status_code}"),
                exc.detail.get("message", "Request failed"),
                exc.detail.get("details"),
            )
        if isinstance(exc.detail, str):
            return _error_response(exc.status_code, f"http_{exc.status_code}", exc.detail)
        return _error_response(
            exc.status_code, f"http_{exc.status_code}", "Request failed", exc.detail
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        # ctx may hold raw exception objects, which are not JSON serialisable.
        errors = [
            {k: str(v) if k == "ctx" else v for k, v in err.items()}
            for err in exc.errors()
        ]
        return _error_response(422, "validation_error", "Validation error", errors)

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        # Two writers raced on a unique approval record or workflow name.
        logger.warning(
            "Integrity conflict on %s %s: %s",
            request.method,
            request.url.path,
            exc.orig,
        )
        return _error_response(409, "conflict", "Conflicting concurrent update")

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(500, "internal_error", "Internal server error")
