"""
Structured error taxonomy for the platform.

Every domain failure is raised as an AppError subclass carrying an HTTP
status and a machine-readable code. register_error_handlers() maps them to
JSON responses so routes never build error bodies by hand.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base exception for all platform errors."""

    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    http_status = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class NotFoundError(AppError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PermissionDeniedError(AppError):
    """Caller is identified but may not perform the operation."""
    http_status = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class TenantSuspendedError(PermissionDeniedError):
    code = "tenant_suspended"


class TenantCancelledError(PermissionDeniedError):
    code = "tenant_cancelled"


class TenantExpiredError(PermissionDeniedError):
    code = "trial_expired"


class TenantIsolationError(PermissionDeniedError):
    """Resource belongs to a different tenant than the caller's."""
    code = "tenant_isolation"


class FeatureDisabledError(PermissionDeniedError):
    """Module is not part of the tenant's entitlements."""
    code = "module_not_enabled"

    def __init__(self, module_code: str, tenant_id: Optional[str] = None):
        self.module_code = module_code
        self.tenant_id = tenant_id
        super().__init__(
            f"Module '{module_code}' is not enabled for this organization",
            details={"module": module_code},
        )


class PaymentRequiredError(AppError):
    http_status = status.HTTP_402_PAYMENT_REQUIRED
    code = "payment_required"


class ConflictError(AppError):
    http_status = status.HTTP_409_CONFLICT
    code = "conflict"


class InvalidTransitionError(ConflictError):
    """Requested lifecycle transition is not allowed from the current state."""
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            details={"current_status": current, "target_status": target},
        )


class ExternalProtocolError(AppError):
    """An upstream provider failed or answered with an unexpected status."""
    http_status = status.HTTP_502_BAD_GATEWAY
    code = "external_protocol_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict] = None,
    ):
        self.status_code = status_code
        self.response = response
        details = {"upstream_status": status_code} if status_code is not None else None
        super().__init__(message, details=details)


class ServiceUnavailableError(AppError):
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "service_unavailable"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError as a JSON response."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "Request failed",
        extra={
            "path": request.url.path,
            "error_code": exc.code,
            "http_status": exc.http_status,
        },
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def raise_http_for(error: AppError) -> None:
    """Re-raise an AppError as an HTTPException with the same status and body."""
    raise HTTPException(status_code=error.http_status, detail=error.to_dict()) from error


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
