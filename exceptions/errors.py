"""
Custom exception classes for the application.

Synchronous errors (validation, auth) are raised to the caller and rendered
by the routes. Pipeline errors (lookup, batch, undo, abort) are raised and
handled inside the background loops and surface through session/entry status.
"""

from typing import Optional, Any
from datetime import datetime


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "SESSION_NOT_FOUND")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.utcnow().isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ExternalServiceError(AppError):
    """External service failure (503)."""

    def __init__(
        self,
        service: str,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code or f"{service.upper()}_ERROR",
            message=message,
            status_code=503,
            details={"service": service, **(details or {})}
        )


# ===================
# AUTH ERRORS
# ===================

class AuthError(AppError):
    """Caller failed the security gate."""
    pass


class UnauthenticatedError(AuthError):
    """Missing or wrong secret token (401)."""

    def __init__(self):
        super().__init__(
            code="UNAUTHENTICATED",
            message="Invalid or missing token",
            status_code=401
        )


class ForbiddenDomainError(AuthError):
    """Domain not in the allow-list (403)."""

    def __init__(self, domain: Optional[str]):
        super().__init__(
            code="DOMAIN_FORBIDDEN",
            message="Domain not authorized",
            status_code=403,
            details={"domain": domain}
        )


class SecurityNotConfiguredError(AuthError):
    """Server has no secret token configured (500)."""

    def __init__(self):
        super().__init__(
            code="SECURITY_NOT_CONFIGURED",
            message="APP_SECRET_TOKEN not configured",
            status_code=500
        )


# ===================
# UPLOAD ERRORS
# ===================

class FileParseError(ValidationError):
    """Uploaded file could not be read as a table."""

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="FILE_PARSE_ERROR",
            message=message,
            details=details
        )


class UnknownKeyColumnsError(ValidationError):
    """Requested key columns are not headers of the uploaded file."""

    def __init__(self, missing: list[str], available: list[str]):
        super().__init__(
            code="UNKNOWN_KEY_COLUMNS",
            message=f"Key columns not found: {', '.join(missing)}",
            details={"missing": missing, "available_columns": available}
        )


# ===================
# SESSION ERRORS
# ===================

class SessionNotFoundError(NotFoundError):
    """Upload session not found."""

    def __init__(self, session_id: str):
        super().__init__(
            resource="Session",
            identifier=session_id,
            code="SESSION_NOT_FOUND"
        )


class InvalidStatusTransitionError(ValidationError):
    """Invalid session status transition."""

    def __init__(self, current_status: str, new_status: str):
        super().__init__(
            code="INVALID_STATUS_TRANSITION",
            message=f"Cannot transition from {current_status} to {new_status}",
            details={
                "current_status": current_status,
                "new_status": new_status,
                "reason": "A failed or finished session cannot be restarted; start a new session"
            }
        )


class ReportNotAvailableError(NotFoundError):
    """Session has no entries for the requested report kind."""

    def __init__(self, session_id: str, report_kind: str):
        super().__init__(
            resource="Report",
            identifier=session_id,
            code="REPORT_NOT_AVAILABLE"
        )
        self.message = f"No {report_kind} records available for download"
        self.details["report_kind"] = report_kind


# ===================
# CRM ERRORS
# ===================

class TransportError(ExternalServiceError):
    """CRM endpoint unreachable or returned a non-success HTTP status."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            service="bitrix",
            message=message,
            code="BITRIX_TRANSPORT_ERROR",
            details=details
        )


class ApiError(ExternalServiceError):
    """CRM answered, but the body signals an application-level error."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            service="bitrix",
            message=message,
            code="BITRIX_API_ERROR",
            details=details
        )


class CrmNotConfiguredError(ExternalServiceError):
    """No webhook URL configured."""

    def __init__(self):
        super().__init__(
            service="bitrix",
            message="BITRIX_WEBHOOK_URL not configured",
            code="BITRIX_NOT_CONFIGURED"
        )


# ===================
# PIPELINE ERRORS
# ===================

class PipelineError(AppError):
    """Base for errors raised inside background pipeline loops."""

    def __init__(self, code: str, message: str, details: Optional[dict] = None):
        super().__init__(code=code, message=message, status_code=500, details=details)


class RecordLookupError(PipelineError):
    """One key-column search failed; the matcher moves to the next key column."""

    def __init__(self, key_column: str, value: str, cause: Exception):
        super().__init__(
            code="RECORD_LOOKUP_FAILED",
            message=f"Search on {key_column} failed: {cause}",
            details={"key_column": key_column, "value": value}
        )


class PipelineAbortError(PipelineError):
    """Unexpected failure that terminates a matching or execution pass."""

    def __init__(self, session_id: str, stage: str, cause: Exception):
        super().__init__(
            code="PIPELINE_ABORTED",
            message=f"{stage} aborted: {cause}",
            details={"session_id": session_id, "stage": stage}
        )


class PipelineCancelledError(PipelineError):
    """Cancellation token was set between rows or batches."""

    def __init__(self, session_id: str):
        super().__init__(
            code="PIPELINE_CANCELLED",
            message="cancelled",
            details={"session_id": session_id}
        )


class BatchError(PipelineError):
    """A bulk call for one entity kind within a batch failed."""

    def __init__(self, batch_number: int, entity_kind: str, cause: Exception):
        super().__init__(
            code="BATCH_FAILED",
            message=str(cause),
            details={"batch_number": batch_number, "entity_kind": entity_kind}
        )


class UndoError(PipelineError):
    """Reverting one entry failed."""

    def __init__(self, change_id: str, cause: Exception):
        super().__init__(
            code="UNDO_FAILED",
            message=str(cause),
            details={"change_id": change_id}
        )
