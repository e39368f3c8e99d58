"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ExternalServiceError,

    # Auth
    AuthError,
    UnauthenticatedError,
    ForbiddenDomainError,
    SecurityNotConfiguredError,

    # Upload
    FileParseError,
    UnknownKeyColumnsError,

    # Sessions
    SessionNotFoundError,
    InvalidStatusTransitionError,
    ReportNotAvailableError,

    # CRM
    TransportError,
    ApiError,
    CrmNotConfiguredError,

    # Pipeline
    PipelineError,
    RecordLookupError,
    PipelineAbortError,
    PipelineCancelledError,
    BatchError,
    UndoError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ExternalServiceError",

    # Auth
    "AuthError",
    "UnauthenticatedError",
    "ForbiddenDomainError",
    "SecurityNotConfiguredError",

    # Upload
    "FileParseError",
    "UnknownKeyColumnsError",

    # Sessions
    "SessionNotFoundError",
    "InvalidStatusTransitionError",
    "ReportNotAvailableError",

    # CRM
    "TransportError",
    "ApiError",
    "CrmNotConfiguredError",

    # Pipeline
    "PipelineError",
    "RecordLookupError",
    "PipelineAbortError",
    "PipelineCancelledError",
    "BatchError",
    "UndoError",
]
