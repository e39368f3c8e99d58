"""
Pydantic models for validation and serialization.
"""

from models.base import (
    BaseSchema,
    RecordSchema,
    PaginatedResponse
)
from models.crm import (
    TargetType,
    EntityKind,
    CrmEntity,
    MatchType,
    MatchOutcome,
    kinds_for_target,
)
from models.session import (
    SessionStatus,
    is_valid_session_status_transition,
    UploadSession,
    row_columns,
    ProcessRequest,
    SecurityCheckRequest,
    UploadResponse,
    ProcessingStatus,
    ExecutionProgress,
    ExecutionResults,
    TaskAcceptedResponse,
)
from models.change import (
    ChangeAction,
    ChangeStatus,
    PendingChange,
    ChangeEdit,
    PreviewUpdateRequest,
    ExecuteRequest,
    PreviewFilter,
)
from models.batch import (
    BatchStatus,
    ExecutionBatch,
)

__all__ = [
    # Base
    "BaseSchema",
    "RecordSchema",
    "PaginatedResponse",
    # CRM
    "TargetType",
    "EntityKind",
    "CrmEntity",
    "MatchType",
    "MatchOutcome",
    "kinds_for_target",
    # Session
    "SessionStatus",
    "is_valid_session_status_transition",
    "UploadSession",
    "row_columns",
    "ProcessRequest",
    "SecurityCheckRequest",
    "UploadResponse",
    "ProcessingStatus",
    "ExecutionProgress",
    "ExecutionResults",
    "TaskAcceptedResponse",
    # Changes
    "ChangeAction",
    "ChangeStatus",
    "PendingChange",
    "ChangeEdit",
    "PreviewUpdateRequest",
    "ExecuteRequest",
    "PreviewFilter",
    # Batches
    "BatchStatus",
    "ExecutionBatch",
]
