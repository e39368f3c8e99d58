"""
Upload session schemas and the session status state machine.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Any, Optional
from enum import Enum
from datetime import datetime
import uuid

from models.base import BaseSchema, RecordSchema
from models.crm import TargetType


class SessionStatus(str, Enum):
    """Session status values."""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PREVIEW = "preview"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"


# Allowed forward moves; COMPLETED and ERROR are terminal
STATUS_TRANSITIONS = {
    SessionStatus.UPLOADED: {SessionStatus.PROCESSING},
    SessionStatus.PROCESSING: {SessionStatus.PREVIEW, SessionStatus.ERROR},
    SessionStatus.PREVIEW: {SessionStatus.EXECUTING},
    SessionStatus.EXECUTING: {SessionStatus.COMPLETED, SessionStatus.ERROR},
    SessionStatus.COMPLETED: set(),
    SessionStatus.ERROR: set(),
}


def is_valid_session_status_transition(current: SessionStatus, new: SessionStatus) -> bool:
    """
    Check if session status transition is valid.

    Rules:
    - uploaded → processing → preview → executing → completed
    - processing and executing may fall into error
    - completed and error are terminal (no retry; start a new session)
    """
    return new in STATUS_TRANSITIONS[current]


# ===================
# STORED RECORD
# ===================

class UploadSession(RecordSchema):
    """
    One uploaded file and its pipeline progress.

    The raw rows live beside the session in the store and are never
    modified after creation; columns lists their headers.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    file_name: str
    file_size: int = Field(..., ge=0)
    total_rows: int = Field(..., ge=0)
    target_type: TargetType
    key_columns: list[str] = Field(..., min_length=1)
    columns: list[str] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.UPLOADED
    processed_rows: int = 0
    domain: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None


def row_columns(rows: list[dict[str, str]]) -> list[str]:
    """Headers of the given rows, in first-seen order."""
    seen: dict[str, None] = {}
    for row in rows:
        for key in row:
            seen.setdefault(key, None)
    return list(seen)


# ===================
# REQUEST SCHEMAS
# ===================

class ProcessRequest(BaseSchema):
    """Confirm target kind and key columns, then start matching."""
    target_type: TargetType
    key_columns: list[str] = Field(..., min_length=1)

    @field_validator("key_columns")
    @classmethod
    def strip_key_columns(cls, v: list[str]) -> list[str]:
        cleaned = [c.strip() for c in v if c and c.strip()]
        if not cleaned:
            raise ValueError("At least one key column is required")
        return cleaned


class SecurityCheckRequest(RecordSchema):
    """Body of the standalone security check; compared exactly like the gate does."""
    token: str
    domain: Optional[str] = None


# ===================
# RESPONSE SCHEMAS
# ===================

class UploadResponse(BaseModel):
    """Returned after a successful upload."""
    session_id: str
    file_name: str
    file_size: int
    total_rows: int
    target_type: TargetType
    key_columns: list[str]
    available_columns: list[str]
    status: SessionStatus


class ProcessingStatus(BaseModel):
    """Progress of the matching pass, polled by the client."""
    session_id: str
    status: SessionStatus
    progress: float
    processed_rows: int
    total_rows: int
    found: int
    not_found: int
    duplicates: int
    errors: int
    error_message: Optional[str] = None


class ExecutionProgress(BaseModel):
    """Progress of the execution pass."""
    session_id: str
    status: SessionStatus
    progress: float
    completed_batches: int
    total_batches: int
    current_batch: int
    processed: int
    remaining: int
    errors: int
    error_message: Optional[str] = None


class ExecutionResults(BaseModel):
    """Final outcome summary with the records behind each count."""
    session_id: str
    status: SessionStatus
    total_updated: int
    total_not_found: int
    total_duplicates: int
    total_errors: int
    not_found_records: list[dict[str, Any]] = Field(default_factory=list)
    duplicate_records: list[dict[str, Any]] = Field(default_factory=list)
    error_records: list[dict[str, Any]] = Field(default_factory=list)


class TaskAcceptedResponse(BaseModel):
    """A background task was queued."""
    message: str
    session_id: str
