"""
Execution batch records.
"""

from pydantic import Field
from typing import Any, Optional
from enum import Enum
from datetime import datetime
import uuid

from models.base import RecordSchema


class BatchStatus(str, Enum):
    """Batch status values."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionBatch(RecordSchema):
    """A fixed-size, order-preserving slice of changes sent together."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    batch_number: int = Field(..., ge=1)
    change_ids: list[str] = Field(default_factory=list)
    status: BatchStatus = BatchStatus.PENDING
    processed_at: Optional[datetime] = None
    errors: list[dict[str, Any]] = Field(default_factory=list)
