"""
Pending change entries: one proposed field update per (row, non-key column).
"""

from pydantic import Field, model_validator
from typing import Optional
from enum import Enum
import uuid

from models.base import BaseSchema, RecordSchema
from models.crm import EntityKind, MatchType


class ChangeAction(str, Enum):
    """User-editable action flag."""
    UPDATE = "update"
    IGNORE = "ignore"


class ChangeStatus(str, Enum):
    """Entry status values."""
    PENDING = "pending"
    FOUND = "found"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"
    COMPLETED = "completed"
    ERROR = "error"
    UNDO_FAILED = "undo_failed"


class PendingChange(RecordSchema):
    """
    One proposed field update.

    match_type is fixed when the entry is created and keeps the row
    classification after status moves on to completed/error.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    row_index: int = Field(..., ge=0)
    search_key: str
    entity_id: Optional[str] = None
    entity_kind: Optional[EntityKind] = None
    field: str
    current_value: Optional[str] = None
    new_value: str = ""
    action: ChangeAction = ChangeAction.UPDATE
    status: ChangeStatus = ChangeStatus.PENDING
    match_type: MatchType = MatchType.NOT_FOUND
    error_message: Optional[str] = None
    selected: bool = True

    @property
    def is_executable(self) -> bool:
        """Default execution selection: selected, marked update, matched."""
        return (
            self.selected
            and self.action == ChangeAction.UPDATE
            and self.entity_id is not None
        )

    def report_row(self) -> dict:
        """Flat dict used by results and CSV reports."""
        return {
            "id": self.id,
            "row_index": self.row_index,
            "search_key": self.search_key,
            "entity_id": self.entity_id or "",
            "entity_kind": self.entity_kind.value if self.entity_kind else "",
            "field": self.field,
            "current_value": self.current_value if self.current_value is not None else "",
            "new_value": self.new_value,
            "status": self.status.value,
            "error_message": self.error_message or "",
        }


# ===================
# REVIEW EDITS
# ===================

class ChangeEdit(RecordSchema):
    """One user edit from the review screen; new_value is sent to the CRM as typed."""
    id: str
    action: Optional[ChangeAction] = None
    new_value: Optional[str] = None
    selected: Optional[bool] = None

    @model_validator(mode="after")
    def require_some_change(self):
        if self.action is None and self.new_value is None and self.selected is None:
            raise ValueError("Edit must set action, new_value or selected")
        return self

    def as_updates(self) -> dict:
        return self.model_dump(exclude={"id"}, exclude_none=True)


class PreviewUpdateRequest(BaseSchema):
    """Batch of review edits."""
    updates: list[ChangeEdit] = Field(..., min_length=1)


class ExecuteRequest(BaseSchema):
    """Start execution; without change_ids the default selection applies."""
    change_ids: Optional[list[str]] = None


class PreviewFilter(str, Enum):
    """Preview list filter."""
    ALL = "all"
    UPDATE = "update"
    IGNORE = "ignore"
    NOT_FOUND = "not_found"
    DUPLICATES = "duplicates"
