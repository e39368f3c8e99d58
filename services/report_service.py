"""
Result reports: outcome summaries and CSV downloads per outcome kind.
"""

from enum import Enum
from io import StringIO
from typing import Optional
import structlog

import pandas as pd

from exceptions import ReportNotAvailableError
from models.change import ChangeStatus, PendingChange
from models.crm import MatchType
from models.session import ExecutionResults
from services.session_store import SessionStore, get_session_store

logger = structlog.get_logger(__name__)

REPORT_COLUMNS = [
    "row_index",
    "search_key",
    "entity_id",
    "entity_kind",
    "field",
    "current_value",
    "new_value",
    "status",
    "error_message",
]


class ReportKind(str, Enum):
    NOT_FOUND = "not-found"
    DUPLICATES = "duplicates"
    ERRORS = "errors"


def _selects(kind: ReportKind, change: PendingChange) -> bool:
    if kind == ReportKind.NOT_FOUND:
        return change.match_type == MatchType.NOT_FOUND
    if kind == ReportKind.DUPLICATES:
        return change.match_type == MatchType.DUPLICATE
    return change.status in (ChangeStatus.ERROR, ChangeStatus.UNDO_FAILED)


class ReportService:
    def __init__(self, store: SessionStore):
        self.store = store

    def records_for(self, session_id: str, kind: ReportKind) -> list[PendingChange]:
        return [c for c in self.store.list_changes(session_id) if _selects(kind, c)]

    def get_results(self, session_id: str) -> ExecutionResults:
        """Outcome totals with the entries behind each total."""
        session = self.store.get_session(session_id)
        changes = self.store.list_changes(session_id)

        not_found = [c for c in changes if _selects(ReportKind.NOT_FOUND, c)]
        duplicates = [c for c in changes if _selects(ReportKind.DUPLICATES, c)]
        errors = [c for c in changes if _selects(ReportKind.ERRORS, c)]

        return ExecutionResults(
            session_id=session_id,
            status=session.status,
            total_updated=sum(1 for c in changes if c.status == ChangeStatus.COMPLETED),
            total_not_found=len({c.row_index for c in not_found}),
            total_duplicates=len({c.row_index for c in duplicates}),
            total_errors=len(errors),
            not_found_records=[c.report_row() for c in not_found],
            duplicate_records=[c.report_row() for c in duplicates],
            error_records=[c.report_row() for c in errors],
        )

    def export_csv(self, session_id: str, kind: ReportKind) -> tuple[str, str]:
        """
        Render one report kind as CSV.

        Returns:
            (filename, csv text)

        Raises:
            SessionNotFoundError: Unknown session
            ReportNotAvailableError: Session has no entries of that kind
        """
        records = self.records_for(session_id, kind)
        if not records:
            raise ReportNotAvailableError(session_id, kind.value)

        df = pd.DataFrame([r.report_row() for r in records], columns=["id"] + REPORT_COLUMNS)
        buffer = StringIO()
        df[REPORT_COLUMNS].to_csv(buffer, index=False)

        logger.info("report_exported", session_id=session_id, kind=kind.value, rows=len(records))
        return f"{kind.value}-{session_id}.csv", buffer.getvalue()


_service: Optional[ReportService] = None


def get_report_service() -> ReportService:
    global _service
    if _service is None:
        _service = ReportService(get_session_store())
    return _service
