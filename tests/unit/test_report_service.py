"""
Unit tests for ReportService.

Run: pytest tests/unit/test_report_service.py -v
"""

import csv
from io import StringIO

import pytest

from exceptions import ReportNotAvailableError, SessionNotFoundError
from models.change import ChangeAction, ChangeStatus, PendingChange
from models.crm import EntityKind, MatchType, TargetType
from models.session import UploadSession
from services.report_service import REPORT_COLUMNS, ReportKind


def seed(store) -> str:
    session = store.create_session(UploadSession(
        file_name="rows.csv",
        file_size=1,
        total_rows=4,
        target_type=TargetType.CONTACTS,
        key_columns=["EMAIL"],
        columns=["EMAIL", "NAME", "CITY"],
    ))

    def change(row_index, field, status, match_type, **extra):
        matched = match_type != MatchType.NOT_FOUND
        return PendingChange(
            session_id=session.id,
            row_index=row_index,
            search_key=f"EMAIL: {row_index}@x.com",
            entity_id=str(row_index) if matched else None,
            entity_kind=EntityKind.CONTACT if matched else None,
            field=field,
            current_value="old" if matched else None,
            new_value="new",
            action=ChangeAction.UPDATE if matched else ChangeAction.IGNORE,
            status=status,
            match_type=match_type,
            **extra,
        )

    store.add_changes(session.id, [
        change(0, "NAME", ChangeStatus.COMPLETED, MatchType.FOUND),
        change(0, "CITY", ChangeStatus.COMPLETED, MatchType.FOUND),
        change(1, "NAME", ChangeStatus.NOT_FOUND, MatchType.NOT_FOUND),
        change(1, "CITY", ChangeStatus.NOT_FOUND, MatchType.NOT_FOUND),
        change(2, "NAME", ChangeStatus.COMPLETED, MatchType.DUPLICATE),
        change(3, "NAME", ChangeStatus.ERROR, MatchType.FOUND, error_message="batch for contact failed"),
    ])
    return session.id


class TestGetResults:
    """Tests for ReportService.get_results()"""

    def test_totals(self, report_service, memory_store):
        """Should count updated entries and distinct not-found/duplicate rows."""
        session_id = seed(memory_store)

        results = report_service.get_results(session_id)

        assert results.total_updated == 3
        assert results.total_not_found == 1
        assert results.total_duplicates == 1
        assert results.total_errors == 1
        assert len(results.not_found_records) == 2
        assert results.error_records[0]["error_message"] == "batch for contact failed"

    def test_duplicate_kept_after_completion(self, report_service, memory_store):
        """Should still report a completed duplicate as a duplicate."""
        session_id = seed(memory_store)

        records = report_service.records_for(session_id, ReportKind.DUPLICATES)

        assert [r.row_index for r in records] == [2]

    def test_undo_failures_are_errors(self, report_service, memory_store):
        """Should include undo_failed entries in the error report."""
        session_id = seed(memory_store)
        first = memory_store.list_changes(session_id)[0]
        memory_store.update_change(session_id, first.id, status=ChangeStatus.UNDO_FAILED)

        records = report_service.records_for(session_id, ReportKind.ERRORS)

        assert len(records) == 2

    def test_unknown_session(self, report_service):
        """Should raise for an unknown session."""
        with pytest.raises(SessionNotFoundError):
            report_service.get_results("nope")


class TestExportCsv:
    """Tests for ReportService.export_csv()"""

    def test_not_found_csv(self, report_service, memory_store):
        """Should render one CSV line per entry with the report columns."""
        session_id = seed(memory_store)

        filename, text = report_service.export_csv(session_id, ReportKind.NOT_FOUND)

        assert filename == f"not-found-{session_id}.csv"
        rows = list(csv.DictReader(StringIO(text)))
        assert list(rows[0].keys()) == REPORT_COLUMNS
        assert [r["field"] for r in rows] == ["NAME", "CITY"]
        assert rows[0]["current_value"] == ""

    def test_empty_kind_is_not_available(self, report_service, memory_store):
        """Should signal not available instead of an empty CSV."""
        session_id = seed(memory_store)
        for change in memory_store.list_changes(session_id):
            memory_store.update_change(session_id, change.id, status=ChangeStatus.COMPLETED)

        with pytest.raises(ReportNotAvailableError) as exc_info:
            report_service.export_csv(session_id, ReportKind.ERRORS)

        assert exc_info.value.status_code == 404
