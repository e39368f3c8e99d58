"""
Bulk update pipeline.

Drives a session through upload → matching → review → execution → undo.
Matching, execution and undo run as background tasks on the TaskRunner;
the session status (and the statuses of its changes) is the only progress
signal callers see.

Status machine:
    uploaded → processing → preview → executing → completed
    processing / executing → error  (pipeline aborted or cancelled)
"""

from typing import Optional
import structlog

from config import get_settings
from exceptions import (
    ValidationError,
    UnknownKeyColumnsError,
    PipelineAbortError,
    PipelineCancelledError,
)
from integrations.bitrix_client import get_bitrix_client
from models.base import PaginatedResponse
from models.batch import BatchStatus
from models.change import ChangeAction, ChangeEdit, ChangeStatus, PendingChange, PreviewFilter
from models.crm import MatchType, TargetType
from models.session import (
    ExecutionProgress,
    ProcessingStatus,
    SessionStatus,
    UploadSession,
    row_columns,
)
from parsers.tabular_parser import extract_rows, is_supported_file
from services.batch_executor import BatchExecutor
from services.diff_builder import build_changes
from services.record_matcher import RecordMatcher
from services.session_store import SessionStore, get_session_store
from services.task_runner import CancellationToken, TaskRunner, get_task_runner
from services.undo_service import UndoExecutor

logger = structlog.get_logger(__name__)


def _matches_filter(change: PendingChange, preview_filter: PreviewFilter) -> bool:
    if preview_filter == PreviewFilter.UPDATE:
        return change.action == ChangeAction.UPDATE
    if preview_filter == PreviewFilter.IGNORE:
        return change.action == ChangeAction.IGNORE
    if preview_filter == PreviewFilter.NOT_FOUND:
        return change.match_type == MatchType.NOT_FOUND
    if preview_filter == PreviewFilter.DUPLICATES:
        return change.match_type == MatchType.DUPLICATE
    return True


def _matches_search(change: PendingChange, needle: str) -> bool:
    haystacks = [change.search_key, change.new_value, change.current_value or ""]
    return any(needle in h.lower() for h in haystacks)


class PipelineService:
    """
    Orchestrates one session's pipeline.

    All CRM traffic goes through the matcher/executors, which share one
    rate-limited client.
    """

    def __init__(
        self,
        store: SessionStore,
        matcher: RecordMatcher,
        executor: BatchExecutor,
        undo_executor: UndoExecutor,
        runner: TaskRunner,
        max_rows: int = 100000,
        max_bytes: int = 50 * 1024 * 1024,
    ):
        self.store = store
        self.matcher = matcher
        self.executor = executor
        self.undo_executor = undo_executor
        self.runner = runner
        self.max_rows = max_rows
        self.max_bytes = max_bytes

    # ===================
    # UPLOAD
    # ===================

    def create_session(
        self,
        file_name: str,
        content: bytes,
        target_type: TargetType,
        key_columns: list[str],
        domain: Optional[str] = None,
    ) -> UploadSession:
        """
        Validate an uploaded file and open a session for it.

        Raises:
            ValidationError: Bad type, too large, empty, too many rows
            FileParseError: Unreadable file
            UnknownKeyColumnsError: Key column not among the headers
        """
        if not is_supported_file(file_name):
            raise ValidationError(
                message="Invalid file type. Only .xlsx, .xls and .csv files are allowed.",
                code="INVALID_FILE_TYPE",
                details={"file_name": file_name}
            )
        if len(content) > self.max_bytes:
            raise ValidationError(
                message=f"File exceeds maximum size of {self.max_bytes // (1024 * 1024)} MB",
                code="FILE_TOO_LARGE",
                details={"file_size": len(content)}
            )

        rows = extract_rows(content, file_name)
        if not rows:
            raise ValidationError(
                message="File is empty or could not be parsed",
                code="EMPTY_FILE"
            )
        if len(rows) > self.max_rows:
            raise ValidationError(
                message=f"File exceeds maximum of {self.max_rows:,} rows",
                code="TOO_MANY_ROWS",
                details={"rows": len(rows)}
            )

        session = UploadSession(
            file_name=file_name,
            file_size=len(content),
            total_rows=len(rows),
            target_type=target_type,
            key_columns=key_columns,
            columns=row_columns(rows),
            domain=domain,
        )
        self._check_key_columns(session, key_columns)
        return self.store.create_session(session, rows)

    @staticmethod
    def _check_key_columns(session: UploadSession, key_columns: list[str]) -> None:
        available = session.columns
        missing = [c for c in key_columns if c not in available]
        if missing:
            raise UnknownKeyColumnsError(missing, available)

    # ===================
    # MATCHING
    # ===================

    def start_processing(
        self,
        session_id: str,
        target_type: TargetType,
        key_columns: list[str],
        domain: Optional[str] = None,
    ) -> UploadSession:
        """Confirm configuration and queue the matching pass."""
        with self.store.transaction(session_id):
            session = self.store.get_session(session_id)
            self._check_key_columns(session, key_columns)
            self.store.set_status(session_id, SessionStatus.PROCESSING)
            session = self.store.update_session(
                session_id,
                target_type=target_type,
                key_columns=key_columns,
                domain=domain or session.domain,
            )

        self.runner.submit(session_id, self.run_matching, session_id)
        return session

    def run_matching(self, session_id: str, token: Optional[CancellationToken] = None) -> None:
        """Match and diff every row, then move the session to preview."""
        session = self.store.get_session(session_id)
        rows = self.store.get_rows(session_id)
        logger.info(
            "matching_started",
            session_id=session_id,
            rows=session.total_rows,
            key_columns=session.key_columns,
            target_type=session.target_type.value
        )

        try:
            for row_index, row in enumerate(rows):
                if token is not None and token.cancelled:
                    raise PipelineCancelledError(session_id)

                outcome = self.matcher.match_row(
                    row_index,
                    row,
                    session.key_columns,
                    session.target_type,
                    domain=session.domain,
                )
                changes = build_changes(session_id, outcome, row, session.key_columns)
                with self.store.transaction(session_id):
                    self.store.add_changes(session_id, changes)
                    self.store.update_session(session_id, processed_rows=row_index + 1)

            self.store.set_status(session_id, SessionStatus.PREVIEW)
            logger.info("matching_finished", session_id=session_id)

        except PipelineCancelledError as e:
            logger.warning("matching_cancelled", session_id=session_id)
            self._fail(session_id, e.message)
        except Exception as e:
            abort = PipelineAbortError(session_id, "matching", e)
            logger.error(
                "matching_aborted",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__
            )
            self._fail(session_id, abort.message)

    def processing_status(self, session_id: str) -> ProcessingStatus:
        session = self.store.get_session(session_id)
        changes = self.store.list_changes(session_id)

        rows_by_match: dict[MatchType, set[int]] = {m: set() for m in MatchType}
        for change in changes:
            rows_by_match[change.match_type].add(change.row_index)

        progress = 100.0 if session.total_rows == 0 else session.processed_rows / session.total_rows * 100
        return ProcessingStatus(
            session_id=session_id,
            status=session.status,
            progress=round(progress, 2),
            processed_rows=session.processed_rows,
            total_rows=session.total_rows,
            found=len(rows_by_match[MatchType.FOUND]),
            not_found=len(rows_by_match[MatchType.NOT_FOUND]),
            duplicates=len(rows_by_match[MatchType.DUPLICATE]),
            errors=sum(1 for c in changes if c.status == ChangeStatus.ERROR),
            error_message=session.error_message,
        )

    # ===================
    # REVIEW
    # ===================

    def list_preview(
        self,
        session_id: str,
        page: int = 1,
        page_size: int = 50,
        preview_filter: PreviewFilter = PreviewFilter.ALL,
        search: Optional[str] = None,
    ) -> PaginatedResponse:
        changes = [c for c in self.store.list_changes(session_id) if _matches_filter(c, preview_filter)]
        if search:
            needle = search.lower()
            changes = [c for c in changes if _matches_search(c, needle)]

        offset = (page - 1) * page_size
        return PaginatedResponse.create(
            data=changes[offset:offset + page_size],
            total=len(changes),
            page=page,
            page_size=page_size,
        )

    def apply_edits(self, session_id: str, edits: list[ChangeEdit]) -> int:
        """
        Apply review edits (action, new value, selected).

        Raises:
            ValidationError: Session not in preview, or unknown change ids
        """
        with self.store.transaction(session_id):
            session = self.store.get_session(session_id)
            if session.status != SessionStatus.PREVIEW:
                raise ValidationError(
                    message="Changes can only be edited while the session is in preview",
                    code="SESSION_NOT_IN_PREVIEW",
                    details={"status": session.status.value}
                )

            ids = [e.id for e in edits]
            known = {c.id for c in self.store.get_changes(session_id, ids)}
            unknown = [i for i in ids if i not in known]
            if unknown:
                raise ValidationError(
                    message=f"{len(unknown)} change ids do not belong to this session",
                    code="UNKNOWN_CHANGE_IDS",
                    details={"ids": unknown[:20]}
                )

            applied = self.store.update_changes(session_id, {e.id: e.as_updates() for e in edits})

        logger.info("preview_edited", session_id=session_id, changes=applied)
        return applied

    # ===================
    # EXECUTION
    # ===================

    def select_changes(self, session_id: str, change_ids: Optional[list[str]] = None) -> list[PendingChange]:
        """
        Changes to execute, in creation order.

        Explicit ids are taken as given, minus entries with no matched
        record; otherwise the default selection applies.
        """
        if change_ids is not None:
            chosen = self.store.get_changes(session_id, change_ids)
            unmatched = [c.id for c in chosen if c.entity_id is None]
            if unmatched:
                logger.warning("execute_skipping_unmatched", session_id=session_id, count=len(unmatched))
            return [c for c in chosen if c.entity_id is not None]
        return [c for c in self.store.list_changes(session_id) if c.is_executable]

    def start_execution(
        self,
        session_id: str,
        change_ids: Optional[list[str]] = None,
        domain: Optional[str] = None,
    ) -> int:
        """
        Queue execution of the selected changes.

        Returns:
            Number of changes queued
        """
        with self.store.transaction(session_id):
            session = self.store.get_session(session_id)
            selected = self.select_changes(session_id, change_ids)
            self.store.set_status(session_id, SessionStatus.EXECUTING)

        self.runner.submit(
            session_id,
            self.run_execution,
            session_id,
            [c.id for c in selected],
            domain or session.domain,
        )
        logger.info("execution_queued", session_id=session_id, changes=len(selected))
        return len(selected)

    def run_execution(
        self,
        session_id: str,
        change_ids: list[str],
        domain: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> None:
        """Run all batches, then mark the session completed."""
        try:
            changes = self.store.get_changes(session_id, change_ids)
            self.executor.execute(session_id, changes, domain=domain, token=token)
            self.store.set_status(session_id, SessionStatus.COMPLETED)

        except PipelineCancelledError as e:
            logger.warning("execution_cancelled", session_id=session_id)
            self._fail(session_id, e.message)
        except Exception as e:
            abort = PipelineAbortError(session_id, "execution", e)
            logger.error(
                "execution_aborted",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__
            )
            self._fail(session_id, abort.message)

    def execution_progress(self, session_id: str) -> ExecutionProgress:
        session = self.store.get_session(session_id)
        batches = self.store.list_batches(session_id)
        changes = self.store.list_changes(session_id)

        attempted = [b for b in batches if b.status in (BatchStatus.COMPLETED, BatchStatus.FAILED)]
        running = next((b for b in batches if b.status == BatchStatus.PROCESSING), None)
        processed = sum(len(b.change_ids) for b in attempted)
        total = sum(len(b.change_ids) for b in batches)

        if running is not None:
            current_batch = running.batch_number
        else:
            current_batch = len(attempted)

        return ExecutionProgress(
            session_id=session_id,
            status=session.status,
            progress=round(len(attempted) / len(batches) * 100, 2) if batches else 0.0,
            completed_batches=len(attempted),
            total_batches=len(batches),
            current_batch=current_batch,
            processed=processed,
            remaining=total - processed,
            errors=sum(1 for c in changes if c.status == ChangeStatus.ERROR),
            error_message=session.error_message,
        )

    # ===================
    # UNDO / CANCEL / DELETE
    # ===================

    def start_undo(self, session_id: str, domain: Optional[str] = None) -> None:
        session = self.store.get_session(session_id)
        if session.status != SessionStatus.COMPLETED:
            raise ValidationError(
                message="Undo is only available after execution has completed",
                code="UNDO_NOT_AVAILABLE",
                details={"status": session.status.value}
            )
        if self.runner.is_running(session_id):
            raise ValidationError(
                message="A task is already running for this session",
                code="TASK_ALREADY_RUNNING"
            )
        self.runner.submit(session_id, self.run_undo, session_id, domain or session.domain)

    def run_undo(
        self,
        session_id: str,
        domain: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> None:
        try:
            self.undo_executor.undo(session_id, domain=domain, token=token)
        except Exception as e:
            logger.error(
                "undo_aborted",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__
            )

    def cancel(self, session_id: str) -> bool:
        self.store.get_session(session_id)
        return self.runner.cancel(session_id)

    def delete_session(self, session_id: str) -> None:
        self.runner.cancel(session_id)
        self.store.delete_session(session_id)

    def _fail(self, session_id: str, message: str) -> None:
        try:
            self.store.set_status(session_id, SessionStatus.ERROR, error_message=message)
        except Exception as e:
            # Session may have been deleted while the task was running
            logger.error("session_error_status_failed", session_id=session_id, error=str(e))


_service: Optional[PipelineService] = None


def get_pipeline_service() -> PipelineService:
    global _service
    if _service is None:
        settings = get_settings()
        client = get_bitrix_client()
        store = get_session_store()
        _service = PipelineService(
            store=store,
            matcher=RecordMatcher(client),
            executor=BatchExecutor(client, store, batch_size=settings.batch_size),
            undo_executor=UndoExecutor(client, store),
            runner=get_task_runner(),
            max_rows=settings.max_upload_rows,
            max_bytes=settings.max_upload_bytes,
        )
    return _service
