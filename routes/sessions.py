"""
Bulk update session routes.

Upload → process → preview/edit → execute → results/reports → undo.
Every route sits behind the security gate.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import Response
import structlog

from exceptions import ValidationError
from models.change import ExecuteRequest, PreviewFilter, PreviewUpdateRequest
from models.crm import TargetType
from models.session import (
    ExecutionProgress,
    ExecutionResults,
    ProcessingStatus,
    ProcessRequest,
    TaskAcceptedResponse,
    UploadResponse,
)
from routes.dependencies import handle_error, require_access
from services.pipeline_service import get_pipeline_service
from services.report_service import ReportKind, get_report_service
from services.security_service import AccessContext

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


def parse_key_columns(raw: str) -> list[str]:
    """Accept a JSON list or a comma-separated string."""
    text = (raw or "").strip()
    if text.startswith("["):
        try:
            values = json.loads(text)
        except json.JSONDecodeError:
            raise ValidationError(message="key_columns is not valid JSON", code="INVALID_KEY_COLUMNS")
        if not isinstance(values, list):
            raise ValidationError(message="key_columns must be a list", code="INVALID_KEY_COLUMNS")
        columns = [str(v).strip() for v in values]
    else:
        columns = [c.strip() for c in text.split(",")]

    columns = [c for c in columns if c]
    if not columns:
        raise ValidationError(message="At least one key column is required", code="INVALID_KEY_COLUMNS")
    return columns


# ===================
# UPLOAD / PROCESS
# ===================

@router.post("/upload", response_model=UploadResponse)
async def upload_file(
    file: UploadFile = File(..., description="Spreadsheet (.xlsx, .xls or .csv)"),
    target_type: TargetType = Form(..., description="contacts, companies or both"),
    key_columns: str = Form(..., description="Key columns in priority order"),
    access: AccessContext = Depends(require_access),
):
    """
    Upload a spreadsheet and open a session.

    Raises:
        422: Invalid type, too large, empty, too many rows, unknown key columns
    """
    try:
        columns = parse_key_columns(key_columns)
        service = get_pipeline_service()
        # One byte past the limit is enough for the size check to reject
        contents = await file.read(service.max_bytes + 1)

        session = service.create_session(
            file_name=file.filename or "upload",
            content=contents,
            target_type=target_type,
            key_columns=columns,
            domain=access.domain,
        )

        return UploadResponse(
            session_id=session.id,
            file_name=session.file_name,
            file_size=session.file_size,
            total_rows=session.total_rows,
            target_type=session.target_type,
            key_columns=session.key_columns,
            available_columns=session.columns,
            status=session.status,
        )

    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/process", response_model=TaskAcceptedResponse)
async def process_session(
    session_id: str,
    request: ProcessRequest,
    access: AccessContext = Depends(require_access),
):
    """Confirm target type and key columns, then start matching in the background."""
    try:
        get_pipeline_service().start_processing(
            session_id,
            target_type=request.target_type,
            key_columns=request.key_columns,
            domain=access.domain,
        )
        return TaskAcceptedResponse(message="Processing started", session_id=session_id)

    except Exception as e:
        return handle_error(e)


@router.get("/{session_id}/status", response_model=ProcessingStatus)
async def get_processing_status(
    session_id: str,
    access: AccessContext = Depends(require_access),
):
    """Poll matching progress."""
    try:
        return get_pipeline_service().processing_status(session_id)

    except Exception as e:
        return handle_error(e)


# ===================
# PREVIEW
# ===================

@router.get("/{session_id}/preview")
async def get_preview(
    session_id: str,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
    preview_filter: PreviewFilter = Query(PreviewFilter.ALL, alias="filter", description="Row filter"),
    search: Optional[str] = Query(None, description="Search key / value text"),
    access: AccessContext = Depends(require_access),
):
    """List proposed changes for review."""
    try:
        return get_pipeline_service().list_preview(
            session_id,
            page=page,
            page_size=page_size,
            preview_filter=preview_filter,
            search=search,
        )

    except Exception as e:
        return handle_error(e)


@router.patch("/{session_id}/preview")
async def update_preview(
    session_id: str,
    request: PreviewUpdateRequest,
    access: AccessContext = Depends(require_access),
):
    """Edit action, new value or selection of proposed changes."""
    try:
        applied = get_pipeline_service().apply_edits(session_id, request.updates)
        return {"message": "Records updated successfully", "updated": applied}

    except Exception as e:
        return handle_error(e)


# ===================
# EXECUTION
# ===================

@router.post("/{session_id}/execute", response_model=TaskAcceptedResponse)
async def execute_session(
    session_id: str,
    request: Optional[ExecuteRequest] = None,
    access: AccessContext = Depends(require_access),
):
    """Start applying the selected changes in background batches."""
    try:
        change_ids = request.change_ids if request else None
        queued = get_pipeline_service().start_execution(
            session_id,
            change_ids=change_ids,
            domain=access.domain,
        )
        return TaskAcceptedResponse(
            message=f"Execution started for {queued} changes",
            session_id=session_id,
        )

    except Exception as e:
        return handle_error(e)


@router.get("/{session_id}/execution", response_model=ExecutionProgress)
async def get_execution_progress(
    session_id: str,
    access: AccessContext = Depends(require_access),
):
    """Poll batch progress."""
    try:
        return get_pipeline_service().execution_progress(session_id)

    except Exception as e:
        return handle_error(e)


@router.get("/{session_id}/results", response_model=ExecutionResults)
async def get_results(
    session_id: str,
    access: AccessContext = Depends(require_access),
):
    """Final totals with not-found, duplicate and error records."""
    try:
        return get_report_service().get_results(session_id)

    except Exception as e:
        return handle_error(e)


@router.get("/{session_id}/reports/{kind}")
async def download_report(
    session_id: str,
    kind: ReportKind,
    access: AccessContext = Depends(require_access),
):
    """
    Download one outcome kind as CSV.

    Raises:
        404: Session unknown, or no records of that kind
    """
    try:
        filename, csv_text = get_report_service().export_csv(session_id, kind)
        return Response(
            content=csv_text,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    except Exception as e:
        return handle_error(e)


# ===================
# UNDO / CANCEL / DELETE
# ===================

@router.post("/{session_id}/undo", response_model=TaskAcceptedResponse)
async def undo_session(
    session_id: str,
    access: AccessContext = Depends(require_access),
):
    """Revert every applied change in the background."""
    try:
        get_pipeline_service().start_undo(session_id, domain=access.domain)
        return TaskAcceptedResponse(message="Undo process started", session_id=session_id)

    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/cancel")
async def cancel_session(
    session_id: str,
    access: AccessContext = Depends(require_access),
):
    """Ask the running matching/execution task to stop after the current row or batch."""
    try:
        cancelled = get_pipeline_service().cancel(session_id)
        return {"session_id": session_id, "cancelled": cancelled}

    except Exception as e:
        return handle_error(e)


@router.delete("/{session_id}")
async def delete_session(
    session_id: str,
    access: AccessContext = Depends(require_access),
):
    """Delete a session with its changes and batches."""
    try:
        get_pipeline_service().delete_session(session_id)
        return {"session_id": session_id, "deleted": True}

    except Exception as e:
        return handle_error(e)
