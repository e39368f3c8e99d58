"""
Business logic services.

Each service handles one stage of the bulk update pipeline.
"""

from services.session_store import (
    SessionStore,
    MemorySessionStore,
    FileSessionStore,
    get_session_store,
)
from services.security_service import SecurityService, AccessContext, get_security_service
from services.record_matcher import RecordMatcher
from services.diff_builder import build_changes
from services.batch_executor import BatchExecutor, ExecutionSummary, partition
from services.undo_service import UndoExecutor, UndoSummary
from services.task_runner import TaskRunner, CancellationToken, get_task_runner
from services.report_service import ReportService, ReportKind, get_report_service
from services.pipeline_service import PipelineService, get_pipeline_service

__all__ = [
    "SessionStore",
    "MemorySessionStore",
    "FileSessionStore",
    "get_session_store",
    "SecurityService",
    "AccessContext",
    "get_security_service",
    "RecordMatcher",
    "build_changes",
    "BatchExecutor",
    "ExecutionSummary",
    "partition",
    "UndoExecutor",
    "UndoSummary",
    "TaskRunner",
    "CancellationToken",
    "get_task_runner",
    "ReportService",
    "ReportKind",
    "get_report_service",
    "PipelineService",
    "get_pipeline_service",
]
