"""
Batch executor: applies confirmed changes through the CRM bulk endpoint.

Changes are cut into fixed-size, order-preserving batches. All batch
records are created before any of them runs. Batches then run one after
another; inside a batch, changes are grouped by entity kind and each
kind gets exactly one bulk call. A failed bulk call marks every change of
that kind in that batch as errored and execution moves on.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, TypeVar
import structlog

from exceptions import BatchError, PipelineCancelledError
from integrations.bitrix_client import BitrixClient
from models.batch import BatchStatus, ExecutionBatch
from models.change import ChangeStatus, PendingChange
from models.crm import EntityKind
from services.session_store import SessionStore
from services.task_runner import CancellationToken

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 50


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into contiguous slices of at most size elements."""
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


@dataclass
class ExecutionSummary:
    """Counts from one execution pass."""
    total_batches: int = 0
    completed_changes: int = 0
    failed_changes: int = 0
    failed_batches: int = 0


class BatchExecutor:
    """Runs execution batches for one session at a time."""

    def __init__(
        self,
        client: BitrixClient,
        store: SessionStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.client = client
        self.store = store
        self.batch_size = batch_size

    def create_batches(self, session_id: str, changes: Sequence[PendingChange]) -> list[ExecutionBatch]:
        """Persist one pending batch record per slice, numbered from 1."""
        batches = []
        for number, chunk in enumerate(partition(changes, self.batch_size), start=1):
            batches.append(self.store.add_batch(ExecutionBatch(
                session_id=session_id,
                batch_number=number,
                change_ids=[c.id for c in chunk],
            )))
        logger.info(
            "batches_created",
            session_id=session_id,
            batches=len(batches),
            changes=len(changes)
        )
        return batches

    def execute(
        self,
        session_id: str,
        changes: Sequence[PendingChange],
        domain: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> ExecutionSummary:
        """
        Create and run all batches for the given changes.

        Raises:
            PipelineCancelledError: If token is cancelled between batches
        """
        batches = self.create_batches(session_id, changes)
        by_id = {c.id: c for c in changes}
        summary = ExecutionSummary(total_batches=len(batches))

        for batch in batches:
            if token is not None and token.cancelled:
                raise PipelineCancelledError(session_id)

            finished = self.run_batch(
                session_id,
                batch,
                [by_id[cid] for cid in batch.change_ids],
                domain=domain,
            )
            failed = sum(e["count"] for e in finished.errors)
            summary.failed_changes += failed
            summary.completed_changes += len(finished.change_ids) - failed
            if finished.status == BatchStatus.FAILED:
                summary.failed_batches += 1

        logger.info(
            "execution_pass_finished",
            session_id=session_id,
            batches=summary.total_batches,
            completed=summary.completed_changes,
            failed=summary.failed_changes
        )
        return summary

    def run_batch(
        self,
        session_id: str,
        batch: ExecutionBatch,
        changes: Sequence[PendingChange],
        domain: Optional[str] = None,
    ) -> ExecutionBatch:
        """Apply one batch; never raises for CRM failures."""
        self.store.update_batch(session_id, batch.id, status=BatchStatus.PROCESSING)
        logger.info(
            "batch_started",
            session_id=session_id,
            batch_number=batch.batch_number,
            changes=len(changes)
        )

        groups: dict[EntityKind, list[PendingChange]] = {}
        unknown: list[PendingChange] = []
        for change in changes:
            if change.entity_kind is None:
                unknown.append(change)
            else:
                groups.setdefault(change.entity_kind, []).append(change)

        errors: list[dict] = []

        if unknown:
            message = "Change has no entity kind"
            self._mark(session_id, unknown, ChangeStatus.ERROR, message)
            errors.append({"entity_kind": None, "message": message, "count": len(unknown)})

        for kind, group in groups.items():
            updates = [(c.entity_id, {c.field: c.new_value}) for c in group]
            try:
                self.client.bulk_update(kind, updates, domain=domain)
            except Exception as e:
                batch_error = BatchError(batch.batch_number, kind.value, e)
                logger.error(
                    "batch_kind_failed",
                    session_id=session_id,
                    batch_number=batch.batch_number,
                    entity_kind=kind.value,
                    changes=len(group),
                    error=batch_error.message
                )
                self._mark(session_id, group, ChangeStatus.ERROR, batch_error.message)
                errors.append({
                    "entity_kind": kind.value,
                    "message": batch_error.message,
                    "count": len(group),
                })
                continue

            self._mark(session_id, group, ChangeStatus.COMPLETED, None)

        finished = self.store.update_batch(
            session_id,
            batch.id,
            status=BatchStatus.FAILED if errors else BatchStatus.COMPLETED,
            processed_at=datetime.utcnow(),
            errors=errors,
        )
        logger.info(
            "batch_finished",
            session_id=session_id,
            batch_number=batch.batch_number,
            status=finished.status.value
        )
        return finished

    def _mark(
        self,
        session_id: str,
        changes: Sequence[PendingChange],
        status: ChangeStatus,
        error_message: Optional[str],
    ) -> None:
        self.store.update_changes(
            session_id,
            {c.id: {"status": status, "error_message": error_message} for c in changes},
        )
