"""
Undo executor: writes recorded current values back to the CRM.
"""

from dataclasses import dataclass
from typing import Optional
import structlog

from exceptions import UndoError
from integrations.bitrix_client import BitrixClient
from models.change import ChangeStatus, PendingChange
from services.session_store import SessionStore

logger = structlog.get_logger(__name__)


@dataclass
class UndoSummary:
    reverted: int = 0
    skipped: int = 0
    failed: int = 0


def is_revertible(change: PendingChange) -> bool:
    """Only applied changes with a known target can be reverted."""
    return (
        change.status == ChangeStatus.COMPLETED
        and change.entity_id is not None
        and change.entity_kind is not None
    )


class UndoExecutor:
    """Reverts applied changes one record at a time."""

    def __init__(self, client: BitrixClient, store: SessionStore):
        self.client = client
        self.store = store

    def undo(self, session_id: str, domain: Optional[str] = None, token=None) -> UndoSummary:
        """
        Revert every completed change of a session.

        Changes without a recorded current value are left untouched.
        A failed revert marks that change undo_failed and processing
        continues with the next change.
        """
        summary = UndoSummary()
        candidates = [c for c in self.store.list_changes(session_id) if is_revertible(c)]
        logger.info("undo_started", session_id=session_id, candidates=len(candidates))

        for change in candidates:
            if token is not None and token.cancelled:
                logger.info("undo_cancelled", session_id=session_id)
                break

            if change.current_value is None:
                summary.skipped += 1
                continue

            try:
                self.client.update(
                    change.entity_kind,
                    change.entity_id,
                    {change.field: change.current_value},
                    domain=domain,
                )
            except Exception as e:
                undo_error = UndoError(change.id, e)
                logger.error(
                    "undo_change_failed",
                    session_id=session_id,
                    change_id=change.id,
                    entity_id=change.entity_id,
                    error=undo_error.message
                )
                self.store.update_change(
                    session_id,
                    change.id,
                    status=ChangeStatus.UNDO_FAILED,
                    error_message=undo_error.message,
                )
                summary.failed += 1
                continue

            self.store.update_change(
                session_id,
                change.id,
                status=ChangeStatus.FOUND,
                new_value=change.current_value,
                error_message=None,
            )
            summary.reverted += 1

        logger.info(
            "undo_finished",
            session_id=session_id,
            reverted=summary.reverted,
            skipped=summary.skipped,
            failed=summary.failed
        )
        return summary
