"""
Session/result store.

Holds upload sessions together with their raw rows, pending changes and
execution batches. Everything a session owns lives in one bundle keyed by
session id, and every read-modify-write runs under that session's lock,
so concurrent sessions never lose each other's updates.

Two backends share the same contract:
    MemorySessionStore: bundles kept in process memory
    FileSessionStore: bundles cached in memory and persisted incrementally
        under data_dir/session-<id>/
"""

import json
import os
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

import structlog
from pydantic import BaseModel, Field

from config import get_settings
from exceptions import SessionNotFoundError, InvalidStatusTransitionError
from models.session import UploadSession, SessionStatus, is_valid_session_status_transition
from models.change import PendingChange
from models.batch import ExecutionBatch

logger = structlog.get_logger(__name__)


class SessionBundle(BaseModel):
    """A session and everything it owns."""
    session: UploadSession
    rows: list[dict[str, str]] = Field(default_factory=list)
    changes: dict[str, PendingChange] = Field(default_factory=dict)
    batches: dict[str, ExecutionBatch] = Field(default_factory=dict)


class SessionStore:
    """
    Base store. Keeps bundles in memory; subclasses add persistence.

    All getters return deep copies; mutate through the update methods.
    Locks exist only for sessions that exist, so looking up unknown ids
    leaves nothing behind.
    """

    def __init__(self):
        self._bundles: dict[str, SessionBundle] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ===================
    # PERSISTENCE HOOKS
    # ===================

    def _exists(self, session_id: str) -> bool:
        """Whether a persisted session exists that is not loaded yet."""
        return False

    def _load(self, session_id: str) -> Optional[SessionBundle]:
        return None

    def _persist_created(self, bundle: SessionBundle) -> None:
        pass

    def _persist_session(self, session: UploadSession) -> None:
        pass

    def _persist_changes(self, session_id: str, changes: list[PendingChange]) -> None:
        pass

    def _persist_batch(self, batch: ExecutionBatch) -> None:
        pass

    def _remove(self, session_id: str) -> None:
        pass

    # ===================
    # LOCKING
    # ===================

    def _lock_for(self, session_id: str) -> threading.RLock:
        """
        Raises:
            SessionNotFoundError: No such session
        """
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                if session_id not in self._bundles and not self._exists(session_id):
                    raise SessionNotFoundError(session_id)
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    @contextmanager
    def transaction(self, session_id: str) -> Iterator[None]:
        """Hold the session's lock; re-entrant within one thread."""
        lock = self._lock_for(session_id)
        with lock:
            yield

    def _bundle(self, session_id: str) -> SessionBundle:
        bundle = self._bundles.get(session_id)
        if bundle is None:
            bundle = self._load(session_id)
            if bundle is None:
                raise SessionNotFoundError(session_id)
            self._bundles[session_id] = bundle
        return bundle

    # ===================
    # SESSIONS
    # ===================

    def create_session(
        self,
        session: UploadSession,
        rows: Optional[list[dict[str, str]]] = None,
    ) -> UploadSession:
        """Store a new session with its rows; rows are never modified afterwards."""
        bundle = SessionBundle(
            session=session.model_copy(deep=True),
            rows=[dict(row) for row in rows or []],
        )
        lock = threading.RLock()
        with self._locks_guard:
            self._locks[session.id] = lock
        with lock:
            self._persist_created(bundle)
            self._bundles[session.id] = bundle
        logger.info(
            "session_created",
            session_id=session.id,
            file_name=session.file_name,
            total_rows=session.total_rows
        )
        return session.model_copy(deep=True)

    def get_session(self, session_id: str) -> UploadSession:
        with self.transaction(session_id):
            return self._bundle(session_id).session.model_copy(deep=True)

    def get_rows(self, session_id: str) -> list[dict[str, str]]:
        """The session's raw rows, in file order."""
        with self.transaction(session_id):
            return [dict(row) for row in self._bundle(session_id).rows]

    def update_session(self, session_id: str, **updates) -> UploadSession:
        with self.transaction(session_id):
            bundle = self._bundle(session_id)
            session = bundle.session.model_copy(
                update={**updates, "updated_at": datetime.utcnow()}
            )
            self._persist_session(session)
            bundle.session = session
            return session.model_copy(deep=True)

    def set_status(
        self,
        session_id: str,
        new_status: SessionStatus,
        error_message: Optional[str] = None,
    ) -> UploadSession:
        """
        Move a session along the status state machine.

        Raises:
            InvalidStatusTransitionError: If the move is not allowed
        """
        with self.transaction(session_id):
            current = self._bundle(session_id).session.status
            if not is_valid_session_status_transition(current, new_status):
                raise InvalidStatusTransitionError(current.value, new_status.value)
            updates = {"status": new_status}
            if error_message is not None:
                updates["error_message"] = error_message
            session = self.update_session(session_id, **updates)

        logger.info(
            "session_status_changed",
            session_id=session_id,
            from_status=current.value,
            to_status=new_status.value
        )
        return session

    def delete_session(self, session_id: str) -> None:
        """Delete a session and cascade to its rows, changes and batches."""
        with self.transaction(session_id):
            self._bundle(session_id)
            self._remove(session_id)
            self._bundles.pop(session_id, None)
            with self._locks_guard:
                self._locks.pop(session_id, None)
        logger.info("session_deleted", session_id=session_id)

    # ===================
    # PENDING CHANGES
    # ===================

    def add_changes(self, session_id: str, changes: Iterable[PendingChange]) -> int:
        with self.transaction(session_id):
            bundle = self._bundle(session_id)
            added = [c.model_copy() for c in changes]
            self._persist_changes(session_id, added)
            for change in added:
                bundle.changes[change.id] = change
            return len(added)

    def list_changes(self, session_id: str) -> list[PendingChange]:
        """All changes of a session, in creation order."""
        with self.transaction(session_id):
            return [c.model_copy() for c in self._bundle(session_id).changes.values()]

    def get_changes(self, session_id: str, change_ids: Iterable[str]) -> list[PendingChange]:
        """Changes with the given ids, in creation order; unknown ids are skipped."""
        wanted = set(change_ids)
        with self.transaction(session_id):
            return [
                c.model_copy()
                for c in self._bundle(session_id).changes.values()
                if c.id in wanted
            ]

    def update_changes(self, session_id: str, updates: dict[str, dict]) -> int:
        """
        Apply field updates to several changes at once.

        Args:
            updates: change id -> {field: value}

        Returns:
            Number of changes updated (ids not in the session are ignored)
        """
        with self.transaction(session_id):
            bundle = self._bundle(session_id)
            updated = [
                bundle.changes[change_id].model_copy(update=data)
                for change_id, data in updates.items()
                if change_id in bundle.changes
            ]
            self._persist_changes(session_id, updated)
            for change in updated:
                bundle.changes[change.id] = change
            return len(updated)

    def update_change(self, session_id: str, change_id: str, **data) -> bool:
        return self.update_changes(session_id, {change_id: data}) == 1

    # ===================
    # EXECUTION BATCHES
    # ===================

    def add_batch(self, batch: ExecutionBatch) -> ExecutionBatch:
        with self.transaction(batch.session_id):
            bundle = self._bundle(batch.session_id)
            stored = batch.model_copy(deep=True)
            self._persist_batch(stored)
            bundle.batches[stored.id] = stored
            return stored.model_copy(deep=True)

    def list_batches(self, session_id: str) -> list[ExecutionBatch]:
        with self.transaction(session_id):
            batches = self._bundle(session_id).batches.values()
            return sorted((b.model_copy(deep=True) for b in batches), key=lambda b: b.batch_number)

    def update_batch(self, session_id: str, batch_id: str, **data) -> ExecutionBatch:
        with self.transaction(session_id):
            bundle = self._bundle(session_id)
            batch = bundle.batches[batch_id].model_copy(update=data, deep=True)
            self._persist_batch(batch)
            bundle.batches[batch_id] = batch
            return batch.model_copy(deep=True)


class MemorySessionStore(SessionStore):
    """Keeps bundles in process memory only; single-process."""


class FileSessionStore(SessionStore):
    """
    Persists each session under data_dir/session-<id>/:

        session.json    session record, rewritten atomically on update
        rows.json       raw rows, written once at creation
        changes.jsonl   one line per added or updated change; last line wins
        batches.jsonl   one line per added or updated batch; last line wins

    Writes per operation are proportional to what changed, not to the size
    of the session. Reads are served from the in-memory bundle; a session
    written by another instance is loaded on first access.
    """

    SESSION_FILE = "session.json"
    ROWS_FILE = "rows.json"
    CHANGES_FILE = "changes.jsonl"
    BATCHES_FILE = "batches.jsonl"

    def __init__(self, data_dir: str):
        super().__init__()
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _dir(self, session_id: str) -> Path:
        return self.data_dir / f"session-{session_id}"

    # Single funnel for disk writes
    def _write_text(self, path: Path, text: str) -> None:
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    def _append_lines(self, path: Path, lines: list[str]) -> None:
        if not lines:
            return
        with path.open("a", encoding="utf-8") as f:
            f.write("".join(line + "\n" for line in lines))

    def _exists(self, session_id: str) -> bool:
        return (self._dir(session_id) / self.SESSION_FILE).exists()

    def _load(self, session_id: str) -> Optional[SessionBundle]:
        directory = self._dir(session_id)
        session_path = directory / self.SESSION_FILE
        if not session_path.exists():
            return None

        bundle = SessionBundle(
            session=UploadSession.model_validate_json(session_path.read_text(encoding="utf-8")),
            rows=json.loads((directory / self.ROWS_FILE).read_text(encoding="utf-8")),
        )
        for change in self._replay(directory / self.CHANGES_FILE, PendingChange):
            bundle.changes[change.id] = change
        for batch in self._replay(directory / self.BATCHES_FILE, ExecutionBatch):
            bundle.batches[batch.id] = batch

        logger.info(
            "session_loaded",
            session_id=session_id,
            changes=len(bundle.changes),
            batches=len(bundle.batches)
        )
        return bundle

    @staticmethod
    def _replay(path: Path, model: type[BaseModel]) -> Iterator[BaseModel]:
        if not path.exists():
            return
        with path.open(encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    yield model.model_validate_json(line)

    def _persist_created(self, bundle: SessionBundle) -> None:
        directory = self._dir(bundle.session.id)
        directory.mkdir(parents=True, exist_ok=True)
        self._write_text(directory / self.ROWS_FILE, json.dumps(bundle.rows, ensure_ascii=False))
        # session.json last: its presence marks the session as complete on disk
        self._write_text(directory / self.SESSION_FILE, bundle.session.model_dump_json())

    def _persist_session(self, session: UploadSession) -> None:
        self._write_text(self._dir(session.id) / self.SESSION_FILE, session.model_dump_json())

    def _persist_changes(self, session_id: str, changes: list[PendingChange]) -> None:
        self._append_lines(
            self._dir(session_id) / self.CHANGES_FILE,
            [c.model_dump_json() for c in changes],
        )

    def _persist_batch(self, batch: ExecutionBatch) -> None:
        self._append_lines(
            self._dir(batch.session_id) / self.BATCHES_FILE,
            [batch.model_dump_json()],
        )

    def _remove(self, session_id: str) -> None:
        directory = self._dir(session_id)
        if directory.exists():
            shutil.rmtree(directory)


_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    global _store
    if _store is None:
        settings = get_settings()
        if settings.storage_backend == "file":
            _store = FileSessionStore(settings.data_dir)
        else:
            _store = MemorySessionStore()
        logger.info("session_store_ready", backend=settings.storage_backend)
    return _store
