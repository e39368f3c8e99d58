"""
Background task runner.

Matching, execution and undo run on a worker pool so the request that
starts them returns immediately; clients poll session status for
progress. Each submitted task gets a cancellation token that the
pipeline loops check between rows and between batches.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Any, Callable, Optional
import structlog

from config import get_settings

logger = structlog.get_logger(__name__)


class CancellationToken:
    """Set once; checked cooperatively by long-running loops."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class TaskRunner:
    """Thread pool keyed by session id."""

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline")
        self._futures: dict[str, Future] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def submit(
        self,
        session_id: str,
        fn: Callable[..., Any],
        *args,
        **kwargs,
    ) -> Future:
        """
        Queue fn(*args, token=<CancellationToken>, **kwargs) for a session.

        The callable receives its token as the `token` keyword.
        """
        token = CancellationToken()
        with self._lock:
            self._tokens[session_id] = token
            future = self._executor.submit(fn, *args, token=token, **kwargs)
            self._futures[session_id] = future
        future.add_done_callback(lambda f: self._log_outcome(session_id, f))
        logger.info("task_submitted", session_id=session_id, task=getattr(fn, "__name__", str(fn)))
        return future

    def cancel(self, session_id: str) -> bool:
        """Signal the session's running task to stop. False if none is running."""
        with self._lock:
            token = self._tokens.get(session_id)
            future = self._futures.get(session_id)
        if token is None or future is None or future.done():
            return False
        token.cancel()
        logger.info("task_cancel_requested", session_id=session_id)
        return True

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            future = self._futures.get(session_id)
        return future is not None and not future.done()

    def wait(self, session_id: str, timeout: Optional[float] = None) -> None:
        """Block until the session's latest task finishes."""
        with self._lock:
            future = self._futures.get(session_id)
        if future is not None:
            wait_futures([future], timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    @staticmethod
    def _log_outcome(session_id: str, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(
                "task_crashed",
                session_id=session_id,
                error=str(error),
                error_type=type(error).__name__
            )


_runner: Optional[TaskRunner] = None


def get_task_runner() -> TaskRunner:
    global _runner
    if _runner is None:
        _runner = TaskRunner(max_workers=get_settings().task_workers)
    return _runner
