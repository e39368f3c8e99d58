"""
Shared test fixtures.

The CRM is replaced by FakeBitrixClient, background tasks by
InlineTaskRunner (tasks run synchronously inside submit()).
"""

import sys
from pathlib import Path

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import pytest
from unittest.mock import patch
from typing import Generator, Optional

from exceptions import ApiError
from models.crm import CrmEntity, EntityKind
from services.batch_executor import BatchExecutor
from services.pipeline_service import PipelineService
from services.record_matcher import RecordMatcher
from services.report_service import ReportService
from services.security_service import SecurityService
from services.session_store import MemorySessionStore
from services.task_runner import CancellationToken
from services.undo_service import UndoExecutor


# ===================
# FAKE CLOCK
# ===================

class FakeClock:
    """Deterministic clock; sleep() advances time and records the delay."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ===================
# FAKE BITRIX CLIENT
# ===================

class FakeBitrixClient:
    """
    In-memory stand-in for BitrixClient.

    Usage:
        fake_bitrix.add(EntityKind.CONTACT, {"ID": "1", "EMAIL": "a@x.com"})
        fake_bitrix.fail_search_on.add("EMAIL")
        fake_bitrix.fail_bulk_for.add(EntityKind.COMPANY)
    """

    def __init__(self):
        self.records: dict[EntityKind, list[dict]] = {kind: [] for kind in EntityKind}
        self.search_calls: list[tuple[EntityKind, str, str]] = []
        self.update_calls: list[tuple[EntityKind, str, dict]] = []
        self.bulk_calls: list[tuple[EntityKind, list]] = []
        self.fail_search_on: set[str] = set()
        self.fail_search_kinds: set[EntityKind] = set()
        self.fail_bulk_for: set[EntityKind] = set()
        self.fail_update_ids: set[str] = set()

    def add(self, kind: EntityKind, fields: dict) -> None:
        self.records[kind].append(dict(fields))

    def find(self, kind: EntityKind, entity_id: str) -> Optional[dict]:
        return next((r for r in self.records[kind] if r["ID"] == entity_id), None)

    def search(self, kind, field, value, domain=None):
        self.search_calls.append((kind, field, value))
        if field in self.fail_search_on or kind in self.fail_search_kinds:
            raise ApiError(f"search on {field} failed")
        return [
            CrmEntity(id=r["ID"], kind=kind, fields=dict(r))
            for r in self.records[kind]
            if str(r.get(field, "")) == value
        ]

    def update(self, kind, entity_id, fields, domain=None):
        self.update_calls.append((kind, entity_id, dict(fields)))
        if entity_id in self.fail_update_ids:
            raise ApiError(f"update of {entity_id} refused")
        record = self.find(kind, entity_id)
        if record is not None:
            record.update(fields)
        return True

    def bulk_update(self, kind, updates, domain=None):
        self.bulk_calls.append((kind, list(updates)))
        if kind in self.fail_bulk_for:
            raise ApiError(f"batch for {kind.value} failed")
        for entity_id, fields in updates:
            record = self.find(kind, entity_id)
            if record is not None:
                record.update(fields)
        return True


# ===================
# INLINE TASK RUNNER
# ===================

class InlineTaskRunner:
    """Runs submitted tasks immediately on the calling thread."""

    def __init__(self):
        self.submitted: list[str] = []

    def submit(self, session_id, fn, *args, **kwargs):
        self.submitted.append(getattr(fn, "__name__", str(fn)))
        fn(*args, token=CancellationToken(), **kwargs)

    def cancel(self, session_id):
        return False

    def is_running(self, session_id):
        return False

    def wait(self, session_id, timeout=None):
        return None

    def shutdown(self):
        return None


# ===================
# FIXTURES
# ===================

@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_bitrix() -> FakeBitrixClient:
    return FakeBitrixClient()


@pytest.fixture
def memory_store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def inline_runner() -> InlineTaskRunner:
    return InlineTaskRunner()


@pytest.fixture
def pipeline_service(memory_store, fake_bitrix, inline_runner) -> PipelineService:
    """PipelineService wired to the fake CRM and a synchronous runner."""
    return PipelineService(
        store=memory_store,
        matcher=RecordMatcher(fake_bitrix),
        executor=BatchExecutor(fake_bitrix, memory_store, batch_size=50),
        undo_executor=UndoExecutor(fake_bitrix, memory_store),
        runner=inline_runner,
    )


@pytest.fixture
def report_service(memory_store) -> ReportService:
    return ReportService(memory_store)


@pytest.fixture
def security_service() -> SecurityService:
    return SecurityService(secret_token="s3cret", allowed_domains=["portal.bitrix24.ru"])


@pytest.fixture
def sample_csv() -> bytes:
    """Three rows keyed by EMAIL, one value column."""
    return (
        "EMAIL,NAME\n"
        "one@example.com,New\n"
        "missing@example.com,Nobody\n"
        "dup@example.com,Twin\n"
    ).encode("utf-8")


@pytest.fixture
def seeded_bitrix(fake_bitrix) -> FakeBitrixClient:
    """CRM with one unique contact and two contacts sharing an email."""
    fake_bitrix.add(EntityKind.CONTACT, {"ID": "101", "EMAIL": "one@example.com", "NAME": "Old"})
    fake_bitrix.add(EntityKind.CONTACT, {"ID": "201", "EMAIL": "dup@example.com", "NAME": "First"})
    fake_bitrix.add(EntityKind.CONTACT, {"ID": "202", "EMAIL": "dup@example.com", "NAME": "Second"})
    return fake_bitrix


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client(pipeline_service, report_service, security_service) -> Generator:
    """
    FastAPI test client with services replaced by the fixtures above.

    Usage:
        def test_endpoint(test_client):
            response = test_client.post("/api/security/validate", json={...})
    """
    from fastapi.testclient import TestClient
    from main import app

    with patch("routes.dependencies.get_security_service", return_value=security_service):
        with patch("routes.security.get_security_service", return_value=security_service):
            with patch("routes.sessions.get_pipeline_service", return_value=pipeline_service):
                with patch("routes.sessions.get_report_service", return_value=report_service):
                    yield TestClient(app)


@pytest.fixture
def auth_headers() -> dict:
    return {"X-Auth-Token": "s3cret", "X-Bitrix-Domain": "portal.bitrix24.ru"}
