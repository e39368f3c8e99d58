"""
Unit tests for BatchExecutor and partition().

Run: pytest tests/unit/test_batch_executor.py -v
"""

import math

import pytest

from exceptions import PipelineCancelledError
from models.batch import BatchStatus
from models.change import ChangeStatus, PendingChange
from models.crm import EntityKind, MatchType, TargetType
from models.session import UploadSession
from services.batch_executor import BatchExecutor, partition
from services.task_runner import CancellationToken


def seed_session(store) -> str:
    session = store.create_session(UploadSession(
        file_name="rows.csv",
        file_size=1,
        total_rows=1,
        target_type=TargetType.BOTH,
        key_columns=["EMAIL"],
        columns=["EMAIL", "NAME"],
    ))
    return session.id


def seed_changes(store, session_id, count, kind=EntityKind.CONTACT, start=0) -> list[PendingChange]:
    changes = [
        PendingChange(
            session_id=session_id,
            row_index=start + i,
            search_key=f"EMAIL: {start + i}@x.com",
            entity_id=str(1000 + start + i),
            entity_kind=kind,
            field="NAME",
            current_value="old",
            new_value=f"new-{start + i}",
            status=ChangeStatus.FOUND,
            match_type=MatchType.FOUND,
        )
        for i in range(count)
    ]
    store.add_changes(session_id, changes)
    return changes


class TestPartition:
    """Tests for partition()"""

    @pytest.mark.parametrize("count", [0, 1, 49, 50, 51, 100, 101, 237])
    def test_batch_count_and_slices(self, count):
        """Should yield ceil(N/50) contiguous, order-preserving slices."""
        items = list(range(count))

        batches = partition(items, 50)

        assert len(batches) == math.ceil(count / 50)
        for i, batch in enumerate(batches):
            assert batch == items[50 * i:50 * (i + 1)]

    def test_rejects_zero_size(self):
        """Should refuse a batch size below 1."""
        with pytest.raises(ValueError):
            partition([1, 2], 0)


class TestCreateBatches:
    """Tests for BatchExecutor.create_batches()"""

    def test_records_created_numbered_from_one(self, memory_store, fake_bitrix):
        """Should persist one pending batch per slice before running anything."""
        session_id = seed_session(memory_store)
        changes = seed_changes(memory_store, session_id, 120)
        executor = BatchExecutor(fake_bitrix, memory_store, batch_size=50)

        batches = executor.create_batches(session_id, changes)

        stored = memory_store.list_batches(session_id)
        assert [b.batch_number for b in stored] == [1, 2, 3]
        assert [len(b.change_ids) for b in stored] == [50, 50, 20]
        assert all(b.status == BatchStatus.PENDING for b in stored)
        assert batches[0].change_ids == [c.id for c in changes[:50]]
        assert fake_bitrix.bulk_calls == []


class TestExecute:
    """Tests for BatchExecutor.execute()"""

    def test_all_success(self, memory_store, fake_bitrix):
        """Should complete every change and batch."""
        session_id = seed_session(memory_store)
        changes = seed_changes(memory_store, session_id, 75)
        executor = BatchExecutor(fake_bitrix, memory_store, batch_size=50)

        summary = executor.execute(session_id, changes)

        assert summary.total_batches == 2
        assert summary.completed_changes == 75
        assert summary.failed_changes == 0
        assert all(c.status == ChangeStatus.COMPLETED for c in memory_store.list_changes(session_id))
        batches = memory_store.list_batches(session_id)
        assert all(b.status == BatchStatus.COMPLETED for b in batches)
        assert all(b.processed_at is not None for b in batches)

    def test_one_bulk_call_per_kind_per_batch(self, memory_store, fake_bitrix):
        """Should group a batch by entity kind and call each kind once."""
        session_id = seed_session(memory_store)
        contacts = seed_changes(memory_store, session_id, 3, EntityKind.CONTACT)
        companies = seed_changes(memory_store, session_id, 2, EntityKind.COMPANY, start=10)
        executor = BatchExecutor(fake_bitrix, memory_store)

        executor.execute(session_id, contacts + companies)

        kinds = [call[0] for call in fake_bitrix.bulk_calls]
        assert sorted(k.value for k in kinds) == ["company", "contact"]
        contact_call = next(c for c in fake_bitrix.bulk_calls if c[0] == EntityKind.CONTACT)
        assert contact_call[1][0] == ("1000", {"NAME": "new-0"})

    def test_skips_kind_with_no_entries(self, memory_store, fake_bitrix):
        """Should not call the bulk endpoint for an absent kind."""
        session_id = seed_session(memory_store)
        changes = seed_changes(memory_store, session_id, 4, EntityKind.COMPANY)
        executor = BatchExecutor(fake_bitrix, memory_store)

        executor.execute(session_id, changes)

        assert [c[0] for c in fake_bitrix.bulk_calls] == [EntityKind.COMPANY]

    def test_kind_failure_marks_only_that_group(self, memory_store, fake_bitrix):
        """Should error every change of the failing kind and complete the rest."""
        session_id = seed_session(memory_store)
        contacts = seed_changes(memory_store, session_id, 3, EntityKind.CONTACT)
        companies = seed_changes(memory_store, session_id, 2, EntityKind.COMPANY, start=10)
        fake_bitrix.fail_bulk_for.add(EntityKind.COMPANY)
        executor = BatchExecutor(fake_bitrix, memory_store)

        summary = executor.execute(session_id, contacts + companies)

        by_id = {c.id: c for c in memory_store.list_changes(session_id)}
        assert all(by_id[c.id].status == ChangeStatus.COMPLETED for c in contacts)
        assert all(by_id[c.id].status == ChangeStatus.ERROR for c in companies)
        assert all("company" in by_id[c.id].error_message for c in companies)
        assert summary.failed_changes == 2
        assert summary.completed_changes == 3

        batch = memory_store.list_batches(session_id)[0]
        assert batch.status == BatchStatus.FAILED
        assert batch.errors == [{
            "entity_kind": "company",
            "message": "batch for company failed",
            "count": 2,
        }]

    def test_continues_after_failed_batch(self, memory_store, fake_bitrix):
        """Should attempt every batch even when earlier ones fail."""
        session_id = seed_session(memory_store)
        changes = seed_changes(memory_store, session_id, 120)
        fake_bitrix.fail_bulk_for.add(EntityKind.CONTACT)
        executor = BatchExecutor(fake_bitrix, memory_store, batch_size=50)

        summary = executor.execute(session_id, changes)

        assert len(fake_bitrix.bulk_calls) == 3
        assert summary.failed_batches == 3
        assert all(c.status == ChangeStatus.ERROR for c in memory_store.list_changes(session_id))

    def test_batches_run_in_order(self, memory_store, fake_bitrix):
        """Should send batch slices in their original order."""
        session_id = seed_session(memory_store)
        changes = seed_changes(memory_store, session_id, 101)
        executor = BatchExecutor(fake_bitrix, memory_store, batch_size=50)

        executor.execute(session_id, changes)

        sent = [entity_id for _, updates in fake_bitrix.bulk_calls for entity_id, _ in updates]
        assert sent == [c.entity_id for c in changes]

    def test_change_without_kind_is_error(self, memory_store, fake_bitrix):
        """Should error a change that carries no entity kind."""
        session_id = seed_session(memory_store)
        changes = seed_changes(memory_store, session_id, 1)
        memory_store.update_change(session_id, changes[0].id, entity_kind=None)
        broken = memory_store.list_changes(session_id)
        executor = BatchExecutor(fake_bitrix, memory_store)

        executor.execute(session_id, broken)

        assert memory_store.list_changes(session_id)[0].status == ChangeStatus.ERROR
        assert fake_bitrix.bulk_calls == []

    def test_cancel_between_batches(self, memory_store, fake_bitrix):
        """Should stop before the next batch once the token is cancelled."""
        session_id = seed_session(memory_store)
        changes = seed_changes(memory_store, session_id, 100)
        token = CancellationToken()
        executor = BatchExecutor(fake_bitrix, memory_store, batch_size=50)

        original = fake_bitrix.bulk_update

        def cancel_after_first(kind, updates, domain=None):
            token.cancel()
            return original(kind, updates, domain=domain)

        fake_bitrix.bulk_update = cancel_after_first

        with pytest.raises(PipelineCancelledError):
            executor.execute(session_id, changes, token=token)

        statuses = [b.status for b in memory_store.list_batches(session_id)]
        assert statuses == [BatchStatus.COMPLETED, BatchStatus.PENDING]
