"""Tests for the sync ledger.

Tests:
- Enqueue and oldest-first batch fetch
- Undeliverable rows are failed at fetch and never requeued
- Resolution state transitions (resolved, failed, retry)
- Retry cap: a pending entry never holds retry_count == max
- Retention cleanup never removes pending entries
- Maintenance: counts, list/requeue/purge failed, purge pending
- Sync metadata
"""

from datetime import datetime, timedelta, timezone

import pytest

from isbnscout.storage import SyncLedger
from isbnscout.types import EntityType, Operation, ResolutionState


def _backdate(ledger, entry_id, **columns):
    assignments = ", ".join(f"{name} = ?" for name in columns)
    with ledger._connect() as conn:
        conn.execute(
            f"UPDATE sync_ledger SET {assignments} WHERE id = ?", (*columns.values(), entry_id)
        )


def _insert_raw(ledger, entry_id, operation, entity_type, payload, state=0):
    with ledger._connect() as conn:
        conn.execute(
            """INSERT INTO sync_ledger
               (id, operation, entity_type, payload, enqueued_at, resolution_state)
               VALUES (?, ?, ?, ?, '2000-01-01T00:00:00+00:00', ?)""",
            (entry_id, operation, entity_type, payload, state),
        )


class TestEnqueue:
    def test_enqueue_creates_pending_entry(self, ledger):
        entry = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"isbn": "123", "user_id": "U1"})

        stored = ledger.get(entry.id)
        assert stored is not None
        assert stored.resolution_state == ResolutionState.PENDING
        assert stored.retry_count == 0
        assert stored.last_error is None
        assert stored.entity_type == EntityType.BOOK
        assert stored.operation == Operation.CREATE
        assert stored.decoded_payload() == {"isbn": "123", "user_id": "U1"}
        assert stored.enqueued_at.tzinfo is not None

    def test_enqueue_accepts_string_names(self, ledger):
        entry = ledger.enqueue("listing", "update", {"id": "L1", "updates": {"status": "sold"}})
        assert entry.entity_type == EntityType.LISTING
        assert entry.operation == Operation.UPDATE

    def test_enqueue_rejects_unknown_operation(self, ledger):
        with pytest.raises(ValueError):
            ledger.enqueue(EntityType.BOOK, "delete", {"id": "B1"})

    def test_payload_with_datetime_is_serialized(self, ledger):
        when = datetime(2024, 5, 1, tzinfo=timezone.utc)
        entry = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"scanned_at": when})
        assert ledger.get(entry.id).decoded_payload()["scanned_at"].startswith("2024-05-01")


class TestFetchPendingBatch:
    def test_oldest_first(self, ledger):
        first = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"isbn": "1"})
        second = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"isbn": "2"})
        third = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"isbn": "3"})
        # Make the last one the oldest
        _backdate(ledger, third.id, enqueued_at="2000-01-01T00:00:00+00:00")

        batch = ledger.fetch_pending_batch(10)
        assert [e.id for e in batch] == [third.id, first.id, second.id]

    def test_same_timestamp_keeps_insertion_order(self, ledger):
        ids = [ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": i}).id for i in range(5)]
        for entry_id in ids:
            _backdate(ledger, entry_id, enqueued_at="2024-01-01T00:00:00+00:00")

        assert [e.id for e in ledger.fetch_pending_batch(10)] == ids

    def test_limit(self, ledger):
        for i in range(7):
            ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": i})
        assert len(ledger.fetch_pending_batch(5)) == 5

    def test_excludes_terminal_entries(self, ledger):
        done = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 1})
        dead = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 2})
        live = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 3})
        ledger.mark_resolved(done.id)
        ledger.mark_failed(dead.id, "boom")

        assert [e.id for e in ledger.fetch_pending_batch(10)] == [live.id]

    def test_fails_unsupported_rows(self, ledger):
        good = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 1})
        _insert_raw(ledger, "bad", "delete", "inventoryItem", '{"id": "I1"}')

        assert [e.id for e in ledger.fetch_pending_batch(10)] == [good.id]
        bad = ledger.get("bad")
        assert bad.resolution_state == ResolutionState.FAILED
        assert bad.last_error.startswith("Undeliverable entry")
        assert bad.entity_type == "inventoryItem"
        assert bad.operation == "delete"
        assert not bad.is_known

    def test_unsupported_rows_do_not_starve_the_batch(self, ledger):
        for i in range(50):
            _insert_raw(ledger, f"legacy-{i}", "delete", "inventoryItem", '{"id": "I1"}')
        good = ledger.enqueue(EntityType.USER, Operation.CREATE, {"id": "U1"})

        assert [e.id for e in ledger.fetch_pending_batch(10)] == [good.id]
        assert ledger.counts()["failed"] == 50
        assert ledger.pending_count() == 1


class TestTransitions:
    def test_mark_resolved(self, ledger):
        entry = ledger.enqueue(EntityType.USER, Operation.CREATE, {"id": "U1"})
        assert ledger.mark_resolved(entry.id) is True

        stored = ledger.get(entry.id)
        assert stored.resolution_state == ResolutionState.RESOLVED
        assert stored.resolved_at is not None

    def test_mark_failed_records_error(self, ledger):
        entry = ledger.enqueue(EntityType.USER, Operation.CREATE, {"id": "U1"})
        assert ledger.mark_failed(entry.id, "duplicate key") is True

        stored = ledger.get(entry.id)
        assert stored.resolution_state == ResolutionState.FAILED
        assert stored.last_error == "duplicate key"

    def test_terminal_entries_are_frozen(self, ledger):
        entry = ledger.enqueue(EntityType.USER, Operation.CREATE, {"id": "U1"})
        ledger.mark_failed(entry.id, "nope")

        assert ledger.mark_resolved(entry.id) is False
        assert ledger.increment_retry(entry.id, "again") is None
        assert ledger.get(entry.id).resolution_state == ResolutionState.FAILED

    def test_error_text_is_truncated(self, ledger):
        entry = ledger.enqueue(EntityType.USER, Operation.CREATE, {"id": "U1"})
        ledger.mark_failed(entry.id, "x" * 5000)
        assert len(ledger.get(entry.id).last_error) == 500

    def test_increment_retry_keeps_pending_below_max(self, ledger):
        entry = ledger.enqueue(EntityType.BOOK, Operation.UPDATE, {"id": "B1", "updates": {}})

        for attempt in range(1, 5):
            updated = ledger.increment_retry(entry.id, f"timeout {attempt}")
            assert updated.resolution_state == ResolutionState.PENDING
            assert updated.retry_count == attempt
            assert updated.last_attempt_at is not None

        updated = ledger.increment_retry(entry.id, "timeout 5")
        assert updated.resolution_state == ResolutionState.FAILED
        assert updated.retry_count == 5
        assert updated.last_error == "timeout 5"

    def test_pending_retry_count_never_reaches_max(self, local):
        ledger = SyncLedger(local, max_retries=3)
        entries = [ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": i}) for i in range(3)]
        for _ in range(10):
            for entry in entries:
                ledger.increment_retry(entry.id, "flaky")

        with ledger._connect() as conn:
            rows = conn.execute(
                "SELECT retry_count FROM sync_ledger WHERE resolution_state = 0"
            ).fetchall()
        assert all(row["retry_count"] < 3 for row in rows)
        assert ledger.counts()["failed"] == 3


class TestCleanup:
    def test_removes_old_terminal_entries(self, ledger):
        old_resolved = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 1})
        recent_resolved = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 2})
        old_failed = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 3})
        recent_failed = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 4})
        for entry in (old_resolved, recent_resolved):
            ledger.mark_resolved(entry.id)
        for entry in (old_failed, recent_failed):
            ledger.mark_failed(entry.id, "bad")

        now = datetime.now(timezone.utc)
        _backdate(ledger, old_resolved.id, resolved_at=(now - timedelta(days=8)).isoformat())
        _backdate(ledger, recent_failed.id, resolved_at=(now - timedelta(days=8)).isoformat())
        _backdate(ledger, old_failed.id, resolved_at=(now - timedelta(days=31)).isoformat())

        assert ledger.cleanup() == 2
        assert ledger.get(old_resolved.id) is None
        assert ledger.get(old_failed.id) is None
        assert ledger.get(recent_resolved.id) is not None
        assert ledger.get(recent_failed.id) is not None

    def test_never_removes_pending_entries(self, ledger):
        ancient = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 1})
        _backdate(ledger, ancient.id, enqueued_at="1999-01-01T00:00:00+00:00", retry_count=4)

        far_future = datetime.now(timezone.utc) + timedelta(days=3650)
        assert ledger.cleanup(now=far_future) == 0
        assert ledger.get(ancient.id).is_pending

    def test_retention_is_configurable(self, local):
        ledger = SyncLedger(local, resolved_retention_days=1)
        entry = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 1})
        ledger.mark_resolved(entry.id)

        assert ledger.cleanup(now=datetime.now(timezone.utc) + timedelta(hours=12)) == 0
        assert ledger.cleanup(now=datetime.now(timezone.utc) + timedelta(days=2)) == 1


class TestMaintenance:
    def test_counts(self, ledger):
        a = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 1})
        ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 2})
        ledger.enqueue(EntityType.LISTING, Operation.CREATE, {"n": 3})
        b = ledger.enqueue(EntityType.USER, Operation.CREATE, {"n": 4})
        ledger.mark_resolved(a.id)
        ledger.mark_failed(b.id, "bad")

        counts = ledger.counts()
        assert counts["pending"] == 2
        assert counts["resolved"] == 1
        assert counts["failed"] == 1
        assert counts["total"] == 4
        assert counts["pending_by_entity"] == {"book": 1, "listing": 1}
        assert ledger.pending_count() == 2

    def test_list_and_requeue_failed(self, ledger):
        first = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 1})
        second = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 2})
        ledger.mark_failed(first.id, "bad one")
        for _ in range(5):
            ledger.increment_retry(second.id, "timeout")

        failed = ledger.list_failed()
        assert {e.id for e in failed} == {first.id, second.id}

        assert ledger.requeue_failed([second.id]) == 1
        requeued = ledger.get(second.id)
        assert requeued.is_pending
        assert requeued.retry_count == 0
        assert requeued.last_error is None
        assert ledger.get(first.id).resolution_state == ResolutionState.FAILED

        assert ledger.requeue_failed() == 1
        assert ledger.pending_count() == 2

    def test_requeue_skips_unsupported_entries(self, ledger):
        for i in range(3):
            _insert_raw(ledger, f"legacy-{i}", "delete", "inventoryItem", "{}", state=-1)
        book = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 1})
        ledger.mark_failed(book.id, "timeout")

        assert ledger.requeue_failed() == 1
        assert ledger.get(book.id).is_pending
        assert ledger.get("legacy-0").resolution_state == ResolutionState.FAILED
        assert ledger.requeue_failed(["legacy-1"]) == 0
        assert ledger.pending_count() == 1

    def test_list_failed_includes_unsupported_entries(self, ledger):
        for i in range(3):
            _insert_raw(ledger, f"legacy-{i}", "delete", "inventoryItem", "{}", state=-1)
        _insert_raw(ledger, "garbled", "update", "listing", "not json", state=-1)

        failed = ledger.list_failed()
        assert {e.id for e in failed} == {"legacy-0", "legacy-1", "legacy-2", "garbled"}
        assert len(failed) == ledger.counts()["failed"]
        legacy = next(e for e in failed if e.id == "legacy-0")
        assert (legacy.entity_name, legacy.operation_name) == ("inventoryItem", "delete")
        garbled = next(e for e in failed if e.id == "garbled")
        assert garbled.entity_type == EntityType.LISTING
        assert garbled.payload == "not json"

    def test_purge_failed(self, ledger):
        dead = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 1})
        live = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 2})
        ledger.mark_failed(dead.id, "bad")

        assert ledger.purge_failed() == 1
        assert ledger.get(dead.id) is None
        assert ledger.get(live.id) is not None

    def test_purge_pending_by_entity(self, ledger):
        ledger.enqueue(EntityType.INVENTORY_ITEM, Operation.CREATE, {"n": 1})
        ledger.enqueue(EntityType.INVENTORY_ITEM, Operation.CREATE, {"n": 2})
        book = ledger.enqueue(EntityType.BOOK, Operation.CREATE, {"n": 3})

        assert ledger.purge_pending(EntityType.INVENTORY_ITEM) == 2
        assert [e.id for e in ledger.fetch_pending_batch(10)] == [book.id]


class TestSyncMeta:
    def test_last_sync_time_roundtrip(self, ledger):
        assert ledger.get_last_sync_time() is None
        when = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        ledger.set_last_sync_time(when)
        assert ledger.get_last_sync_time() == when

    def test_meta_persists_across_instances(self, local):
        SyncLedger(local).set_meta("cursor", "abc")
        assert SyncLedger(local).get_meta("cursor") == "abc"
