"""Tests for syncstore.memory_store and the LocalStore transaction contract."""

from datetime import timedelta

import pytest

from syncstore.errors import DuplicateSyncItemError, RecordConflictError
from syncstore.query import FilterCondition, FilterOperator, Pagination, QueryParams, SortCondition, SortDirection
from syncstore.queue.models import SyncOperation, SyncQueueItem, SyncStatus, utcnow


def row(model_id="r1", operation=SyncOperation.CREATE, **kwargs):
    return SyncQueueItem(model_type="Todo", model_id=model_id, operation=operation, payload={"id": model_id}, **kwargs)


class TestRecords:
    """Record CRUD and queries."""

    def test_upsert_get_delete(self, store):
        store.upsert("Todo", {"id": "a", "title": "one"})
        assert store.get("Todo", "a") == {"id": "a", "title": "one"}

        store.upsert("Todo", {"id": "a", "title": "two"})
        assert store.get("Todo", "a")["title"] == "two"

        assert store.delete("Todo", "a") is True
        assert store.delete("Todo", "a") is False
        assert store.get("Todo", "a") is None

    def test_returned_records_are_copies(self, store):
        store.upsert("Todo", {"id": "a", "tags": ["x"]})
        store.get("Todo", "a")["tags"].append("y")
        assert store.get("Todo", "a")["tags"] == ["x"]

    def test_upsert_requires_id(self, store):
        with pytest.raises(ValueError):
            store.upsert("Todo", {"title": "no id"})

    def test_query_filter_sort_paginate(self, store):
        for i in range(6):
            store.upsert("Todo", {"id": f"t{i}", "rank": i, "user_id": "u1" if i % 2 else "u2"})

        params = QueryParams(
            filters=[FilterCondition("user_id", FilterOperator.EQUALS, "u1")],
            sorts=[SortCondition("rank", SortDirection.DESCENDING)],
            pagination=Pagination(limit=2, offset=1),
        )
        assert [r["id"] for r in store.query("Todo", params)] == ["t3", "t1"]

    def test_truncate_and_foreign_keys(self, store):
        store.upsert("Todo", {"id": "a", "user_id": "tmp"})
        store.upsert("Todo", {"id": "b", "user_id": "other"})

        assert store.update_foreign_keys("Todo", "user_id", "tmp", "srv") == ["a"]
        assert store.get("Todo", "a")["user_id"] == "srv"
        assert store.truncate("Todo") == 2
        assert store.query("Todo") == []

    def test_replace_id(self, store):
        store.upsert("Project", {"id": "tmp", "name": "p"})
        assert store.replace_id("Project", "tmp", "srv") == {"id": "srv", "name": "p"}
        assert store.get("Project", "tmp") is None
        assert store.replace_id("Project", "missing", "x") is None

    def test_replace_id_onto_taken_id(self, store):
        store.upsert("Project", {"id": "tmp", "name": "p"})
        store.upsert("Project", {"id": "srv", "name": "q"})
        with pytest.raises(RecordConflictError):
            store.replace_id("Project", "tmp", "srv")
        assert store.get("Project", "tmp") == {"id": "tmp", "name": "p"}
        assert store.get("Project", "srv") == {"id": "srv", "name": "q"}


class TestTransactions:
    """Atomicity and watcher delivery."""

    def test_rollback_on_error(self, store):
        store.upsert("Todo", {"id": "keep"})
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.upsert("Todo", {"id": "lost"})
                store.insert_sync_item(row("lost"))
                store.delete("Todo", "keep")
                raise RuntimeError("abort")

        assert store.get("Todo", "keep") is not None
        assert store.get("Todo", "lost") is None
        assert store.get_sync_items() == []

    def test_nested_transactions_join_outer(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                with store.transaction():
                    store.upsert("Todo", {"id": "inner"})
                raise RuntimeError("outer fails")
        assert store.get("Todo", "inner") is None

    def test_watchers_fire_after_commit_only(self, store):
        seen = []
        store.watch("Todo", lambda model_type, record_id: seen.append(record_id))

        with store.transaction():
            store.upsert("Todo", {"id": "a"})
            store.upsert("Todo", {"id": "a", "title": "again"})
            assert seen == []
        assert seen == ["a"]

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.upsert("Todo", {"id": "b"})
                raise RuntimeError("abort")
        assert seen == ["a"]

    def test_unwatch(self, store):
        seen = []
        unwatch = store.watch("Todo", lambda t, rid: seen.append(rid))
        unwatch()
        store.upsert("Todo", {"id": "a"})
        assert seen == []


class TestSyncItems:
    """Sync queue table primitives."""

    def test_insert_assigns_ids(self, store):
        first = store.insert_sync_item(row("a"))
        second = store.insert_sync_item(row("b"))
        assert first.id is not None and second.id == first.id + 1

    def test_one_pending_row_per_record_and_operation(self, store):
        store.insert_sync_item(row("a"))
        with pytest.raises(DuplicateSyncItemError):
            store.insert_sync_item(row("a"))
        store.insert_sync_item(row("a", SyncOperation.DELETE))

    def test_terminal_rows_do_not_block_new_pending(self, store):
        synced = store.insert_sync_item(row("a"))
        store.update_sync_item(synced.copy(status=SyncStatus.SYNCED))
        store.insert_sync_item(row("a"))
        assert len(store.get_sync_items(model_id="a")) == 2

    def test_idempotency_key_unique(self, store):
        store.insert_sync_item(row("a", idempotency_key="k"))
        with pytest.raises(DuplicateSyncItemError):
            store.insert_sync_item(row("b", idempotency_key="k"))

    def test_due_items(self, store):
        now = utcnow()
        ready = store.insert_sync_item(row("ready"))
        later = store.insert_sync_item(row("later", next_retry_at=now + timedelta(minutes=5)))
        past = store.insert_sync_item(row("past", next_retry_at=now - timedelta(seconds=1)))
        dead = store.insert_sync_item(row("dead"))
        store.update_sync_item(dead.copy(status=SyncStatus.DEAD))

        assert [i.id for i in store.get_due_sync_items(now)] == [ready.id, past.id]
        assert [i.id for i in store.get_due_sync_items(now, include_deferred=True)] == [ready.id, later.id, past.id]

    def test_delete_sync_items_by_operation(self, store):
        store.insert_sync_item(row("a", SyncOperation.CREATE))
        store.insert_sync_item(row("a", SyncOperation.DELETE))
        assert store.delete_sync_items("Todo", "a", [SyncOperation.CREATE]) == 1
        assert [i.operation for i in store.get_sync_items()] == [SyncOperation.DELETE]
        assert store.clear_sync_queue() == 1
        assert store.count_sync_items() == 0
