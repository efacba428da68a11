"""In-process implementation of the local store."""
import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from syncstore.errors import DuplicateSyncItemError, RecordConflictError
from syncstore.query import QueryParams
from syncstore.queue.models import SyncOperation, SyncQueueItem, SyncStatus
from syncstore.store import LocalStore


class MemoryStore(LocalStore):
    """Dict-backed store. Transactions snapshot state and restore it on error."""

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sync_items: Dict[int, SyncQueueItem] = {}
        self._next_item_id = 1

    @contextmanager
    def _transaction_scope(self, outermost: bool):
        with self._lock:
            if not outermost:
                yield
                return
            snapshot = (copy.deepcopy(self._records), copy.deepcopy(self._sync_items), self._next_item_id)
            try:
                yield
            except BaseException:
                self._records, self._sync_items, self._next_item_id = snapshot
                raise

    # Records

    def get(self, model_type: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(model_type, {}).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def query(self, model_type: str, params: Optional[QueryParams] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = [copy.deepcopy(r) for r in self._records.get(model_type, {}).values()]
        return (params or QueryParams()).apply(records)

    def upsert(self, model_type: str, record: Dict[str, Any]) -> None:
        record_id = record.get("id")
        if not record_id:
            raise ValueError(f"Cannot store {model_type} without an id")
        with self._lock:
            self._records.setdefault(model_type, {})[record_id] = copy.deepcopy(record)
            self._record_changed(model_type, record_id)

    def delete(self, model_type: str, record_id: str) -> bool:
        with self._lock:
            existed = self._records.get(model_type, {}).pop(record_id, None) is not None
            if existed:
                self._record_changed(model_type, record_id)
            return existed

    def truncate(self, model_type: str) -> int:
        with self._lock:
            removed = self._records.pop(model_type, {})
            for record_id in removed:
                self._record_changed(model_type, record_id)
            return len(removed)

    def replace_id(self, model_type: str, old_id: str, new_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            table = self._records.get(model_type, {})
            if old_id not in table:
                return None
            if new_id in table and new_id != old_id:
                raise RecordConflictError(f"{model_type} {new_id} already exists locally")
            record = table.pop(old_id)
            record["id"] = new_id
            table[new_id] = record
            self._record_changed(model_type, old_id)
            self._record_changed(model_type, new_id)
            return copy.deepcopy(record)

    def update_foreign_keys(self, model_type: str, field: str, old_value: str, new_value: str) -> List[str]:
        changed = []
        with self._lock:
            for record_id, record in self._records.get(model_type, {}).items():
                if record.get(field) == old_value:
                    record[field] = new_value
                    changed.append(record_id)
                    self._record_changed(model_type, record_id)
        return changed

    # Sync queue table

    def _check_unique(self, item: SyncQueueItem) -> None:
        for other in self._sync_items.values():
            if other.id == item.id:
                continue
            if item.idempotency_key and other.idempotency_key == item.idempotency_key:
                raise DuplicateSyncItemError(f"Idempotency key already queued: {item.idempotency_key}")
            if (item.status == SyncStatus.PENDING and other.status == SyncStatus.PENDING
                    and other.model_type == item.model_type
                    and other.model_id == item.model_id
                    and other.operation == item.operation):
                raise DuplicateSyncItemError(
                    f"Pending {item.operation.value} already queued for {item.model_type}:{item.model_id}"
                )

    def insert_sync_item(self, item: SyncQueueItem) -> SyncQueueItem:
        with self._lock:
            stored = copy.deepcopy(item)
            stored.id = None
            self._check_unique(stored)
            stored.id = self._next_item_id
            self._next_item_id += 1
            self._sync_items[stored.id] = stored
            return copy.deepcopy(stored)

    def update_sync_item(self, item: SyncQueueItem) -> None:
        with self._lock:
            if item.id not in self._sync_items:
                raise KeyError(f"Sync item {item.id} does not exist")
            self._check_unique(item)
            self._sync_items[item.id] = copy.deepcopy(item)

    def get_sync_item(self, item_id: int) -> Optional[SyncQueueItem]:
        with self._lock:
            item = self._sync_items.get(item_id)
            return copy.deepcopy(item) if item else None

    def find_pending_sync_item(self, model_type: str, model_id: str,
                               operation: SyncOperation) -> Optional[SyncQueueItem]:
        operation = SyncOperation(operation)
        with self._lock:
            for item in self._sync_items.values():
                if (item.status == SyncStatus.PENDING and item.model_type == model_type
                        and item.model_id == model_id and item.operation == operation):
                    return copy.deepcopy(item)
        return None

    def get_due_sync_items(self, now: datetime, include_deferred: bool = False) -> List[SyncQueueItem]:
        with self._lock:
            due = [
                copy.deepcopy(item) for item in self._sync_items.values()
                if item.status == SyncStatus.PENDING and (include_deferred or item.is_due(now))
            ]
        return sorted(due, key=lambda i: (i.created_at, i.id))

    def get_sync_items(self, model_type: Optional[str] = None, model_id: Optional[str] = None,
                       status: Optional[SyncStatus] = None) -> List[SyncQueueItem]:
        with self._lock:
            items = [
                copy.deepcopy(item) for item in self._sync_items.values()
                if (model_type is None or item.model_type == model_type)
                and (model_id is None or item.model_id == model_id)
                and (status is None or item.status == status)
            ]
        return sorted(items, key=lambda i: (i.created_at, i.id))

    def delete_sync_item(self, item_id: int) -> bool:
        with self._lock:
            return self._sync_items.pop(item_id, None) is not None

    def delete_sync_items(self, model_type: str, model_id: str,
                          operations: Optional[Iterable[SyncOperation]] = None) -> int:
        ops = {SyncOperation(o) for o in operations} if operations is not None else None
        with self._lock:
            doomed = [
                item.id for item in self._sync_items.values()
                if item.status == SyncStatus.PENDING and item.model_type == model_type
                and item.model_id == model_id and (ops is None or item.operation in ops)
            ]
            for item_id in doomed:
                del self._sync_items[item_id]
            return len(doomed)

    def clear_sync_queue(self) -> int:
        with self._lock:
            count = len(self._sync_items)
            self._sync_items.clear()
            return count
