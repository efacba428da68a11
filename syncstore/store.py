"""Local store interface: records plus the durable sync queue table."""
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from syncstore.logging_conf import logger
from syncstore.query import QueryParams
from syncstore.queue.models import SyncOperation, SyncQueueItem, SyncStatus

RecordWatcher = Callable[[str, str], None]


class LocalStore(ABC):
    """Persistent local storage used by repositories and the retry executor.

    Records are JSON dicts keyed by (model_type, id). Writes made inside
    `transaction()` are atomic, and watchers are notified only after the
    outermost transaction commits.
    """

    def __init__(self):
        self._watchers: Dict[str, List[RecordWatcher]] = {}
        self._watch_lock = threading.Lock()
        self._local = threading.local()

    # Transactions

    @contextmanager
    def transaction(self):
        """Group writes atomically. Nested calls join the outer transaction."""
        depth = getattr(self._local, "depth", 0)
        outermost = depth == 0
        if outermost:
            self._local.pending = []
        self._local.depth = depth + 1
        committed = False
        try:
            with self._transaction_scope(outermost):
                yield self
            committed = True
        finally:
            self._local.depth = depth
            if outermost:
                pending = self._local.pending
                self._local.pending = None
                if committed:
                    for model_type, record_id in dict.fromkeys(pending):
                        self._notify(model_type, record_id)

    @abstractmethod
    def _transaction_scope(self, outermost: bool):
        """Context manager that commits on exit or rolls back on error."""

    # Watchers

    def watch(self, model_type: str, callback: RecordWatcher) -> Callable[[], None]:
        """Call `callback(model_type, record_id)` after each committed change."""
        with self._watch_lock:
            self._watchers.setdefault(model_type, []).append(callback)

        def unwatch():
            with self._watch_lock:
                watchers = self._watchers.get(model_type, [])
                if callback in watchers:
                    watchers.remove(callback)

        return unwatch

    def _record_changed(self, model_type: str, record_id: str) -> None:
        pending = getattr(self._local, "pending", None)
        if pending is not None:
            pending.append((model_type, record_id))
        else:
            self._notify(model_type, record_id)

    def _notify(self, model_type: str, record_id: str) -> None:
        with self._watch_lock:
            watchers = list(self._watchers.get(model_type, []))
        for callback in watchers:
            try:
                callback(model_type, record_id)
            except Exception as e:
                logger.error(f"Store watcher failed for {model_type}:{record_id}: {e}", exc_info=True)

    # Records

    @abstractmethod
    def get(self, model_type: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one record or None."""

    @abstractmethod
    def query(self, model_type: str, params: Optional[QueryParams] = None) -> List[Dict[str, Any]]:
        """Fetch records matching the query parameters."""

    @abstractmethod
    def upsert(self, model_type: str, record: Dict[str, Any]) -> None:
        """Insert or replace a record by its `id`."""

    @abstractmethod
    def delete(self, model_type: str, record_id: str) -> bool:
        """Remove a record. Returns True if it existed."""

    @abstractmethod
    def truncate(self, model_type: str) -> int:
        """Remove every record of a type. Returns the count removed."""

    @abstractmethod
    def replace_id(self, model_type: str, old_id: str, new_id: str) -> Optional[Dict[str, Any]]:
        """Re-key a record. Returns the re-keyed record, or None if absent.

        Raises RecordConflictError if new_id is already taken.
        """

    @abstractmethod
    def update_foreign_keys(self, model_type: str, field: str, old_value: str, new_value: str) -> List[str]:
        """Rewrite `field` from old_value to new_value. Returns ids of changed records."""

    # Sync queue table

    @abstractmethod
    def insert_sync_item(self, item: SyncQueueItem) -> SyncQueueItem:
        """Insert a row and return it with its assigned id.

        Raises:
            DuplicateSyncItemError: a pending row already exists for the
                same (model_type, model_id, operation), or the idempotency
                key is taken
        """

    @abstractmethod
    def update_sync_item(self, item: SyncQueueItem) -> None:
        """Persist every field of an existing row."""

    @abstractmethod
    def get_sync_item(self, item_id: int) -> Optional[SyncQueueItem]:
        """Fetch one row by id."""

    @abstractmethod
    def find_pending_sync_item(self, model_type: str, model_id: str,
                               operation: SyncOperation) -> Optional[SyncQueueItem]:
        """The pending row for a record and operation, if any."""

    @abstractmethod
    def get_due_sync_items(self, now: datetime, include_deferred: bool = False) -> List[SyncQueueItem]:
        """Pending rows ready at `now`, oldest first.

        With include_deferred, pending rows are returned regardless of
        next_retry_at.
        """

    @abstractmethod
    def get_sync_items(self, model_type: Optional[str] = None, model_id: Optional[str] = None,
                       status: Optional[SyncStatus] = None) -> List[SyncQueueItem]:
        """Rows matching every given filter, oldest first."""

    @abstractmethod
    def delete_sync_item(self, item_id: int) -> bool:
        """Remove one row."""

    @abstractmethod
    def delete_sync_items(self, model_type: str, model_id: str,
                          operations: Optional[Iterable[SyncOperation]] = None) -> int:
        """Remove pending rows for a record, optionally limited to some operations."""

    @abstractmethod
    def clear_sync_queue(self) -> int:
        """Remove every row."""

    def count_sync_items(self, status: Optional[SyncStatus] = SyncStatus.PENDING) -> int:
        return len(self.get_sync_items(status=status))

    def close(self) -> None:
        """Release resources held by the store."""
