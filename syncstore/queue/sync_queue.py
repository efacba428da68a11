"""Durable sync queue: the policy layer over the store's sync queue table."""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from syncstore.logging_conf import logger
from syncstore.queue.models import IdNegotiationStatus, SyncOperation, SyncQueueItem, SyncStatus, utcnow
from syncstore.store import LocalStore


def new_idempotency_key() -> str:
    return str(uuid.uuid4())


class SyncQueue:
    """Pending remote work, one row per record and operation."""

    def __init__(self, store: LocalStore):
        self.store = store

    def enqueue(self, model_type: str, model_id: str, operation: SyncOperation, payload: Dict[str, Any],
                headers: Optional[Dict[str, str]] = None, extra: Optional[Dict[str, Any]] = None,
                idempotency_key: Optional[str] = None,
                temporary_client_id: Optional[str] = None) -> SyncQueueItem:
        """Queue a create or update, merging into an existing pending write.

        A pending create absorbs later updates so the server sees a single
        create with the latest payload.
        """
        operation = SyncOperation(operation)
        key = idempotency_key or new_idempotency_key()

        with self.store.transaction():
            existing = (
                self.store.find_pending_sync_item(model_type, model_id, SyncOperation.CREATE)
                or self.store.find_pending_sync_item(model_type, model_id, SyncOperation.UPDATE)
            )
            if existing:
                merged = existing.copy(
                    payload=payload,
                    attempt_count=0,
                    last_error=None,
                    next_retry_at=None,
                    idempotency_key=key,
                    headers=headers if headers is not None else existing.headers,
                    extra=extra if extra is not None else existing.extra,
                )
                self.store.update_sync_item(merged)
                logger.debug(
                    f"Merged {operation.value} into pending {existing.operation.value} for {model_type}:{model_id}",
                    extra={"model_type": model_type, "model_id": model_id, "sync_item_id": existing.id}
                )
                return merged

            item = SyncQueueItem(
                model_type=model_type,
                model_id=model_id,
                operation=operation,
                payload=payload,
                idempotency_key=key,
                headers=headers,
                extra=extra,
                temporary_client_id=temporary_client_id,
                id_negotiation_status=(
                    IdNegotiationStatus.PENDING if temporary_client_id else IdNegotiationStatus.COMPLETE
                ),
            )
            item = self.store.insert_sync_item(item)

        logger.info(
            f"Queued {operation.value} for {model_type}:{model_id}",
            extra={"model_type": model_type, "model_id": model_id, "sync_item_id": item.id}
        )
        return item

    def enqueue_delete(self, model_type: str, model_id: str, headers: Optional[Dict[str, str]] = None,
                       extra: Optional[Dict[str, Any]] = None) -> Optional[SyncQueueItem]:
        """Queue a delete, collapsing it against pending writes for the record.

        Returns the delete row, or None when nothing has to reach the server.
        """
        with self.store.transaction():
            if self.store.find_pending_sync_item(model_type, model_id, SyncOperation.CREATE):
                # Never reached the server: drop the create and any follow-up writes
                removed = self.store.delete_sync_items(
                    model_type, model_id, [SyncOperation.CREATE, SyncOperation.UPDATE]
                )
                logger.info(
                    f"Dropped {removed} unsent writes for deleted {model_type}:{model_id}",
                    extra={"model_type": model_type, "model_id": model_id}
                )
                return None

            existing_delete = self.store.find_pending_sync_item(model_type, model_id, SyncOperation.DELETE)
            if existing_delete:
                return existing_delete

            self.store.delete_sync_items(model_type, model_id, [SyncOperation.UPDATE])
            item = self.store.insert_sync_item(SyncQueueItem(
                model_type=model_type,
                model_id=model_id,
                operation=SyncOperation.DELETE,
                payload={"id": model_id},
                idempotency_key=new_idempotency_key(),
                headers=headers,
                extra=extra,
            ))

        logger.info(
            f"Queued delete for {model_type}:{model_id}",
            extra={"model_type": model_type, "model_id": model_id, "sync_item_id": item.id}
        )
        return item

    def due_items(self, force: bool = False, now: Optional[datetime] = None) -> List[SyncQueueItem]:
        """Pending rows ready to send. `force` ignores backoff schedules."""
        return self.store.get_due_sync_items(now or utcnow(), include_deferred=force)

    def get(self, item_id: int) -> Optional[SyncQueueItem]:
        return self.store.get_sync_item(item_id)

    def mark_synced(self, item: SyncQueueItem, retain: bool = True) -> None:
        """Acknowledge a row the server accepted."""
        if not retain:
            self.store.delete_sync_item(item.id)
            return
        self.store.update_sync_item(item.copy(
            status=SyncStatus.SYNCED,
            next_retry_at=None,
            last_error=None,
            id_negotiation_status=(
                IdNegotiationStatus.COMPLETE
                if item.id_negotiation_status == IdNegotiationStatus.PENDING
                else item.id_negotiation_status
            ),
        ))

    def mark_failed(self, item: SyncQueueItem, error: str, next_retry_at: Optional[datetime],
                    dead: bool = False) -> SyncQueueItem:
        """Record a failed attempt and schedule the next one, or retire the row."""
        updated = item.copy(
            attempt_count=item.attempt_count + 1,
            last_error=error,
            next_retry_at=None if dead else next_retry_at,
            status=SyncStatus.DEAD if dead else SyncStatus.PENDING,
            id_negotiation_status=(
                IdNegotiationStatus.FAILED
                if dead and item.id_negotiation_status == IdNegotiationStatus.PENDING
                else item.id_negotiation_status
            ),
        )
        self.store.update_sync_item(updated)
        if dead:
            logger.warning(
                f"Sync item dead after {updated.attempt_count} attempts: "
                f"{item.operation.value} {item.model_type}:{item.model_id} - {error}",
                extra={"model_type": item.model_type, "model_id": item.model_id, "sync_item_id": item.id}
            )
        else:
            logger.info(
                f"Sync item failed; will retry at {next_retry_at}: "
                f"{item.operation.value} {item.model_type}:{item.model_id}",
                extra={"model_type": item.model_type, "model_id": item.model_id, "sync_item_id": item.id}
            )
        return updated

    def remove(self, item: SyncQueueItem) -> None:
        self.store.delete_sync_item(item.id)

    def requeue(self, item_id: int) -> Optional[SyncQueueItem]:
        """Return a dead row to pending with a fresh attempt budget."""
        item = self.store.get_sync_item(item_id)
        if item is None or item.status != SyncStatus.DEAD:
            return None
        revived = item.copy(
            status=SyncStatus.PENDING,
            attempt_count=0,
            next_retry_at=None,
            idempotency_key=new_idempotency_key(),
            id_negotiation_status=(
                IdNegotiationStatus.PENDING
                if item.id_negotiation_status == IdNegotiationStatus.FAILED
                else item.id_negotiation_status
            ),
        )
        self.store.update_sync_item(revived)
        logger.info(f"Requeued dead sync item {item_id}", extra={"sync_item_id": item_id})
        return revived

    def pending_for(self, model_type: str, model_id: str) -> List[SyncQueueItem]:
        return self.store.get_sync_items(model_type=model_type, model_id=model_id, status=SyncStatus.PENDING)

    def items(self, status: Optional[SyncStatus] = None) -> List[SyncQueueItem]:
        return self.store.get_sync_items(status=status)

    def size(self) -> int:
        """Number of pending rows."""
        return self.store.count_sync_items(SyncStatus.PENDING)

    def clear(self) -> int:
        return self.store.clear_sync_queue()
