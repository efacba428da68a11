"""Replaces temporary client ids with server-assigned ids."""
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from syncstore.events import ChangeType
from syncstore.logging_conf import logger
from syncstore.queue.models import IdNegotiationStatus, SyncStatus
from syncstore.store import LocalStore

if TYPE_CHECKING:
    from syncstore.registry import ModelRegistry

Rewired = List[Tuple[str, str]]


class IdNegotiationService:
    """Re-keys a record after the server assigned it a permanent id.

    The record, every foreign key pointing at it, and every pending sync row
    mentioning it are rewritten in one store transaction.
    """

    def __init__(self, store: LocalStore, registry: "ModelRegistry"):
        self.store = store
        self.registry = registry

    def negotiate(self, model_type: str, temporary_id: str, server_id: str) -> Dict[str, List[str]]:
        """Swap temporary_id for server_id everywhere.

        Returns the ids of rewired child records grouped by model type.

        Raises:
            Exception: whatever the store raised; the record's rows are
                marked failed and the temporary record stays addressable
        """
        try:
            with self.store.transaction():
                record, rewired = self.rekey(model_type, temporary_id, server_id)
        except Exception as e:
            logger.error(
                f"ID negotiation failed for {model_type}:{temporary_id} -> {server_id}: {e}",
                exc_info=True,
                extra={"model_type": model_type, "model_id": temporary_id}
            )
            self._mark_failed(model_type, temporary_id, str(e))
            raise

        return self.publish(model_type, temporary_id, server_id, record, rewired)

    def rekey(self, model_type: str, temporary_id: str, server_id: str) -> Tuple[Optional[Dict[str, Any]], Rewired]:
        """Rewrite local state from temporary_id to server_id.

        Must run inside a store transaction. If server_id is already held
        locally (fetched while the create was in flight), the two copies are
        merged with the temporary record's fields winning.
        """
        record = self._replace_record(model_type, temporary_id, server_id)

        rewired: Rewired = []
        for child_type, relation in self.registry.relations_to(model_type):
            changed = self.store.update_foreign_keys(child_type, relation.field, temporary_id, server_id)
            rewired.extend((child_type, child_id) for child_id in changed)

            for row in self.store.get_sync_items(model_type=child_type, status=SyncStatus.PENDING):
                if row.payload.get(relation.field) == temporary_id:
                    payload = dict(row.payload)
                    payload[relation.field] = server_id
                    self.store.update_sync_item(row.copy(payload=payload))

        for row in self.store.get_sync_items(model_type=model_type, model_id=temporary_id):
            if row.status == SyncStatus.PENDING:
                clash = self.store.find_pending_sync_item(model_type, server_id, row.operation)
                if clash is not None:
                    # The temporary row carries the newer local state
                    self.store.delete_sync_item(clash.id)
            payload = dict(row.payload)
            if "id" in payload:
                payload["id"] = server_id
            self.store.update_sync_item(row.copy(
                model_id=server_id,
                payload=payload,
                id_negotiation_status=IdNegotiationStatus.COMPLETE,
            ))

        logger.info(
            f"Negotiated id for {model_type}: {temporary_id} -> {server_id} ({len(rewired)} children rewired)",
            extra={"model_type": model_type, "model_id": server_id}
        )
        return record, rewired

    def _replace_record(self, model_type: str, temporary_id: str, server_id: str) -> Optional[Dict[str, Any]]:
        existing = self.store.get(model_type, server_id)
        if existing is None:
            return self.store.replace_id(model_type, temporary_id, server_id)

        temporary = self.store.get(model_type, temporary_id)
        if temporary is None:
            return existing

        logger.warning(
            f"Server id {server_id} for {model_type}:{temporary_id} already exists locally; merging",
            extra={"model_type": model_type, "model_id": server_id}
        )
        merged = {**existing, **temporary, "id": server_id}
        self.store.delete(model_type, temporary_id)
        self.store.upsert(model_type, merged)
        return merged

    def publish(self, model_type: str, temporary_id: str, server_id: str,
                record: Optional[Dict[str, Any]], rewired: Rewired) -> Dict[str, List[str]]:
        """Announce a committed re-key. Call after the transaction commits."""
        repo = self.registry.find_repository(model_type)
        if repo is not None and record is not None:
            repo.notify(ChangeType.DELETED, temporary_id)
            repo.notify(ChangeType.UPDATED, server_id, record=record)

        grouped: Dict[str, List[str]] = {}
        for child_type, child_id in rewired:
            grouped.setdefault(child_type, []).append(child_id)
            child_repo = self.registry.find_repository(child_type)
            if child_repo is not None:
                child_repo.notify(ChangeType.UPDATED, child_id, record=self.store.get(child_type, child_id))
        return grouped

    def _mark_failed(self, model_type: str, temporary_id: str, error: str) -> None:
        """The server accepted the create but the local swap failed: retire the row."""
        try:
            with self.store.transaction():
                for row in self.store.get_sync_items(model_type=model_type, model_id=temporary_id):
                    if row.id_negotiation_status != IdNegotiationStatus.PENDING:
                        continue
                    self.store.update_sync_item(row.copy(
                        id_negotiation_status=IdNegotiationStatus.FAILED,
                        status=SyncStatus.DEAD,
                        last_error=f"ID negotiation failed: {error}",
                        next_retry_at=None,
                    ))
        except Exception as e:
            logger.error(f"Could not record ID negotiation failure for {model_type}:{temporary_id}: {e}")
