"""Per-model repository applying save and load policies."""
import uuid
from typing import TYPE_CHECKING, Any, Callable, Dict, Generic, List, Optional, Set, Tuple, Type, TypeVar

from syncstore.api_client import ApiAdapter
from syncstore.errors import ApiError, NotFoundError, RecordNotFoundError, is_absence
from syncstore.events import ChangeStream, ChangeType, RepositoryChange
from syncstore.logging_conf import logger
from syncstore.model import SyncModel
from syncstore.query import QueryParams
from syncstore.queue.models import NetworkTask, QueueType, SyncOperation, SyncQueueItem
from syncstore.settings import LoadPolicy, SavePolicy

if TYPE_CHECKING:
    from syncstore.engine import SyncEngine

M = TypeVar("M", bound=SyncModel)
Headers = Optional[Dict[str, str]]
Extra = Optional[Dict[str, Any]]


class Repository(Generic[M]):
    """Reads and writes one model type through the local store and remote API."""

    def __init__(self, engine: "SyncEngine", model_class: Type[M], api: ApiAdapter):
        self.engine = engine
        self.model_class = model_class
        self.model_type = model_class.model_type()
        self.api = api
        self.changes = ChangeStream(self.model_type)

    @property
    def store(self):
        return self.engine.store

    @property
    def config(self):
        return self.engine.config

    # Events

    def notify(self, change_type: ChangeType, record_id: Optional[str],
               record: Optional[Dict[str, Any]] = None, error: Optional[BaseException] = None) -> None:
        item = self.model_class.from_json(record) if record is not None else None
        self.changes.publish(RepositoryChange(change_type, self.model_type, record_id, item=item, error=error))

    def watch(self, callback: Callable[[Optional[M]], None], record_id: Optional[str] = None) -> Callable[[], None]:
        """Call `callback` with the current local value after each committed change.

        With record_id, only changes to that record are reported; the value is
        None once it has been deleted.
        """
        def on_change(model_type: str, changed_id: str):
            if record_id is None or changed_id == record_id:
                callback(self.find_one(changed_id, load_policy=LoadPolicy.LOCAL_ONLY))

        return self.store.watch(self.model_type, on_change)

    # Saves

    def save(self, item: M, save_policy: Optional[SavePolicy] = None, headers: Headers = None,
             extra: Extra = None, idempotency_key: Optional[str] = None) -> M:
        """Persist an item.

        local_first returns once the local write and its sync row are stored.
        remote_first returns the server's version, or raises its typed error.
        """
        policy = SavePolicy(save_policy or self.config.default_save_policy)
        if policy == SavePolicy.REMOTE_FIRST:
            return self._save_remote_first(item, headers, extra, idempotency_key)
        return self._save_local_first(item, headers, extra, idempotency_key)

    def _save_local_first(self, item: M, headers: Headers, extra: Extra, idempotency_key: Optional[str]) -> M:
        record = item.to_json()
        record_id = record["id"]

        with self.store.transaction():
            existed = self.store.get(self.model_type, record_id) is not None
            self.store.upsert(self.model_type, record)
            operation = SyncOperation.UPDATE if existed else SyncOperation.CREATE
            temporary_id = record_id if operation == SyncOperation.CREATE and self.model_class.server_generated_id else None
            row = self.engine.sync_queue.enqueue(
                self.model_type, record_id, operation, record,
                headers=headers, extra=extra, idempotency_key=idempotency_key,
                temporary_client_id=temporary_id,
            )

        self.notify(ChangeType.UPDATED if existed else ChangeType.CREATED, record_id, record=record)
        if self.engine.is_connected:
            self.engine.retry_executor.dispatch(row)
        return item

    def _save_remote_first(self, item: M, headers: Headers, extra: Extra, idempotency_key: Optional[str]) -> M:
        record = item.to_json()
        record_id = record["id"]
        existed = self.store.get(self.model_type, record_id) is not None
        operation = SyncOperation.UPDATE if existed else SyncOperation.CREATE

        def write():
            if operation == SyncOperation.CREATE:
                return self.api.create_one(record, headers=headers, extra=extra)
            try:
                return self.api.update_one(record, headers=headers, extra=extra)
            except NotFoundError:
                return self.api.create_one(record, headers=headers, extra=extra)

        task = NetworkTask(
            exec=write,
            idempotency_key=idempotency_key or f"{self.model_type}:{record_id}:{operation.value}",
            operation=operation,
            model_type=self.model_type,
            model_id=record_id,
        )
        try:
            response = self.engine.queue_manager.enqueue_task(task, QueueType.FOREGROUND)
        except Exception as e:
            logger.warning(f"Remote {operation.value} of {self.model_type}:{record_id} failed: {e}")
            self.notify(ChangeType.ERROR, record_id, error=e)
            raise

        server_record = {**record, **response} if isinstance(response, dict) else record
        server_id = str(server_record.get("id") or record_id)
        server_record["id"] = server_id
        renamed = server_id != record_id and self.model_class.server_generated_id
        negotiation = self.engine.id_negotiation
        rewired = []

        with self.store.transaction():
            # The server now holds this version; older unsent writes are obsolete
            self.store.delete_sync_items(self.model_type, record_id, [SyncOperation.CREATE, SyncOperation.UPDATE])
            if renamed:
                _, rewired = negotiation.rekey(self.model_type, record_id, server_id)
            elif server_id != record_id:
                self.store.delete(self.model_type, record_id)
            self.store.upsert(self.model_type, server_record)

        if renamed:
            if not existed:
                self.notify(ChangeType.CREATED, server_id, record=server_record)
            negotiation.publish(self.model_type, record_id, server_id, server_record if existed else None, rewired)
        else:
            self.notify(ChangeType.UPDATED if existed else ChangeType.CREATED, server_id, record=server_record)
        return self.model_class.from_json(server_record)

    # Reads

    def find_one(self, record_id: str, load_policy: Optional[LoadPolicy] = None, headers: Headers = None,
                 extra: Extra = None, fallback_to_local: Optional[bool] = None) -> Optional[M]:
        policy = LoadPolicy(load_policy or self.config.default_load_policy)

        if policy == LoadPolicy.LOCAL_ONLY:
            return self._local(record_id)

        if policy == LoadPolicy.LOCAL_THEN_REMOTE:
            local = self._local(record_id)
            if self.engine.is_connected:
                self.engine.retry_executor.run_in_background(self._refresh_quietly, self.refresh_one,
                                                             record_id, headers, extra)
            return local

        try:
            return self.refresh_one(record_id, headers, extra)
        except Exception as e:
            fallback = self.config.remote_first_load_fallback if fallback_to_local is None else fallback_to_local
            if not fallback:
                raise
            logger.warning(f"Remote load of {self.model_type}:{record_id} failed, using local copy: {e}")
            return self._local(record_id)

    def find_one_or_fail(self, record_id: str, load_policy: Optional[LoadPolicy] = None, headers: Headers = None,
                         extra: Extra = None, fallback_to_local: Optional[bool] = None) -> M:
        item = self.find_one(record_id, load_policy, headers, extra, fallback_to_local)
        if item is None:
            raise RecordNotFoundError(f"{self.model_type} {record_id} not found")
        return item

    def find_all(self, query: Optional[QueryParams] = None, load_policy: Optional[LoadPolicy] = None,
                 headers: Headers = None, extra: Extra = None,
                 fallback_to_local: Optional[bool] = None) -> List[M]:
        policy = LoadPolicy(load_policy or self.config.default_load_policy)

        if policy == LoadPolicy.LOCAL_ONLY:
            return self._local_all(query)

        if policy == LoadPolicy.LOCAL_THEN_REMOTE:
            local = self._local_all(query)
            if self.engine.is_connected:
                self.engine.retry_executor.run_in_background(self._refresh_quietly, self.refresh_all,
                                                             query, headers, extra)
            return local

        try:
            return self.refresh_all(query, headers, extra)
        except Exception as e:
            fallback = self.config.remote_first_load_fallback if fallback_to_local is None else fallback_to_local
            if not fallback:
                raise
            logger.warning(f"Remote load of {self.model_type} list failed, using local copies: {e}")
            return self._local_all(query)

    def refresh_one(self, record_id: str, headers: Headers = None, extra: Extra = None) -> Optional[M]:
        """Fetch one record through the load queue and reconcile it locally.

        Returns None, after purging the local copy, if the server no longer
        has the record. A local copy with unsent changes is kept and returned.
        """
        task = NetworkTask(
            exec=lambda: self.api.find_one(record_id, headers=headers, extra=extra),
            idempotency_key=f"{self.model_type}:{record_id}:read:{uuid.uuid4().hex}",
            operation=SyncOperation.READ,
            model_type=self.model_type,
            model_id=record_id,
        )
        try:
            data = self.engine.queue_manager.enqueue_task(task, QueueType.LOAD)
        except ApiError as e:
            if not is_absence(e):
                raise
            if self.has_pending_changes(record_id):
                logger.info(f"Server lost {self.model_type}:{record_id} but it has unsent changes; keeping it")
                return self._local(record_id)
            self._purge_local(record_id)
            return None
        return self._apply_fetched(data)

    def refresh_all(self, query: Optional[QueryParams] = None, headers: Headers = None,
                    extra: Extra = None) -> List[M]:
        task = NetworkTask(
            exec=lambda: self.api.find_all(query, headers=headers, extra=extra),
            idempotency_key=f"{self.model_type}:*:read:{uuid.uuid4().hex}",
            operation=SyncOperation.READ,
            model_type=self.model_type,
            model_id="*",
        )
        records = self.engine.queue_manager.enqueue_task(task, QueueType.LOAD)
        return [item for item in (self._apply_fetched(data) for data in records) if item is not None]

    def _refresh_quietly(self, refresh: Callable[..., Any], *args) -> None:
        try:
            refresh(*args)
        except Exception as e:
            logger.warning(f"Background refresh of {self.model_type} failed: {e}")

    def _apply_fetched(self, data: Dict[str, Any]) -> Optional[M]:
        """Store a fetched record unless local changes are waiting to be sent."""
        record_id = str(data.get("id")) if data and data.get("id") is not None else None
        if record_id is None:
            logger.warning(f"Ignoring {self.model_type} from server without an id")
            return None

        if self.has_pending_changes(record_id):
            logger.debug(f"Keeping local {self.model_type}:{record_id}, it has unsent changes")
            return self._local(record_id)

        with self.store.transaction():
            local = self.store.get(self.model_type, record_id)
            merged = {**(local or {}), **data, "id": record_id}
            changed = merged != local
            if changed:
                self.store.upsert(self.model_type, merged)

        if changed:
            self.notify(ChangeType.UPDATED if local is not None else ChangeType.CREATED, record_id, record=merged)
        return self.model_class.from_json(merged)

    def _purge_local(self, record_id: str) -> None:
        """Drop a local copy the server no longer has, with its cascade children."""
        removed: List[Tuple["Repository", str]] = []
        with self.store.transaction():
            self._delete_local_tree(record_id, removed, set())
        for repo, removed_id in removed:
            repo.notify(ChangeType.DELETED, removed_id)

    def _local(self, record_id: str) -> Optional[M]:
        record = self.store.get(self.model_type, record_id)
        return self.model_class.from_json(record) if record is not None else None

    def _local_all(self, query: Optional[QueryParams]) -> List[M]:
        return [self.model_class.from_json(r) for r in self.store.query(self.model_type, query)]

    # Deletes

    def delete(self, record_id: str, save_policy: Optional[SavePolicy] = None, headers: Headers = None,
               extra: Extra = None) -> None:
        """Delete a record and, first, every cascade child.

        local_first removes locally and queues the remote delete. remote_first
        deletes remotely first and raises on failure without touching local data.
        """
        policy = SavePolicy(save_policy or self.config.default_save_policy)
        if policy == SavePolicy.REMOTE_FIRST:
            self._delete_remote_first(record_id, headers, extra, set())
            return

        removed: List[Tuple["Repository", str]] = []
        rows: List[SyncQueueItem] = []
        with self.store.transaction():
            self._delete_local_first(record_id, headers, extra, removed, rows, set())

        for repo, removed_id in removed:
            repo.notify(ChangeType.DELETED, removed_id)
        if self.engine.is_connected:
            for row in rows:
                self.engine.retry_executor.dispatch(row)

    def _cascade_children(self, record_id: str) -> List[Tuple["Repository", str]]:
        children = []
        for child_type, relation in self.engine.registry.relations_to(self.model_type):
            if not relation.cascade_delete:
                continue
            child_repo = self.engine.registry.find_repository(child_type)
            if child_repo is None:
                continue
            for child in self.store.query(child_type, QueryParams.where(**{relation.field: record_id})):
                children.append((child_repo, child["id"]))
        return children

    def _delete_local_first(self, record_id: str, headers: Headers, extra: Extra,
                            removed: List[Tuple["Repository", str]], rows: List[SyncQueueItem],
                            visited: Set[Tuple[str, str]]) -> None:
        key = (self.model_type, record_id)
        if key in visited:
            return
        visited.add(key)

        for child_repo, child_id in self._cascade_children(record_id):
            child_repo._delete_local_first(child_id, headers, extra, removed, rows, visited)

        row = self.engine.sync_queue.enqueue_delete(self.model_type, record_id, headers=headers, extra=extra)
        if row is not None:
            rows.append(row)
        if self.store.delete(self.model_type, record_id):
            removed.append((self, record_id))

    def _delete_remote_first(self, record_id: str, headers: Headers, extra: Extra,
                             visited: Set[Tuple[str, str]]) -> None:
        key = (self.model_type, record_id)
        if key in visited:
            return
        visited.add(key)

        for child_repo, child_id in self._cascade_children(record_id):
            child_repo._delete_remote_first(child_id, headers, extra, visited)

        task = NetworkTask(
            exec=lambda: self.api.delete_one(record_id, headers=headers, extra=extra),
            idempotency_key=f"{self.model_type}:{record_id}:delete",
            operation=SyncOperation.DELETE,
            model_type=self.model_type,
            model_id=record_id,
        )
        try:
            self.engine.queue_manager.enqueue_task(task, QueueType.FOREGROUND)
        except Exception as e:
            if is_absence(e):
                logger.info(f"{self.model_type}:{record_id} already absent remotely")
            else:
                logger.warning(f"Remote delete of {self.model_type}:{record_id} failed: {e}")
                self.notify(ChangeType.ERROR, record_id, error=e)
                raise

        with self.store.transaction():
            self.store.delete_sync_items(self.model_type, record_id)
            existed = self.store.delete(self.model_type, record_id)
        if existed:
            self.notify(ChangeType.DELETED, record_id)

    def _delete_local_tree(self, record_id: str, removed: List[Tuple["Repository", str]],
                           visited: Set[Tuple[str, str]]) -> None:
        """Local-only cascade removal, used when the server already lost the record."""
        key = (self.model_type, record_id)
        if key in visited:
            return
        visited.add(key)

        for child_repo, child_id in self._cascade_children(record_id):
            child_repo._delete_local_tree(child_id, removed, visited)

        self.store.delete_sync_items(self.model_type, record_id)
        if self.store.delete(self.model_type, record_id):
            removed.append((self, record_id))

    # Housekeeping

    def truncate_local(self) -> int:
        """Remove every local record of this type. Sync rows are kept."""
        count = self.store.truncate(self.model_type)
        logger.info(f"Truncated local {self.model_type} ({count} records)")
        return count

    def pending_sync_items(self, record_id: str) -> List[SyncQueueItem]:
        return self.engine.sync_queue.pending_for(self.model_type, record_id)

    def has_pending_changes(self, record_id: str) -> bool:
        return bool(self.pending_sync_items(record_id))
