"""Retry executor: scans the sync queue and pushes due rows to the remote API."""
import random
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from syncstore.errors import (
    ApiError,
    CapacityTimeoutError,
    DuplicateTaskError,
    ModelNoLongerExistsError,
    NotFoundError,
    OfflineError,
    QueueCancelledError,
    RateLimitError,
    is_absence,
    is_permanent,
)
from syncstore.events import ChangeType
from syncstore.logging_conf import logger
from syncstore.queue.models import NetworkTask, QueueType, SyncOperation, SyncQueueItem, SyncStatus, utcnow
from syncstore.queue.request_queue import RequestQueueManager
from syncstore.queue.sync_queue import SyncQueue
from syncstore.settings import SyncConfig

if TYPE_CHECKING:
    from syncstore.dependency_resolver import DependencyResolver
    from syncstore.id_negotiation import IdNegotiationService
    from syncstore.registry import ModelRegistry
    from syncstore.repository import Repository

_SKIPPED = object()


class RetryExecutor:
    """Periodically drains due sync queue rows through the background queue.

    Rows are sent parents first (by dependency level), then oldest first.
    Failures back off exponentially until the attempt budget is spent.
    """

    def __init__(self, config: SyncConfig, sync_queue: SyncQueue, queue_manager: RequestQueueManager,
                 resolver: "DependencyResolver", registry: "ModelRegistry",
                 id_negotiation: "IdNegotiationService", is_online: Callable[[], bool] = lambda: True,
                 rng: Optional[random.Random] = None):
        self.config = config
        self.sync_queue = sync_queue
        self.store = sync_queue.store
        self.queue_manager = queue_manager
        self.resolver = resolver
        self.registry = registry
        self.id_negotiation = id_negotiation
        self.is_online = is_online
        self.rng = rng or random.Random()

        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._wake = threading.Event()
        self._background_mode = False
        self.poll_interval = config.foreground_poll_interval
        self.dispatcher = ThreadPoolExecutor(max_workers=config.dispatcher_workers, thread_name_prefix="sync-dispatch")

    # Lifecycle

    def start(self):
        """Start the executor loop in a background thread."""
        if self.running:
            logger.warning("Retry executor is already running")
            return

        self.running = True
        self._wake.clear()
        self.thread = threading.Thread(target=self._run, name="retry-executor", daemon=True)
        self.thread.start()
        logger.info(f"Retry executor started (interval: {self.poll_interval}s)")

    def stop(self):
        """Stop the executor loop."""
        if not self.running:
            return

        self.running = False
        self._wake.set()
        if self.thread:
            self.thread.join(timeout=10)
        self.thread = None
        logger.info("Retry executor stopped")

    def shutdown(self):
        self.stop()
        self.dispatcher.shutdown(wait=False, cancel_futures=True)

    def _run(self):
        """Main executor loop."""
        logger.info("Retry executor thread started")

        while self.running:
            try:
                self.process_due_tasks_now()
            except Exception as e:
                logger.error(f"Retry executor error: {e}", exc_info=True)

            self._wake.wait(self.poll_interval)
            self._wake.clear()

        logger.info("Retry executor thread stopped")

    @property
    def is_running(self) -> bool:
        return self.running

    @property
    def is_background_mode(self) -> bool:
        return self._background_mode

    def enable_foreground_mode(self, force_sync: bool = False) -> int:
        """Poll at the foreground cadence. With force_sync, run a full pass now."""
        self._background_mode = False
        self.poll_interval = self.config.foreground_poll_interval
        self._wake.set()
        logger.info(f"Retry executor in foreground mode (interval: {self.poll_interval}s)")
        if force_sync:
            return self.process_due_tasks_now(force_sync=True)
        return 0

    def enable_background_mode(self) -> None:
        self._background_mode = True
        self.poll_interval = self.config.background_poll_interval
        self._wake.set()
        logger.info(f"Retry executor in background mode (interval: {self.poll_interval}s)")

    # Scheduling

    def compute_delay(self, attempt_count: int, error: Optional[BaseException] = None) -> float:
        """Seconds until the next attempt after `attempt_count` failures."""
        c = self.config
        try:
            raw = c.initial_retry_delay * (c.backoff_multiplier ** attempt_count)
        except OverflowError:
            raw = c.max_retry_delay
        capped = min(c.max_retry_delay, raw)
        spread = capped * c.jitter_percent
        delay = max(c.min_retry_delay, capped + self.rng.uniform(-spread, spread))

        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, error.retry_after)
        return delay

    # Passes

    def process_due_tasks_now(self, force_sync: bool = False) -> int:
        """Run one pass over due rows. Returns the number of rows attempted.

        Safe to call concurrently with itself and with immediate dispatches:
        a row already in flight is skipped.
        """
        if not self.is_online():
            logger.debug("Offline, skipping sync pass")
            return 0

        items = self.sync_queue.due_items(force=force_sync)
        if not items:
            return 0

        ordered = self.resolver.sort_by_dependency_order(items, key=lambda i: i.model_type)
        logger.info(f"Sync pass over {len(ordered)} due items (force={force_sync})")

        failed_types: Set[str] = set()
        attempted = 0
        for item in ordered:
            blocked_by = [t for t in failed_types if self.resolver.depends_on(item.model_type, t)]
            if blocked_by:
                logger.debug(
                    f"Deferring {item.task_key}: dependency {blocked_by[0]} failed in this pass",
                    extra={"sync_item_id": item.id}
                )
                continue

            try:
                ok = self.sync_item(item)
            except DuplicateTaskError:
                logger.debug(f"Skipping {item.task_key}: already in flight", extra={"sync_item_id": item.id})
                continue
            except (CapacityTimeoutError, QueueCancelledError, OfflineError) as e:
                logger.info(f"Ending sync pass early: {e}")
                break

            if ok is None:
                continue
            attempted += 1
            if not ok:
                failed_types.add(item.model_type)

        if attempted:
            logger.info(f"Sync pass finished: {attempted} attempted, {len(failed_types)} model types failed")
        return attempted

    def sync_item(self, item: SyncQueueItem) -> Optional[bool]:
        """Send one row through the background queue.

        Returns True on success, False on failure, None if the row was not
        attempted. Queue errors (duplicate, capacity, cancellation) propagate.
        """
        repo = self.registry.find_repository(item.model_type)
        if repo is None:
            logger.warning(f"No repository for {item.model_type}; leaving {item.task_key} queued")
            return None

        sent: List[SyncQueueItem] = [item]

        def send():
            return self._execute(repo, item.id, sent)

        task = NetworkTask(
            exec=send,
            idempotency_key=item.task_key,
            operation=item.operation,
            model_type=item.model_type,
            model_id=item.model_id,
            task_name=f"sync-{item.id}",
        )

        try:
            response = self.queue_manager.enqueue_task(task, QueueType.BACKGROUND)
        except (DuplicateTaskError, CapacityTimeoutError, QueueCancelledError, OfflineError):
            raise
        except ModelNoLongerExistsError as e:
            logger.info(f"Dropping {item.task_key}: {e}", extra={"sync_item_id": item.id})
            self.sync_queue.remove(sent[0])
            return True
        except Exception as e:
            self._handle_failure(repo, sent[0], e)
            return False

        if response is _SKIPPED:
            return None
        try:
            self._handle_success(repo, sent[0], response)
        except Exception as e:
            logger.error(f"Failed to apply server response for {item.task_key}: {e}", exc_info=True)
            return False
        return True

    def _execute(self, repo: "Repository", item_id: int, sent: List[SyncQueueItem]) -> Any:
        """Runs on a background queue thread."""
        item = self.sync_queue.get(item_id)
        if item is None or item.status != SyncStatus.PENDING:
            return _SKIPPED
        sent[0] = item

        api = repo.api
        if item.operation in (SyncOperation.CREATE, SyncOperation.UPDATE):
            if self.store.get(item.model_type, item.model_id) is None:
                raise ModelNoLongerExistsError(f"{item.model_type}:{item.model_id} no longer exists locally")

        if item.operation == SyncOperation.CREATE:
            return api.create_one(item.payload, headers=item.headers, extra=item.extra)

        if item.operation == SyncOperation.UPDATE:
            try:
                return api.update_one(item.payload, headers=item.headers, extra=item.extra)
            except NotFoundError:
                logger.info(f"Update of {item.model_type}:{item.model_id} not found remotely, creating instead")
                return api.create_one(item.payload, headers=item.headers, extra=item.extra)

        if item.operation == SyncOperation.DELETE:
            try:
                api.delete_one(item.model_id, headers=item.headers, extra=item.extra)
            except ApiError as e:
                if not is_absence(e):
                    raise
                logger.info(f"{item.model_type}:{item.model_id} already absent remotely")
            return None

        raise ValueError(f"Cannot sync operation {item.operation.value}")

    def _handle_success(self, repo: "Repository", item: SyncQueueItem, response: Any) -> None:
        model_id = item.model_id
        server_id = response.get("id") if isinstance(response, dict) else None

        # An update that fell back to create also gets a fresh server id
        if (item.operation in (SyncOperation.CREATE, SyncOperation.UPDATE) and repo.model_class.server_generated_id
                and server_id and str(server_id) != item.model_id):
            self.id_negotiation.negotiate(item.model_type, item.model_id, str(server_id))
            model_id = str(server_id)

        persisted: Optional[Dict[str, Any]] = None
        with self.store.transaction():
            current = self.sync_queue.get(item.id)

            if current is None:
                # Row dropped while in flight: a local delete collapsed against our create
                if item.operation == SyncOperation.CREATE and self.store.get(item.model_type, model_id) is None:
                    self.sync_queue.enqueue_delete(item.model_type, model_id, headers=item.headers, extra=item.extra)
                return

            replaced = current.idempotency_key != item.idempotency_key
            if replaced:
                # A newer local write was merged in while this one was in flight
                if current.operation == SyncOperation.CREATE and current.status == SyncStatus.PENDING:
                    self.store.update_sync_item(current.copy(
                        operation=SyncOperation.UPDATE, attempt_count=0, next_retry_at=None
                    ))
            else:
                self.sync_queue.mark_synced(current, retain=self.config.retain_synced_items)

            if not replaced and isinstance(response, dict) and item.operation != SyncOperation.DELETE:
                local = self.store.get(item.model_type, model_id)
                if local is not None:
                    persisted = {**local, **response, "id": model_id}
                    self.store.upsert(item.model_type, persisted)

        logger.info(
            f"Synced {item.operation.value} {item.model_type}:{model_id}",
            extra={"model_type": item.model_type, "model_id": model_id, "sync_item_id": item.id}
        )
        if persisted is not None:
            repo.notify(ChangeType.UPDATED, model_id, record=persisted)

    def _handle_failure(self, repo: "Repository", item: SyncQueueItem, error: BaseException) -> None:
        attempts = item.attempt_count + 1
        dead = is_permanent(error) or attempts >= self.config.max_retry_attempts
        next_retry_at = None if dead else utcnow() + timedelta(seconds=self.compute_delay(attempts, error))

        current = self.sync_queue.get(item.id)
        if current is None or current.idempotency_key != item.idempotency_key:
            # Removed or superseded while in flight; the fresh row keeps its own schedule
            logger.info(f"Discarding failure of superseded {item.task_key}: {error}")
            return

        self.sync_queue.mark_failed(current, f"{type(error).__name__}: {error}", next_retry_at, dead=dead)
        repo.notify(ChangeType.ERROR, item.model_id, error=error)

    # Immediate work

    def dispatch(self, item: SyncQueueItem) -> Future:
        """Send one freshly queued row now, without waiting for the next pass."""
        return self.dispatcher.submit(self._dispatch_one, item)

    def _dispatch_one(self, item: SyncQueueItem) -> Optional[bool]:
        if not self.is_online():
            return None
        try:
            return self.sync_item(item)
        except DuplicateTaskError:
            logger.debug(f"{item.task_key} already in flight")
        except (CapacityTimeoutError, QueueCancelledError, OfflineError) as e:
            logger.info(f"Immediate sync of {item.task_key} deferred to next pass: {e}")
        except Exception as e:
            logger.error(f"Immediate sync of {item.task_key} failed: {e}", exc_info=True)
        return None

    def run_in_background(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """Run a callable on the dispatcher pool."""
        return self.dispatcher.submit(fn, *args, **kwargs)

    def trigger(self) -> Future:
        """Start a pass on the dispatcher pool."""
        return self.dispatcher.submit(self.process_due_tasks_now)

    def requeue_dead(self, item_id: int) -> Optional[SyncQueueItem]:
        """Give a dead row a fresh attempt budget and send it if online."""
        revived = self.sync_queue.requeue(item_id)
        if revived is not None and self.is_online():
            self.dispatch(revived)
        return revived
