"""Sync engine: wires the store, queues, executor and repositories together."""
import random
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, Optional, Type

from syncstore.api_client import ApiAdapter, RestApiAdapter
from syncstore.db import Database
from syncstore.dependency_resolver import DependencyResolver
from syncstore.id_negotiation import IdNegotiationService
from syncstore.logging_conf import logger
from syncstore.model import SyncModel
from syncstore.queue.models import QueueStats, QueueType
from syncstore.queue.request_queue import RequestQueueManager
from syncstore.queue.sync_queue import SyncQueue
from syncstore.registry import ModelRef, ModelRegistry
from syncstore.repository import Repository
from syncstore.retry_executor import RetryExecutor
from syncstore.settings import SyncConfig
from syncstore.store import LocalStore


class SyncEngine:
    """Explicit context object owning every sync component.

    Create one per local store; tests build a fresh engine each time.
    """

    def __init__(self, store: Optional[LocalStore] = None, config: Optional[SyncConfig] = None,
                 connectivity_checker: Optional[Callable[[], bool]] = None,
                 rng: Optional[random.Random] = None):
        self.config = (config or SyncConfig()).validate()
        self.store = store if store is not None else Database()
        self.connectivity_checker = connectivity_checker
        self._connected = True
        self._connectivity_lock = threading.Lock()

        self.resolver = DependencyResolver()
        self.registry = ModelRegistry(self.resolver)
        self.sync_queue = SyncQueue(self.store)
        self.queue_manager = RequestQueueManager(self.config, is_online=lambda: self.is_connected)
        self.id_negotiation = IdNegotiationService(self.store, self.registry)
        self.retry_executor = RetryExecutor(
            self.config, self.sync_queue, self.queue_manager, self.resolver, self.registry,
            self.id_negotiation, is_online=lambda: self.is_connected, rng=rng,
        )
        self.queue_manager.set_restore_hook(self.retry_executor.trigger)
        self.running = False

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # Models

    def register(self, model_class: Type[SyncModel], api: Optional[ApiAdapter] = None, **adapter_kwargs) -> Repository:
        """Register a model and return its repository.

        Without an adapter, a RestApiAdapter is built from settings and
        adapter_kwargs.
        """
        if api is None:
            api = RestApiAdapter(
                model_class.model_type(), server_generated_id=model_class.server_generated_id, **adapter_kwargs
            )
        repo = Repository(self, model_class, api)
        self.registry.register(model_class, repo)
        return repo

    def repository(self, model: ModelRef) -> Repository:
        return self.registry.repository(model)

    # Lifecycle

    def start(self):
        """Start background synchronization."""
        if self.running:
            logger.warning("Sync engine is already running")
            return

        logger.info("=" * 50)
        logger.info("Sync engine")
        logger.info("=" * 50)
        logger.info(f"Store: {type(self.store).__name__}")
        logger.info(f"Models: {', '.join(self.registry.model_types()) or '-'}")
        logger.info(f"Poll interval: {self.config.foreground_poll_interval}s "
                    f"(background {self.config.background_poll_interval}s)")
        logger.info("=" * 50)

        self.running = True
        self.retry_executor.start()
        logger.info("Started - syncing pending changes")

    def stop(self):
        """Stop background synchronization. Queued rows stay in the store."""
        if not self.running:
            return
        self.running = False
        self.retry_executor.stop()
        logger.info("Stopped")

    def close(self):
        self.stop()
        self.retry_executor.shutdown()
        self.queue_manager.shutdown()
        self.store.close()

    # Connectivity

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_connectivity(self, connected: bool):
        """Apply a connectivity transition.

        Going offline cancels all queued network work; coming back online
        restores the queues and starts a sync pass.
        """
        with self._connectivity_lock:
            if connected == self._connected:
                return None
            self._connected = connected

        if not connected:
            logger.warning("Connectivity lost - cancelling queued network work")
            self.queue_manager.clear_queues_on_disconnect()
            return None

        logger.info("Connectivity restored - resuming sync")
        return self.queue_manager.restore_queues_on_connect()

    def check_connectivity(self) -> bool:
        """Ask the connectivity checker and apply any transition."""
        if self.connectivity_checker is None:
            return self._connected
        try:
            connected = bool(self.connectivity_checker())
        except Exception as e:
            logger.warning(f"Connectivity check failed: {e}")
            connected = False
        self.set_connectivity(connected)
        return connected

    # Sync triggers

    def process_background_sync_tasks(self, force_sync: bool = False) -> int:
        """Entry point for an OS background task. Bounded by background_sync_timeout."""
        self.check_connectivity()
        future = self.retry_executor.run_in_background(self.retry_executor.process_due_tasks_now, force_sync)
        try:
            return future.result(timeout=self.config.background_sync_timeout)
        except FutureTimeoutError:
            logger.warning(f"Background sync exceeded {self.config.background_sync_timeout}s")
            return 0
        except Exception as e:
            logger.error(f"Background sync failed: {e}", exc_info=True)
            return 0

    def enable_foreground_mode(self, force_sync: bool = False) -> int:
        return self.retry_executor.enable_foreground_mode(force_sync=force_sync)

    def enable_background_mode(self) -> None:
        self.retry_executor.enable_background_mode()

    def queue_stats(self) -> Dict[QueueType, QueueStats]:
        return self.queue_manager.get_queue_stats()

    # Housekeeping

    def obliterate_local_storage(self) -> None:
        """Drop all queued work, the sync queue and every registered model's records."""
        logger.warning("Obliterating local storage")
        self.queue_manager.clear_queues_on_disconnect()
        with self.store.transaction():
            self.sync_queue.clear()
            for repo in self.registry.repositories():
                repo.truncate_local()
