"""Bounded foreground, load and background request queues."""
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Set

from syncstore.errors import CapacityTimeoutError, DuplicateTaskError, OfflineError, QueueCancelledError
from syncstore.logging_conf import logger
from syncstore.queue.models import NetworkTask, QueueStats, QueueType
from syncstore.settings import SyncConfig


class RequestQueue:
    """A fixed-size worker pool with a bounded number of reserved slots.

    A slot is reserved when a task is accepted and released when it settles,
    so active plus waiting tasks never exceed `capacity`.
    """

    def __init__(self, queue_type: QueueType, concurrency: int, capacity: int,
                 capacity_timeout: float, check_interval: float):
        self.queue_type = queue_type
        self.concurrency = concurrency
        self.capacity = capacity
        self.capacity_timeout = capacity_timeout
        self.check_interval = check_interval

        self._executor = ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix=f"{queue_type.value}-queue"
        )
        self._cond = threading.Condition()
        self._occupied = 0
        self._running = 0
        self._outstanding: Set[Future] = set()
        self._disposed = False

    @property
    def name(self) -> str:
        return self.queue_type.value

    @property
    def disposed(self) -> bool:
        return self._disposed

    def submit(self, task: NetworkTask) -> Future:
        """Reserve a slot, waiting up to capacity_timeout, and schedule the task.

        Returns a future settled with the task's result or error.
        """
        started = time.monotonic()
        deadline = started + self.capacity_timeout

        with self._cond:
            while True:
                if self._disposed:
                    raise QueueCancelledError(f"{self.name} queue was cleared")
                if self._occupied < self.capacity:
                    self._occupied += 1
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(
                        f"{self.name} queue at capacity ({self.capacity}), rejecting {task}",
                        extra={"queue": self.name, "idempotency_key": task.idempotency_key}
                    )
                    raise CapacityTimeoutError(self.name, self.capacity, time.monotonic() - started)
                self._cond.wait(min(self.check_interval, remaining))

            settled: Future = Future()
            self._outstanding.add(settled)

        try:
            self._executor.submit(self._run, task, settled)
        except RuntimeError:
            # Executor shut down by a concurrent dispose; the future is already cancelled
            with self._cond:
                self._cancel(settled)
        return settled

    def _run(self, task: NetworkTask, settled: Future) -> None:
        with self._cond:
            if settled.done():
                return
            self._running += 1

        result: Any = None
        error: Optional[BaseException] = None
        try:
            result = task.exec()
        except Exception as e:
            error = e
        finally:
            with self._cond:
                self._running -= 1
                if not settled.done():
                    if error is not None:
                        settled.set_exception(error)
                    else:
                        settled.set_result(result)
                if settled in self._outstanding:
                    self._outstanding.discard(settled)
                    self._occupied -= 1
                self._cond.notify_all()

    def _cancel(self, settled: Future) -> None:
        if not settled.done():
            settled.set_exception(QueueCancelledError(f"{self.name} queue was cleared"))

    def stats(self) -> QueueStats:
        with self._cond:
            return QueueStats(
                active_and_pending_tasks=self._occupied,
                pending_tasks=self._occupied - self._running,
            )

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no task holds a slot. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._occupied == 0 or self._disposed, timeout)

    def dispose(self) -> int:
        """Fail every outstanding task with QueueCancelledError and release waiters.

        Tasks already running keep their thread until they return; their
        results are discarded.
        """
        with self._cond:
            self._disposed = True
            cancelled = len(self._outstanding)
            for settled in self._outstanding:
                self._cancel(settled)
            self._outstanding.clear()
            self._cond.notify_all()
        self._executor.shutdown(wait=False, cancel_futures=True)
        return cancelled


class RequestQueueManager:
    """Routes network tasks to three independently bounded queues.

    An idempotency key may be active at most once per queue; it is held from
    acceptance until the task settles.
    """

    def __init__(self, config: SyncConfig, is_online: Callable[[], bool] = lambda: True):
        self.config = config
        self.is_online = is_online
        self._lock = threading.Lock()
        self._queues = self._build_queues()
        self._keys: Dict[QueueType, Dict[str, object]] = {qt: {} for qt in QueueType}
        self._restore_hook: Optional[Callable[[], Any]] = None

    def _build_queues(self) -> Dict[QueueType, RequestQueue]:
        c = self.config
        interval = c.queue_capacity_check_interval
        return {
            QueueType.FOREGROUND: RequestQueue(
                QueueType.FOREGROUND, c.foreground_queue_concurrency,
                c.max_foreground_queue_capacity, c.foreground_queue_capacity_timeout, interval
            ),
            QueueType.LOAD: RequestQueue(
                QueueType.LOAD, c.load_queue_concurrency,
                c.max_load_queue_capacity, c.load_queue_capacity_timeout, interval
            ),
            QueueType.BACKGROUND: RequestQueue(
                QueueType.BACKGROUND, c.background_queue_concurrency,
                c.max_background_queue_capacity, c.background_queue_capacity_timeout, interval
            ),
        }

    def set_restore_hook(self, hook: Optional[Callable[[], Any]]) -> None:
        """Called by restore_queues_on_connect to kick off a retry scan."""
        self._restore_hook = hook

    def enqueue_task(self, task: NetworkTask, queue_type: QueueType = QueueType.BACKGROUND) -> Any:
        """Run a task on the given queue and return its result.

        Raises:
            OfflineError: foreground or load work while disconnected
            DuplicateTaskError: the idempotency key is already active in this queue
            CapacityTimeoutError: no slot freed within the queue's timeout
            QueueCancelledError: the queues were cleared before the task settled
        """
        queue_type = QueueType(queue_type)
        if queue_type != QueueType.BACKGROUND and not self.is_online():
            raise OfflineError(f"Cannot run {task} on {queue_type.value} queue while offline")

        token = object()
        key = task.idempotency_key
        with self._lock:
            keys = self._keys[queue_type]
            if key in keys:
                raise DuplicateTaskError(key, queue_type.value)
            keys[key] = token
            queue = self._queues[queue_type]

        try:
            logger.debug(f"Enqueued {task} on {queue_type.value} queue", extra={"queue": queue_type.value})
            return queue.submit(task).result()
        finally:
            with self._lock:
                keys = self._keys[queue_type]
                # A clear may have handed this key to a newer caller
                if keys.get(key) is token:
                    del keys[key]

    def get_queue_stats(self) -> Dict[QueueType, QueueStats]:
        with self._lock:
            queues = dict(self._queues)
        return {qt: q.stats() for qt, q in queues.items()}

    def clear_queues_on_disconnect(self) -> None:
        """Cancel all queued and in-flight tasks and start over with empty queues."""
        with self._lock:
            old = self._queues
            self._queues = self._build_queues()
            self._keys = {qt: {} for qt in QueueType}

        cancelled = sum(q.dispose() for q in old.values())
        logger.info(f"Cleared request queues on disconnect ({cancelled} tasks cancelled)")

    def restore_queues_on_connect(self) -> Any:
        """Make sure live queues exist and trigger an immediate retry scan."""
        with self._lock:
            if any(q.disposed for q in self._queues.values()):
                self._queues = self._build_queues()
                self._keys = {qt: {} for qt in QueueType}

        logger.info("Request queues restored on connect")
        if self._restore_hook:
            return self._restore_hook()
        return None

    def join_all(self, timeout: Optional[float] = None) -> bool:
        """Wait for every queue to drain. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            queues = list(self._queues.values())
        for queue in queues:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not queue.wait_idle(remaining):
                return False
        return True

    def shutdown(self) -> None:
        with self._lock:
            queues = list(self._queues.values())
        for queue in queues:
            queue.dispose()
        logger.info("Request queues shut down")
