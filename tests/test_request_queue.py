"""Tests for syncstore.queue.request_queue.

Validates RequestQueueManager: idempotency keys, bounded capacity with
timeouts, disconnect cancellation, offline refusal and stats.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import wait_until
from syncstore.errors import (
    CapacityTimeoutError,
    DuplicateTaskError,
    OfflineError,
    QueueCancelledError,
)
from syncstore.queue.models import NetworkTask, QueueType, SyncOperation
from syncstore.queue.request_queue import RequestQueueManager


def make_task(key, fn):
    return NetworkTask(exec=fn, idempotency_key=key, operation=SyncOperation.READ, model_type="Thing", model_id=key)


def gated_task(key, gate, started=None, result=None):
    def run():
        if started is not None:
            started.set()
        gate.wait(5)
        return result
    return make_task(key, run)


@pytest.fixture
def manager(config):
    mgr = RequestQueueManager(config)
    yield mgr
    mgr.shutdown()


@pytest.fixture
def callers():
    pool = ThreadPoolExecutor(max_workers=8)
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)


class TestEnqueue:
    """Basic submission and result propagation."""

    def test_returns_task_result(self, manager):
        assert manager.enqueue_task(make_task("k1", lambda: 42), QueueType.FOREGROUND) == 42

    def test_task_error_reaches_only_its_caller(self, manager):
        def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            manager.enqueue_task(make_task("bad", boom), QueueType.BACKGROUND)
        assert manager.enqueue_task(make_task("good", lambda: "ok"), QueueType.BACKGROUND) == "ok"

    def test_failed_task_releases_its_key(self, manager):
        def boom():
            raise ValueError("nope")

        for _ in range(3):
            with pytest.raises(ValueError):
                manager.enqueue_task(make_task("same", boom), QueueType.LOAD)
        assert manager.enqueue_task(make_task("same", lambda: 1), QueueType.LOAD) == 1

    def test_start_order_follows_submission_order(self, manager, callers):
        gate = threading.Event()
        first_started = threading.Event()
        order = []
        lock = threading.Lock()

        def recorder(name):
            def run():
                with lock:
                    order.append(name)
            return run

        blocker = callers.submit(manager.enqueue_task, gated_task("block", gate, first_started), QueueType.FOREGROUND)
        assert first_started.wait(2)
        futures = []
        for i in range(5):
            futures.append(callers.submit(manager.enqueue_task, make_task(f"t{i}", recorder(i)), QueueType.FOREGROUND))
            assert wait_until(lambda: manager.get_queue_stats()[QueueType.FOREGROUND].pending_tasks == i + 1)

        gate.set()
        blocker.result(timeout=2)
        for f in futures:
            f.result(timeout=2)
        assert order == [0, 1, 2, 3, 4]


class TestIdempotency:
    """Duplicate keys are rejected while a task is active."""

    def test_duplicate_key_rejected_while_in_flight(self, manager, callers):
        gate = threading.Event()
        started = threading.Event()
        first = callers.submit(manager.enqueue_task, gated_task("dup", gate, started, "first"), QueueType.BACKGROUND)
        assert started.wait(2)

        with pytest.raises(DuplicateTaskError) as exc:
            manager.enqueue_task(make_task("dup", lambda: "second"), QueueType.BACKGROUND)
        assert exc.value.idempotency_key == "dup"

        gate.set()
        assert first.result(timeout=2) == "first"
        assert manager.enqueue_task(make_task("dup", lambda: "third"), QueueType.BACKGROUND) == "third"

    def test_same_key_allowed_in_different_queues(self, manager, callers):
        gate = threading.Event()
        started = threading.Event()
        held = callers.submit(manager.enqueue_task, gated_task("shared", gate, started), QueueType.LOAD)
        assert started.wait(2)

        assert manager.enqueue_task(make_task("shared", lambda: "bg"), QueueType.BACKGROUND) == "bg"
        gate.set()
        held.result(timeout=2)


class TestCapacity:
    """Bounded capacity and capacity-wait timeouts."""

    def test_capacity_timeout(self, config, callers):
        config.foreground_queue_concurrency = 1
        config.max_foreground_queue_capacity = 2
        config.foreground_queue_capacity_timeout = 0.2
        manager = RequestQueueManager(config)
        gate = threading.Event()
        try:
            held = [
                callers.submit(manager.enqueue_task, gated_task(f"h{i}", gate), QueueType.FOREGROUND)
                for i in range(2)
            ]
            assert wait_until(lambda: manager.get_queue_stats()[QueueType.FOREGROUND].active_and_pending_tasks == 2)

            with pytest.raises(CapacityTimeoutError) as exc:
                manager.enqueue_task(make_task("overflow", lambda: None), QueueType.FOREGROUND)
            assert exc.value.capacity == 2
            assert exc.value.waited >= 0.2
            assert manager.get_queue_stats()[QueueType.FOREGROUND].active_and_pending_tasks == 2
        finally:
            gate.set()
            for f in held:
                f.result(timeout=2)
            manager.shutdown()

    def test_waiter_gets_freed_slot(self, config, callers):
        config.background_queue_concurrency = 1
        config.max_background_queue_capacity = 1
        config.background_queue_capacity_timeout = 2.0
        manager = RequestQueueManager(config)
        gate = threading.Event()
        started = threading.Event()
        try:
            held = callers.submit(manager.enqueue_task, gated_task("h", gate, started), QueueType.BACKGROUND)
            assert started.wait(2)
            waiter = callers.submit(manager.enqueue_task, make_task("w", lambda: "done"), QueueType.BACKGROUND)
            threading.Timer(0.1, gate.set).start()

            assert waiter.result(timeout=3) == "done"
            held.result(timeout=2)
        finally:
            gate.set()
            manager.shutdown()

    def test_capacity_never_exceeded_under_contention(self, config, callers):
        config.load_queue_concurrency = 2
        config.max_load_queue_capacity = 3
        config.load_queue_capacity_timeout = 3.0
        manager = RequestQueueManager(config)
        peak = []
        lock = threading.Lock()

        def work():
            stats = manager.get_queue_stats()[QueueType.LOAD]
            with lock:
                peak.append(stats.active_and_pending_tasks)
            threading.Event().wait(0.02)

        try:
            futures = [
                callers.submit(manager.enqueue_task, make_task(f"c{i}", work), QueueType.LOAD)
                for i in range(8)
            ]
            for f in futures:
                f.result(timeout=5)
            assert max(peak) <= 3
        finally:
            manager.shutdown()


class TestDisconnect:
    """clear_queues_on_disconnect and restore_queues_on_connect."""

    def test_clear_cancels_active_and_pending(self, manager, callers):
        gate = threading.Event()
        started = threading.Event()
        active = callers.submit(manager.enqueue_task, gated_task("a", gate, started), QueueType.FOREGROUND)
        assert started.wait(2)
        pending = callers.submit(manager.enqueue_task, gated_task("p", gate), QueueType.FOREGROUND)
        assert wait_until(lambda: manager.get_queue_stats()[QueueType.FOREGROUND].pending_tasks == 1)

        manager.clear_queues_on_disconnect()

        with pytest.raises(QueueCancelledError):
            active.result(timeout=2)
        with pytest.raises(QueueCancelledError):
            pending.result(timeout=2)
        for stats in manager.get_queue_stats().values():
            assert stats.active_and_pending_tasks == 0
            assert stats.pending_tasks == 0
        gate.set()

    def test_clear_releases_capacity_waiters(self, config, callers):
        config.foreground_queue_concurrency = 1
        config.max_foreground_queue_capacity = 1
        config.foreground_queue_capacity_timeout = 5.0
        manager = RequestQueueManager(config)
        gate = threading.Event()
        started = threading.Event()
        try:
            held = callers.submit(manager.enqueue_task, gated_task("h", gate, started), QueueType.FOREGROUND)
            assert started.wait(2)
            waiter = callers.submit(manager.enqueue_task, make_task("w", lambda: None), QueueType.FOREGROUND)
            threading.Event().wait(0.1)

            manager.clear_queues_on_disconnect()

            with pytest.raises(QueueCancelledError):
                waiter.result(timeout=2)
            with pytest.raises(QueueCancelledError):
                held.result(timeout=2)
        finally:
            gate.set()
            manager.shutdown()

    def test_keys_released_after_clear(self, manager, callers):
        gate = threading.Event()
        started = threading.Event()
        old = callers.submit(manager.enqueue_task, gated_task("k", gate, started), QueueType.BACKGROUND)
        assert started.wait(2)

        manager.clear_queues_on_disconnect()
        with pytest.raises(QueueCancelledError):
            old.result(timeout=2)

        assert manager.enqueue_task(make_task("k", lambda: "fresh"), QueueType.BACKGROUND) == "fresh"
        gate.set()

    def test_restore_calls_hook(self, manager):
        calls = []
        manager.set_restore_hook(lambda: calls.append("scan") or "triggered")
        manager.clear_queues_on_disconnect()

        assert manager.restore_queues_on_connect() == "triggered"
        assert calls == ["scan"]
        assert manager.enqueue_task(make_task("after", lambda: 5), QueueType.FOREGROUND) == 5


class TestOffline:
    """Foreground and load queues refuse work while offline."""

    def test_foreground_and_load_refuse_when_offline(self, config):
        manager = RequestQueueManager(config, is_online=lambda: False)
        try:
            with pytest.raises(OfflineError):
                manager.enqueue_task(make_task("f", lambda: 1), QueueType.FOREGROUND)
            with pytest.raises(OfflineError):
                manager.enqueue_task(make_task("l", lambda: 1), QueueType.LOAD)
            assert manager.enqueue_task(make_task("b", lambda: 1), QueueType.BACKGROUND) == 1
        finally:
            manager.shutdown()


class TestStats:
    """get_queue_stats snapshots."""

    def test_idle_stats_are_zero(self, manager):
        stats = manager.get_queue_stats()
        assert set(stats) == {QueueType.FOREGROUND, QueueType.LOAD, QueueType.BACKGROUND}
        assert all(s.active_and_pending_tasks == 0 for s in stats.values())

    def test_active_and_pending_counts(self, manager, callers):
        gate = threading.Event()
        started = threading.Event()
        futures = [callers.submit(manager.enqueue_task, gated_task("s0", gate, started), QueueType.FOREGROUND)]
        assert started.wait(2)
        futures.append(callers.submit(manager.enqueue_task, gated_task("s1", gate), QueueType.FOREGROUND))
        assert wait_until(lambda: manager.get_queue_stats()[QueueType.FOREGROUND].active_and_pending_tasks == 2)

        stats = manager.get_queue_stats()[QueueType.FOREGROUND]
        assert stats.pending_tasks == 1

        gate.set()
        for f in futures:
            f.result(timeout=2)
        assert manager.join_all(timeout=2)
        assert manager.get_queue_stats()[QueueType.FOREGROUND].active_and_pending_tasks == 0
