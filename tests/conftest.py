"""Shared pytest fixtures for syncstore tests.

Provides a scriptable in-memory remote API, sample models with relations,
and a fresh SyncEngine over a MemoryStore for every test.
"""

import random
import threading
import time
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Dict, List, Tuple

import pytest

from syncstore.api_client import ApiAdapter
from syncstore.engine import SyncEngine
from syncstore.errors import NotFoundError
from syncstore.memory_store import MemoryStore
from syncstore.model import Relation, SyncModel, new_id
from syncstore.settings import LoadPolicy, SavePolicy, SyncConfig


@dataclass
class User(SyncModel):
    name: str
    id: str = field(default_factory=new_id)


@dataclass
class Todo(SyncModel):
    title: str
    user_id: str
    done: bool = False
    id: str = field(default_factory=new_id)

    relations = (Relation("user_id", "User", cascade_delete=True),)


@dataclass
class Comment(SyncModel):
    body: str
    todo_id: str
    id: str = field(default_factory=new_id)

    relations = (Relation("todo_id", "Todo", cascade_delete=True),)


@dataclass
class Project(SyncModel):
    name: str
    id: str = field(default_factory=new_id)

    server_generated_id = True


@dataclass
class Task(SyncModel):
    title: str
    project_id: str
    id: str = field(default_factory=new_id)

    relations = (Relation("project_id", "Project"),)


class FakeApi(ApiAdapter):
    """In-memory remote collection with scriptable failures and a gate.

    While `gate` is cleared every call blocks, which holds tasks in flight.
    """

    def __init__(self, model_type: str, server_ids: bool = False):
        self.model_type = model_type
        self.server_ids = server_ids
        self.records: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.failures: Dict[str, List[BaseException]] = {}
        self.gate = threading.Event()
        self.gate.set()
        self.entered = threading.Event()
        self._lock = threading.Lock()
        self._next_id = 1

    def fail_next(self, operation: str, *errors: BaseException):
        with self._lock:
            self.failures.setdefault(operation, []).extend(errors)

    def hold(self):
        self.entered.clear()
        self.gate.clear()

    def release(self):
        self.gate.set()

    def count(self, operation: str) -> int:
        with self._lock:
            return sum(1 for op, _ in self.calls if op == operation)

    def _enter(self, operation: str, arg: Any):
        with self._lock:
            self.calls.append((operation, arg))
        self.entered.set()
        self.gate.wait(5)
        with self._lock:
            pending = self.failures.get(operation)
            if pending:
                raise pending.pop(0)

    def find_one(self, record_id, headers=None, extra=None):
        self._enter("find_one", record_id)
        with self._lock:
            if record_id not in self.records:
                raise NotFoundError(f"{self.model_type} {record_id} not found")
            return dict(self.records[record_id])

    def find_all(self, query=None, headers=None, extra=None):
        self._enter("find_all", query)
        with self._lock:
            records = [dict(r) for r in self.records.values()]
        return query.apply(records) if query else records

    def create_one(self, payload, headers=None, extra=None):
        self._enter("create", dict(payload))
        with self._lock:
            record = dict(payload)
            if self.server_ids:
                record["id"] = f"srv-{self._next_id}"
                self._next_id += 1
            self.records[record["id"]] = record
            return dict(record)

    def update_one(self, payload, headers=None, extra=None):
        self._enter("update", dict(payload))
        with self._lock:
            if payload["id"] not in self.records:
                raise NotFoundError(f"{self.model_type} {payload['id']} not found")
            self.records[payload["id"]].update(payload)
            return dict(self.records[payload["id"]])

    def replace_one(self, payload, headers=None, extra=None):
        self._enter("replace", dict(payload))
        with self._lock:
            self.records[payload["id"]] = dict(payload)
            return dict(payload)

    def delete_one(self, record_id, headers=None, extra=None):
        self._enter("delete", record_id)
        with self._lock:
            if self.records.pop(record_id, None) is None:
                raise NotFoundError(f"{self.model_type} {record_id} not found")


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is truthy."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def config():
    """Small timeouts and no jitter so timing-dependent tests stay fast."""
    return SyncConfig(
        foreground_queue_concurrency=1,
        load_queue_concurrency=2,
        background_queue_concurrency=2,
        max_foreground_queue_capacity=50,
        max_load_queue_capacity=50,
        max_background_queue_capacity=50,
        foreground_queue_capacity_timeout=0.5,
        load_queue_capacity_timeout=0.5,
        background_queue_capacity_timeout=0.5,
        queue_capacity_check_interval=0.01,
        default_save_policy=SavePolicy.LOCAL_FIRST,
        default_load_policy=LoadPolicy.LOCAL_ONLY,
        remote_first_load_fallback=False,
        initial_retry_delay=2.0,
        max_retry_delay=300.0,
        min_retry_delay=1.0,
        backoff_multiplier=2.0,
        jitter_percent=0.0,
        max_retry_attempts=3,
        foreground_poll_interval=0.05,
        background_poll_interval=1.0,
        background_sync_timeout=2.0,
        retain_synced_items=True,
        dispatcher_workers=4,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def engine(store, config):
    """Fresh engine per test. Starts offline so nothing syncs unless a test asks."""
    eng = SyncEngine(store=store, config=config, rng=random.Random(7))
    eng.set_connectivity(False)
    yield eng
    eng.close()


@pytest.fixture
def apis():
    return {
        "User": FakeApi("User"),
        "Todo": FakeApi("Todo"),
        "Comment": FakeApi("Comment"),
        "Project": FakeApi("Project", server_ids=True),
        "Task": FakeApi("Task"),
    }


@pytest.fixture
def repos(engine, apis):
    """Every sample model registered on the engine."""
    return SimpleNamespace(
        users=engine.register(User, apis["User"]),
        todos=engine.register(Todo, apis["Todo"]),
        comments=engine.register(Comment, apis["Comment"]),
        projects=engine.register(Project, apis["Project"]),
        tasks=engine.register(Task, apis["Task"]),
        api=apis,
    )


@pytest.fixture
def online(engine):
    """Bring the engine online and wait for the restore pass to finish."""
    future = engine.set_connectivity(True)
    if future is not None:
        future.result(timeout=5)
    return engine


@pytest.fixture
def changes(repos):
    """Collects every change published by every repository."""
    collected: List[Any] = []
    lock = threading.Lock()

    def record(change):
        with lock:
            collected.append(change)

    for repo in (repos.users, repos.todos, repos.comments, repos.projects, repos.tasks):
        repo.changes.subscribe(record)
    return collected
