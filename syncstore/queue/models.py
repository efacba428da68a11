"""Queue data models."""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    DEAD = "dead"


class IdNegotiationStatus(str, Enum):
    COMPLETE = "complete"
    PENDING = "pending"
    FAILED = "failed"


class QueueType(str, Enum):
    """The three request queues.

    foreground: remote_first writes, the user is waiting.
    load: remote reads.
    background: local_first sync and retries.
    """
    FOREGROUND = "foreground"
    LOAD = "load"
    BACKGROUND = "background"


@dataclass
class SyncQueueItem:
    """A durable record of work owed to the remote API."""

    model_type: str
    model_id: str
    operation: SyncOperation
    payload: Dict[str, Any]
    id: Optional[int] = None  # Assigned by the store
    temporary_client_id: Optional[str] = None
    id_negotiation_status: IdNegotiationStatus = IdNegotiationStatus.COMPLETE
    attempt_count: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    idempotency_key: Optional[str] = None
    status: SyncStatus = SyncStatus.PENDING
    headers: Optional[Dict[str, str]] = None
    extra: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        self.operation = SyncOperation(self.operation)
        self.status = SyncStatus(self.status)
        self.id_negotiation_status = IdNegotiationStatus(self.id_negotiation_status)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """Pending and either ready now or past its retry time."""
        if self.status != SyncStatus.PENDING:
            return False
        if self.next_retry_at is None:
            return True
        return self.next_retry_at <= (now or utcnow())

    @property
    def task_key(self) -> str:
        """In-flight dedup key: one active attempt per record and operation."""
        return f"{self.model_type}:{self.model_id}:{self.operation.value}"

    def copy(self, **changes) -> "SyncQueueItem":
        return replace(self, **changes)


@dataclass
class NetworkTask:
    """An in-memory unit of remote work submitted to a request queue."""

    exec: Callable[[], Any]
    idempotency_key: str
    operation: SyncOperation
    model_type: str
    model_id: str
    task_name: Optional[str] = None

    def __str__(self):
        name = self.task_name or f"{self.operation.value}({self.model_type}:{self.model_id})"
        return f"NetworkTask({name}, key: {self.idempotency_key})"


@dataclass(frozen=True)
class QueueStats:
    """Snapshot of one request queue."""

    active_and_pending_tasks: int
    pending_tasks: int
