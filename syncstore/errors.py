"""Exception hierarchy for the sync engine."""
from typing import Dict, List, Optional


class SyncError(Exception):
    """Base class for every error raised by syncstore."""


# Request queue errors

class QueueError(SyncError):
    """A task could not be run by the request queue manager."""


class DuplicateTaskError(QueueError):
    """A task with the same idempotency key is already active in the queue."""

    def __init__(self, idempotency_key: str, queue_name: str):
        super().__init__(f"Duplicate task with idempotency key {idempotency_key!r} in {queue_name} queue")
        self.idempotency_key = idempotency_key
        self.queue_name = queue_name


class CapacityTimeoutError(QueueError):
    """The queue stayed full for longer than its capacity-wait timeout."""

    def __init__(self, queue_name: str, capacity: int, waited: float):
        super().__init__(f"Queue {queue_name} remained at capacity ({capacity} tasks) after {waited:.2f}s")
        self.queue_name = queue_name
        self.capacity = capacity
        self.waited = waited


class QueueCancelledError(QueueError):
    """The task was abandoned because the queues were cleared."""


class OfflineError(QueueError):
    """Remote-first work was requested while disconnected."""


# Remote API errors

class ApiError(SyncError):
    """The remote API rejected a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self):
        if self.status_code is not None:
            return f"{self.message} (status {self.status_code})"
        return self.message


class NotFoundError(ApiError):
    """404: the server does not know the resource."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class GoneError(ApiError):
    """410: the server confirms the resource was removed."""

    def __init__(self, message: str):
        super().__init__(message, status_code=410)


class ValidationError(ApiError):
    """The server rejected the payload. Retrying cannot help."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, List[str]]] = None, status_code: int = 400):
        super().__init__(message, status_code=status_code)
        self.field_errors = field_errors or {}

    def __str__(self):
        base = super().__str__()
        if not self.field_errors:
            return base
        details = "; ".join(f"{name}: {', '.join(errs)}" for name, errs in self.field_errors.items())
        return f"{base} [{details}]"


class AuthenticationError(ApiError):
    """401."""


class AuthorizationError(ApiError):
    """403."""


class ConflictError(ApiError):
    """409."""


class ServerError(ApiError):
    """5xx: transient server-side failure."""


class RateLimitError(ApiError):
    """429: the server asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class NetworkError(SyncError):
    """The request never produced an HTTP response (DNS, connect, timeout)."""


# Local errors

class ModelNoLongerExistsError(SyncError):
    """A queued create/update refers to a record that was deleted locally."""


class DuplicateSyncItemError(SyncError):
    """A pending sync queue row already exists for this record and operation."""


class RecordConflictError(SyncError):
    """A record cannot be re-keyed because the target id is already taken."""


class DependencyCycleError(SyncError, ValueError):
    """Registering a dependency would create a cycle."""

    def __init__(self, dependent: str, dependency: str, path: List[str]):
        chain = " -> ".join(path)
        super().__init__(f"Cannot register {dependent} -> {dependency}: cycle {chain}")
        self.dependent = dependent
        self.dependency = dependency
        self.path = path


class RecordNotFoundError(SyncError, LookupError):
    """find_one_or_fail found nothing."""


class RepositoryNotRegisteredError(SyncError, KeyError):
    """No repository is registered for the requested model type."""


def is_permanent(error: BaseException) -> bool:
    """Errors that must not be retried."""
    return isinstance(error, ValidationError)


def is_absence(error: BaseException) -> bool:
    """Errors where the server confirms the resource does not exist."""
    return isinstance(error, (NotFoundError, GoneError))
