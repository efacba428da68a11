"""Change notifications published by repositories."""
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from syncstore.logging_conf import logger
from syncstore.queue.models import utcnow


class ChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ERROR = "error"


@dataclass
class RepositoryChange:
    """One local mutation, or a failed remote operation."""

    change_type: ChangeType
    model_type: str
    model_id: Optional[str] = None
    item: Any = None
    error: Optional[BaseException] = None
    timestamp: Any = field(default_factory=utcnow)

    def __str__(self):
        return f"{self.change_type.value}({self.model_type}:{self.model_id})"


Listener = Callable[[RepositoryChange], None]


class ChangeStream:
    """Broadcast stream: every subscriber gets every change."""

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, change: RepositoryChange) -> None:
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(change)
            except Exception as e:
                logger.error(
                    f"Change listener failed on {self.name} for {change}: {e}",
                    exc_info=True,
                    extra={"model_type": change.model_type, "model_id": change.model_id}
                )
