"""Model-type dependency graph used to order synchronization."""
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set, TypeVar

from syncstore.errors import DependencyCycleError
from syncstore.logging_conf import logger

T = TypeVar("T")


class DependencyResolver:
    """Directed acyclic graph of "A depends on B" edges between model types.

    A type's level is the length of the longest dependency chain starting
    at it, so parents sync before children.
    """

    def __init__(self):
        self._edges: Dict[str, Set[str]] = {}
        self._levels: Dict[str, int] = {}
        self._lock = threading.RLock()

    def register_dependency(self, dependent: str, dependency: str) -> None:
        """Record that `dependent` requires `dependency` to sync first.

        Idempotent. Raises DependencyCycleError, leaving the graph unchanged,
        if the edge would close a cycle.
        """
        with self._lock:
            if dependency in self._edges.get(dependent, set()):
                return

            path = self._find_path(dependency, dependent)
            if path is not None:
                raise DependencyCycleError(dependent, dependency, [dependent] + path)

            self._edges.setdefault(dependent, set()).add(dependency)
            self._edges.setdefault(dependency, set())
            self._levels.clear()

        logger.debug(f"Registered dependency {dependent} -> {dependency}")

    def _find_path(self, start: str, goal: str) -> Optional[List[str]]:
        """A dependency path from start to goal, if one exists."""
        stack = [(start, [start])]
        seen = set()
        while stack:
            node, path = stack.pop()
            if node == goal:
                return path
            if node in seen:
                continue
            seen.add(node)
            for nxt in self._edges.get(node, ()):
                stack.append((nxt, path + [nxt]))
        return None

    def compute_level(self, model_type: str) -> int:
        """Longest dependency chain from model_type. Independent types are 0."""
        with self._lock:
            return self._level(model_type)

    def _level(self, model_type: str) -> int:
        if model_type in self._levels:
            return self._levels[model_type]
        deps = self._edges.get(model_type, ())
        level = 1 + max(self._level(d) for d in deps) if deps else 0
        self._levels[model_type] = level
        return level

    def get_dependencies(self, model_type: str) -> Set[str]:
        with self._lock:
            return set(self._edges.get(model_type, ()))

    def dependents_of(self, model_type: str) -> Set[str]:
        """Types that directly depend on model_type."""
        with self._lock:
            return {t for t, deps in self._edges.items() if model_type in deps}

    def depends_on(self, dependent: str, dependency: str) -> bool:
        """True if dependent transitively depends on dependency."""
        if dependent == dependency:
            return False
        with self._lock:
            return self._find_path(dependent, dependency) is not None

    def sort_by_dependency_order(self, items: Iterable[T], key: Callable[[T], str]) -> List[T]:
        """Stable sort by ascending dependency level of key(item)."""
        with self._lock:
            return sorted(items, key=lambda item: self._level(key(item)))

    def has_circular_dependencies(self) -> bool:
        with self._lock:
            return any(self._find_path(d, t) is not None for t, deps in self._edges.items() for d in deps)

    def model_types(self) -> List[str]:
        with self._lock:
            return sorted(self._edges)

    def clear(self) -> None:
        with self._lock:
            self._edges.clear()
            self._levels.clear()

    def debug_info(self) -> str:
        with self._lock:
            lines = ["Dependency graph:"]
            for model_type in sorted(self._edges, key=lambda t: (self._level(t), t)):
                deps = ", ".join(sorted(self._edges[model_type])) or "-"
                lines.append(f"  {model_type} (level {self._level(model_type)}) -> {deps}")
            return "\n".join(lines)
