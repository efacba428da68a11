"""Registry of model classes and their repositories."""
import threading
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple, Type, Union

from syncstore.dependency_resolver import DependencyResolver
from syncstore.errors import RepositoryNotRegisteredError
from syncstore.logging_conf import logger
from syncstore.model import Relation, SyncModel

if TYPE_CHECKING:
    from syncstore.repository import Repository

ModelRef = Union[str, Type[SyncModel]]


def _type_name(model: ModelRef) -> str:
    return model if isinstance(model, str) else model.model_type()


class ModelRegistry:
    """Maps model types to classes and repositories.

    Registering a model records a dependency on every other model its
    relations point at.
    """

    def __init__(self, resolver: DependencyResolver):
        self.resolver = resolver
        self._models: Dict[str, Type[SyncModel]] = {}
        self._repositories: Dict[str, "Repository"] = {}
        self._lock = threading.Lock()

    def register(self, model_class: Type[SyncModel], repository: "Repository") -> None:
        model_type = model_class.model_type()
        for relation in model_class.relations:
            # Self references carry foreign keys but impose no sync ordering
            if relation.target != model_type:
                self.resolver.register_dependency(model_type, relation.target)

        with self._lock:
            if model_type in self._repositories:
                logger.warning(f"Replacing repository for {model_type}")
            self._models[model_type] = model_class
            self._repositories[model_type] = repository
        logger.info(f"Registered model {model_type} (level {self.resolver.compute_level(model_type)})")

    def repository(self, model: ModelRef) -> "Repository":
        model_type = _type_name(model)
        with self._lock:
            repo = self._repositories.get(model_type)
        if repo is None:
            raise RepositoryNotRegisteredError(f"No repository registered for {model_type}")
        return repo

    def find_repository(self, model: ModelRef) -> Optional["Repository"]:
        with self._lock:
            return self._repositories.get(_type_name(model))

    def relations_to(self, parent: ModelRef) -> List[Tuple[str, Relation]]:
        """(child_type, relation) for every registered relation pointing at parent."""
        parent_type = _type_name(parent)
        with self._lock:
            models = list(self._models.items())
        return [
            (child_type, relation)
            for child_type, cls in models
            for relation in cls.relations
            if relation.target == parent_type
        ]

    def repositories(self) -> List["Repository"]:
        with self._lock:
            return list(self._repositories.values())

    def model_types(self) -> List[str]:
        with self._lock:
            return list(self._models)

    def clear(self) -> None:
        with self._lock:
            self._models.clear()
            self._repositories.clear()
