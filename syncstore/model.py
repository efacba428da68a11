"""Base class for synchronized models."""
import uuid
from dataclasses import asdict, dataclass, fields, is_dataclass
from typing import Any, ClassVar, Dict, Tuple


def new_id() -> str:
    """Client-generated identifier."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Relation:
    """A foreign key on this model pointing at a parent model.

    Args:
        field: Name of the attribute holding the parent's id
        target: Model type name of the parent
        cascade_delete: Delete this record when the parent is deleted
    """
    field: str
    target: str
    cascade_delete: bool = False


class SyncModel:
    """Mixin for dataclass models stored locally and synced remotely.

    Subclasses must be dataclasses with a string `id` field, for example:

        @dataclass
        class Todo(SyncModel):
            title: str
            user_id: str
            id: str = field(default_factory=new_id)

            relations = (Relation("user_id", "User", cascade_delete=True),)
    """

    server_generated_id: ClassVar[bool] = False
    relations: ClassVar[Tuple[Relation, ...]] = ()

    @classmethod
    def model_type(cls) -> str:
        return cls.__name__

    def to_json(self) -> Dict[str, Any]:
        if not is_dataclass(self):
            raise TypeError(f"{type(self).__name__} must be a dataclass")
        return asdict(self)

    @classmethod
    def from_json(cls, data: Dict[str, Any]):
        """Build an instance, ignoring keys the model does not declare."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})
