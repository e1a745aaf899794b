"""Client-side data model: identifiers, entities, mutations and payload schemas."""
import itertools
import time
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class DurableId(BaseModel):
    """Identifier assigned by the remote store."""
    model_config = ConfigDict(frozen=True)

    value: str

    def __str__(self) -> str:
        return self.value


class PendingId(BaseModel):
    """Identifier assigned locally to an entity the store has not confirmed yet."""
    model_config = ConfigDict(frozen=True)

    token: str

    def __str__(self) -> str:
        return f'pending:{self.token}'


EntityId = Union[DurableId, PendingId]

_pending_counter = itertools.count(1)


def new_pending_id() -> PendingId:
    # local clock plus a counter: two creates in the same tick stay distinct
    return PendingId(token=f'{time.time_ns()}-{next(_pending_counter)}')


def as_entity_id(value: Union[str, DurableId, PendingId]) -> EntityId:
    if isinstance(value, (DurableId, PendingId)):
        return value
    return DurableId(value=value)


def _swap_ref(value: Any, old: EntityId, new: EntityId) -> Any:
    if value == old:
        return new
    if isinstance(value, list):
        return [new if v == old else v for v in value]
    return value


class Entity(BaseModel):
    """A task or list as the client sees it.

    `metadata` is the mutable attribute bag. References to other entities
    (e.g. a task's `list`) are plain strings for confirmed entities and
    `PendingId` values while the referenced entity awaits confirmation.
    """
    model_config = ConfigDict(frozen=True)

    id: EntityId
    type: str
    title: str = ''
    slug: str = ''
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    modified_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> 'Entity':
        return cls(
            id=DurableId(value=str(record['id'])),
            type=record.get('type', ''),
            title=record.get('title') or '',
            slug=record.get('slug') or '',
            metadata=dict(record.get('metadata') or {}),
            created_at=record.get('created_at'),
            modified_at=record.get('modified_at'),
        )

    @property
    def is_pending(self) -> bool:
        return isinstance(self.id, PendingId)

    def with_changes(self, changes: dict[str, Any], title_field: Optional[str] = None) -> 'Entity':
        metadata = {**self.metadata, **changes}
        update: dict[str, Any] = {'metadata': metadata}
        if title_field and title_field in changes:
            update['title'] = changes[title_field]
        return self.model_copy(update=update)

    def with_refs_replaced(self, old: EntityId, new: EntityId) -> 'Entity':
        if not any(v == old or (isinstance(v, list) and old in v) for v in self.metadata.values()):
            return self
        metadata = {k: _swap_ref(v, old, new) for k, v in self.metadata.items()}
        return self.model_copy(update={'metadata': metadata})


class EntityState(str, Enum):
    CONFIRMED = 'confirmed'
    PENDING_CREATE = 'pending-create'
    PENDING_UPDATE = 'pending-update'
    PENDING_DELETE = 'pending-delete'
    ROLLED_BACK = 'rolled-back'


class MutationKind(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'

    @property
    def pending_state(self) -> EntityState:
        return _PENDING_STATE[self]


_PENDING_STATE = {
    MutationKind.CREATE: EntityState.PENDING_CREATE,
    MutationKind.UPDATE: EntityState.PENDING_UPDATE,
    MutationKind.DELETE: EntityState.PENDING_DELETE,
}


class Mutation(BaseModel):
    """A user intent to change one entity.

    `label` names the intent for error messages ("toggle", "rename", ...).
    """
    model_config = ConfigDict(frozen=True)

    kind: MutationKind
    target: Optional[EntityId] = None
    changes: dict[str, Any] = Field(default_factory=dict)
    label: str = ''

    @property
    def pending_state(self) -> EntityState:
        return self.kind.pending_state

    @property
    def description(self) -> str:
        return self.label or self.kind.value


class Handle(BaseModel):
    """Receipt for an applied optimistic mutation; used to confirm or roll back."""
    model_config = ConfigDict(frozen=True)

    seq: int
    kind: MutationKind
    entity_id: EntityId
    label: str = ''


# -- payload schemas ---------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra='forbid')


class TaskCreate(_Payload):
    title: str = Field(min_length=1)
    description: str = ''
    priority: Literal['low', 'medium', 'high'] = 'medium'
    due_date: str = ''
    list: Union[str, PendingId, None] = None


class TaskChanges(_Payload):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    completed: Optional[bool] = None
    starred: Optional[bool] = None
    priority: Optional[Literal['low', 'medium', 'high']] = None
    due_date: Optional[str] = None
    list: Union[str, PendingId, None] = None
    order: Optional[int] = None


class ListCreate(_Payload):
    name: str = Field(min_length=1)
    description: str = ''
    color: str = '#3b82f6'


class ListChanges(_Payload):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    color: Optional[str] = None


class Collection(BaseModel):
    """Describes one remote collection and how its payloads look."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    item_key: str
    title_field: str
    create_schema: type
    changes_schema: type
    tracked_fields: Optional[tuple[str, ...]] = None
    create_defaults: dict[str, Any] = Field(default_factory=dict)


TASKS = Collection(
    name='tasks',
    item_key='task',
    title_field='title',
    create_schema=TaskCreate,
    changes_schema=TaskChanges,
    tracked_fields=('title', 'description', 'completed', 'starred', 'priority', 'due_date', 'list', 'order'),
    create_defaults={'completed': False},
)

LISTS = Collection(
    name='lists',
    item_key='list',
    title_field='name',
    create_schema=ListCreate,
    changes_schema=ListChanges,
    tracked_fields=('name', 'description', 'color', 'owner', 'shared_with'),
)
