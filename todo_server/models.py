import uuid
from typing import Optional
from datetime import datetime
from .utils import now_utc
from sqlmodel import SQLModel, Field


def _new_object_id() -> str:
    return uuid.uuid4().hex


class StoredObject(SQLModel, table=True):
    """A headless-CMS style object.

    Users, lists and tasks all live in this one table and are told apart by
    `type` ('users' | 'lists' | 'tasks'). Type specific attributes live in
    the JSON encoded `metadata_json` bag; relationships (task -> list,
    list -> owner / shared_with) are stored there as object ids.
    """
    id: str = Field(default_factory=_new_object_id, primary_key=True)
    type: str = Field(index=True)
    slug: str = Field(default='', index=True)
    title: str = Field(default='')
    metadata_json: str = Field(default='{}')
    created_at: datetime | None = Field(default_factory=now_utc)
    modified_at: datetime | None = Field(default_factory=now_utc, index=True)


class Tombstone(SQLModel, table=True):
    """Record of a deletion so sync clients can learn about it.

    item_type: 'users' | 'lists' | 'tasks'
    item_id: the id of the deleted object
    created_at: timestamp when deletion recorded
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    item_type: str
    item_id: str = Field(index=True)
    created_at: datetime | None = Field(default_factory=now_utc)
