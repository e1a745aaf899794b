"""Headless-CMS style object store over the async SQLModel session.

The API mirrors what the web routes need from a hosted object store:
find / find_one / insert_one / update_one / delete_one, all returning plain
dict records shaped like::

    {"id", "type", "slug", "title", "metadata", "created_at", "modified_at"}

Like the hosted store it imitates, `find` on a type with no matching
objects raises `ObjectNotFound` instead of returning an empty list; callers
that read collections must special-case it.
"""
from typing import Any, Optional
from sqlmodel import select
import logging

from .db import async_session
from .models import StoredObject, Tombstone
from .utils import now_utc, iso, slugify, load_metadata, dump_metadata

logger = logging.getLogger(__name__)


class ObjectNotFound(Exception):
    """Raised when no stored object matches a lookup (the store's 404)."""

    status = 404

    def __init__(self, detail: str = 'not found'):
        super().__init__(detail)
        self.detail = detail


def to_record(obj: StoredObject) -> dict[str, Any]:
    return {
        'id': obj.id,
        'type': obj.type,
        'slug': obj.slug,
        'title': obj.title,
        'metadata': load_metadata(obj.metadata_json),
        'created_at': iso(obj.created_at),
        'modified_at': iso(obj.modified_at),
    }


def _matches(metadata: dict[str, Any], filters: dict[str, Any]) -> bool:
    for key, expected in filters.items():
        actual = metadata.get(key)
        if isinstance(actual, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


async def find(obj_type: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
    async with async_session() as sess:
        q = select(StoredObject).where(StoredObject.type == obj_type).order_by(StoredObject.created_at)
        rows = (await sess.exec(q)).all()
    records = [to_record(o) for o in rows]
    if filters:
        records = [r for r in records if _matches(r['metadata'], filters)]
    if not records:
        raise ObjectNotFound(f'no {obj_type} found')
    return records


async def find_or_empty(obj_type: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
    try:
        return await find(obj_type, filters)
    except ObjectNotFound:
        return []


async def find_one(obj_id: str, obj_type: Optional[str] = None) -> dict[str, Any]:
    async with async_session() as sess:
        obj = await sess.get(StoredObject, obj_id)
    if obj is None or (obj_type is not None and obj.type != obj_type):
        raise ObjectNotFound(f'{obj_type or "object"} {obj_id} not found')
    return to_record(obj)


async def find_one_or_none(obj_id: str, obj_type: Optional[str] = None) -> Optional[dict[str, Any]]:
    try:
        return await find_one(obj_id, obj_type)
    except ObjectNotFound:
        return None


async def insert_one(obj_type: str, title: str, metadata: Optional[dict[str, Any]] = None, slug: Optional[str] = None) -> dict[str, Any]:
    obj = StoredObject(
        type=obj_type,
        title=title,
        slug=slug if slug is not None else slugify(title),
        metadata_json=dump_metadata(metadata),
    )
    async with async_session() as sess:
        sess.add(obj)
        await sess.commit()
        await sess.refresh(obj)
    logger.debug('inserted %s %s', obj_type, obj.id)
    return to_record(obj)


async def update_one(obj_id: str, title: Optional[str] = None, metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Update an object; metadata keys are merged into the stored bag."""
    async with async_session() as sess:
        obj = await sess.get(StoredObject, obj_id)
        if obj is None:
            raise ObjectNotFound(f'object {obj_id} not found')
        if title is not None:
            obj.title = title
        if metadata:
            merged = load_metadata(obj.metadata_json)
            merged.update(metadata)
            obj.metadata_json = dump_metadata(merged)
        obj.modified_at = now_utc()
        sess.add(obj)
        await sess.commit()
        await sess.refresh(obj)
    return to_record(obj)


async def delete_one(obj_id: str) -> None:
    async with async_session() as sess:
        obj = await sess.get(StoredObject, obj_id)
        if obj is None:
            raise ObjectNotFound(f'object {obj_id} not found')
        # record tombstone so sync clients learn about the deletion
        sess.add(Tombstone(item_type=obj.type, item_id=obj.id))
        await sess.delete(obj)
        await sess.commit()
    logger.debug('deleted %s', obj_id)


async def delete_where(obj_type: str, filters: dict[str, Any]) -> int:
    """Delete every object of `obj_type` whose metadata matches `filters`."""
    removed = 0
    async with async_session() as sess:
        q = select(StoredObject).where(StoredObject.type == obj_type)
        for obj in (await sess.exec(q)).all():
            if not _matches(load_metadata(obj.metadata_json), filters):
                continue
            sess.add(Tombstone(item_type=obj.type, item_id=obj.id))
            await sess.delete(obj)
            removed += 1
        await sess.commit()
    return removed


# -- users -----------------------------------------------------------------

async def get_user_by_email(email: str) -> Optional[dict[str, Any]]:
    users = await find_or_empty('users', {'email': (email or '').strip().lower()})
    return users[0] if users else None


async def get_user_by_id(user_id: str) -> Optional[dict[str, Any]]:
    return await find_one_or_none(user_id, 'users')


async def create_user(email: str, password_hash: str, display_name: str, verification_code: str = '') -> dict[str, Any]:
    email = email.strip().lower()
    return await insert_one('users', display_name, {
        'email': email,
        'password_hash': password_hash,
        'display_name': display_name,
        'email_verified': False,
        'verification_code': verification_code,
    }, slug=slugify(email))


# -- lists -----------------------------------------------------------------

def list_owner_id(lst: dict[str, Any]) -> Optional[str]:
    return lst['metadata'].get('owner')


def list_shared_ids(lst: dict[str, Any]) -> list[str]:
    return list(lst['metadata'].get('shared_with') or [])


def can_access_list(lst: dict[str, Any], user_id: str) -> bool:
    return list_owner_id(lst) == user_id or user_id in list_shared_ids(lst)


async def lists_visible_to(user_id: str) -> list[dict[str, Any]]:
    lists = await find_or_empty('lists')
    return [lst for lst in lists if can_access_list(lst, user_id)]


async def add_user_to_list(list_id: str, user_id: str) -> dict[str, Any]:
    lst = await find_one(list_id, 'lists')
    shared = list_shared_ids(lst)
    if user_id not in shared:
        shared.append(user_id)
    return await update_one(list_id, metadata={'shared_with': shared})
