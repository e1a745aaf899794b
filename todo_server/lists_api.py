"""List routes: CRUD with conflict checks, plus sharing (invite / remove-user)."""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import logging

from . import config, mailer, store
from .auth import SessionUser, generate_verification_code, hash_password, require_login
from .utils import changed_since, is_valid_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/lists')


class ListIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None


class ListPatch(ListIn):
    base_modified_at: Optional[str] = None


class InviteIn(BaseModel):
    email: Optional[str] = None
    listId: Optional[str] = None
    message: Optional[str] = None


class RemoveUserIn(BaseModel):
    userId: Optional[str] = None


async def _get_list(list_id: str) -> dict:
    try:
        return await store.find_one(list_id, 'lists')
    except store.ObjectNotFound:
        raise HTTPException(status_code=404, detail='List not found')


async def _get_accessible_list(list_id: str, user: SessionUser) -> dict:
    lst = await _get_list(list_id)
    if not store.can_access_list(lst, user.id):
        raise HTTPException(status_code=403, detail='forbidden')
    return lst


async def _get_owned_list(list_id: str, user: SessionUser, detail: str = 'Only the list owner can do that') -> dict:
    lst = await _get_list(list_id)
    if store.list_owner_id(lst) != user.id:
        raise HTTPException(status_code=403, detail=detail)
    return lst


@router.get('')
async def get_lists(user: SessionUser = Depends(require_login)):
    return {'lists': await store.lists_visible_to(user.id)}


@router.post('', status_code=201)
async def create_list(payload: ListIn, user: SessionUser = Depends(require_login)):
    name = (payload.name or '').strip()
    if not name:
        raise HTTPException(status_code=400, detail='Name is required')
    lst = await store.insert_one('lists', name, {
        'name': name,
        'description': (payload.description or '').strip(),
        'color': payload.color or config.DEFAULT_LIST_COLOR,
        'owner': user.id,
        'created_by': user.id,
        'shared_with': [],
    })
    return {'list': lst}


@router.patch('/{list_id}')
async def update_list(list_id: str, payload: ListPatch, user: SessionUser = Depends(require_login)):
    current = await _get_accessible_list(list_id, user)
    changes = payload.model_dump(exclude_none=True, exclude={'base_modified_at'})
    if changed_since(current, payload.base_modified_at):
        logger.info('conflict on list %s: base=%s server=%s', list_id, payload.base_modified_at, current['modified_at'])
        return JSONResponse(status_code=409, content={'detail': 'conflict', 'server': current})
    if 'name' in changes:
        changes['name'] = changes['name'].strip()
        if not changes['name']:
            raise HTTPException(status_code=400, detail='Name is required')
    lst = await store.update_one(list_id, title=changes.get('name'), metadata=changes)
    return {'success': True, 'list': lst}


@router.delete('/{list_id}')
async def delete_list(list_id: str, user: SessionUser = Depends(require_login)):
    await _get_owned_list(list_id, user, 'Only the list owner can delete this list')
    removed = await store.delete_where('tasks', {'list': list_id})
    await store.delete_one(list_id)
    logger.info('deleted list %s and %d task(s)', list_id, removed)
    return {'success': True}


@router.post('/invite')
async def invite(payload: InviteIn, user: SessionUser = Depends(require_login)):
    if not payload.email or not payload.listId:
        raise HTTPException(status_code=400, detail='Email and list ID are required')
    if not is_valid_email(payload.email):
        raise HTTPException(status_code=400, detail='Invalid email format')
    if payload.message and len(payload.message) > config.MAX_INVITE_MESSAGE_LENGTH:
        raise HTTPException(status_code=400, detail=f'Message must be {config.MAX_INVITE_MESSAGE_LENGTH} characters or less')
    lst = await _get_owned_list(payload.listId, user, 'Only the list owner can invite users')

    invited = await store.get_user_by_email(payload.email)
    if invited is None:
        code = generate_verification_code()
        # the verification code doubles as a temporary password
        invited = await store.create_user(payload.email, hash_password(code), payload.email.split('@')[0], code)
    elif invited['metadata'].get('email_verified'):
        await store.add_user_to_list(lst['id'], invited['id'])
        return {'success': True, 'message': 'User added to list'}
    else:
        code = invited['metadata'].get('verification_code') or generate_verification_code()
        if code != invited['metadata'].get('verification_code'):
            await store.update_one(invited['id'], metadata={'verification_code': code})

    await store.add_user_to_list(lst['id'], invited['id'])
    sent = await mailer.send_invite_email(
        invited['metadata']['email'],
        user.display_name,
        lst['metadata'].get('name', lst['title']),
        lst['metadata'].get('color') or config.DEFAULT_LIST_COLOR,
        code,
        payload.message.strip() if payload.message else None,
    )
    if not sent:
        logger.error('failed to send invite email for list %s', lst['id'])
    return {'success': True, 'message': 'Invitation sent'}


@router.post('/{list_id}/remove-user')
async def remove_user(list_id: str, payload: RemoveUserIn, user: SessionUser = Depends(require_login)):
    if not payload.userId:
        raise HTTPException(status_code=400, detail='User ID is required')
    lst = await _get_owned_list(list_id, user, 'Only the list owner can remove shared users')
    remaining = [uid for uid in store.list_shared_ids(lst) if uid != payload.userId]
    lst = await store.update_one(list_id, metadata={'shared_with': remaining})
    return {'success': True, 'list': lst}
