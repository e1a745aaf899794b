"""Task routes: CRUD, bulk reorder and optimistic-concurrency checks."""
from typing import Any, Optional
from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import logging

from . import store
from .auth import SessionUser, require_login
from .utils import changed_since, priority_value

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/tasks')

PRIORITIES = ('low', 'medium', 'high')


class TaskIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[str] = None
    list: Optional[str] = None


class TaskPatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    completed: Optional[bool] = None
    starred: Optional[bool] = None
    priority: Optional[str] = None
    due_date: Optional[str] = None
    list: Optional[str] = None
    order: Optional[int] = None
    # ISO modified_at the client based its edit on; enables conflict detection
    base_modified_at: Optional[str] = None


async def _visible_list_ids(user: SessionUser) -> set[str]:
    return {lst['id'] for lst in await store.lists_visible_to(user.id)}


def _task_visible(task: dict, user: SessionUser, list_ids: set[str]) -> bool:
    list_id = task['metadata'].get('list')
    if list_id:
        return list_id in list_ids
    return task['metadata'].get('owner') == user.id


async def _check_list(list_id: Optional[str], user: SessionUser) -> None:
    if not list_id:
        return
    lst = await store.find_one_or_none(list_id, 'lists')
    if lst is None:
        raise HTTPException(status_code=404, detail='List not found')
    if not store.can_access_list(lst, user.id):
        raise HTTPException(status_code=403, detail='forbidden')


async def _get_task(task_id: str, user: SessionUser) -> dict:
    try:
        task = await store.find_one(task_id, 'tasks')
    except store.ObjectNotFound:
        raise HTTPException(status_code=404, detail='Task not found')
    if not _task_visible(task, user, await _visible_list_ids(user)):
        raise HTTPException(status_code=403, detail='forbidden')
    return task


def _check_priority(priority: Optional[str]) -> None:
    if priority is not None and priority not in PRIORITIES:
        raise HTTPException(status_code=400, detail='priority must be one of low, medium, high')


@router.get('')
async def get_tasks(list: Optional[str] = None, user: SessionUser = Depends(require_login)):
    filters = {'list': list} if list else None
    tasks = await store.find_or_empty('tasks', filters)
    list_ids = await _visible_list_ids(user)
    return {'tasks': [t for t in tasks if _task_visible(t, user, list_ids)]}


@router.post('')
async def create_task(payload: TaskIn, user: SessionUser = Depends(require_login)):
    title = (payload.title or '').strip()
    if not title:
        raise HTTPException(status_code=400, detail='Title is required')
    _check_priority(payload.priority)
    await _check_list(payload.list, user)
    task = await store.insert_one('tasks', title, {
        'title': title,
        'description': payload.description or '',
        'completed': False,
        'priority': priority_value(payload.priority or 'medium'),
        'due_date': payload.due_date or '',
        'list': payload.list or '',
        'owner': user.id,
    })
    return {'success': True, 'task': task}


@router.patch('/{task_id}')
async def update_task(task_id: str, payload: TaskPatch, user: SessionUser = Depends(require_login)):
    current = await _get_task(task_id, user)
    _check_priority(payload.priority)
    changes: dict[str, Any] = payload.model_dump(exclude_unset=True, exclude={'base_modified_at'})
    if not changes:
        raise HTTPException(status_code=400, detail='No changes provided')

    if changed_since(current, payload.base_modified_at):
        logger.info('conflict on task %s: base=%s server=%s', task_id, payload.base_modified_at, current['modified_at'])
        return JSONResponse(status_code=409, content={'detail': 'conflict', 'server': current})

    if 'list' in changes and changes['list']:
        await _check_list(changes['list'], user)
    if changes.get('priority') is not None:
        changes['priority'] = priority_value(changes['priority'])
    title = None
    if 'title' in changes:
        title = (changes['title'] or '').strip()
        if not title:
            raise HTTPException(status_code=400, detail='Title is required')
        changes['title'] = title
    task = await store.update_one(task_id, title=title, metadata=changes)
    return {'success': True, 'task': task}


@router.delete('/{task_id}')
async def delete_task(task_id: str, user: SessionUser = Depends(require_login)):
    await _get_task(task_id, user)
    await store.delete_one(task_id)
    return {'success': True}


@router.post('/reorder')
async def reorder_tasks(tasks: Any = Body(None, embed=True), user: SessionUser = Depends(require_login)):
    if not isinstance(tasks, list):
        raise HTTPException(status_code=400, detail='Invalid request: tasks must be an array')

    list_ids = await _visible_list_ids(user)
    results = []
    # one update per item, in request order
    for item in tasks:
        task_id = item.get('id') if isinstance(item, dict) else None
        order = item.get('order') if isinstance(item, dict) else None
        if not task_id or not isinstance(order, int):
            results.append({'id': task_id, 'order': order, 'success': False, 'error': 'id and integer order required'})
            continue
        task = await store.find_one_or_none(task_id, 'tasks')
        if task is None or not _task_visible(task, user, list_ids):
            results.append({'id': task_id, 'order': order, 'success': False, 'error': 'Task not found'})
            continue
        updated = await store.update_one(task_id, metadata={'order': order})
        results.append({'id': task_id, 'order': order, 'success': True, 'task': updated})

    failed = [r for r in results if not r['success']]
    if failed:
        logger.warning('reorder: %d of %d task(s) failed', len(failed), len(results))
    return {'success': not failed, 'results': results}
