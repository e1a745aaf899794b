"""HTTP gateway for one remote collection.

No local state: every method is one request against the todo server and
either returns entities or raises a classified `SyncError`.
"""
import logging
from typing import Any, Optional

import httpx

from .errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    RemoteError,
    SyncError,
    TransientError,
    ValidationError,
)
from .models import Collection, DurableId, Entity, PendingId

logger = logging.getLogger(__name__)


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(body, dict) and body.get('detail'):
        detail = body['detail']
        return detail if isinstance(detail, str) else str(detail)
    return resp.reason_phrase


def classify(resp: httpx.Response) -> SyncError:
    """Turn a non-2xx response into the matching error class."""
    status = resp.status_code
    detail = _detail(resp)
    if status >= 500:
        return TransientError(f'server error {status}: {detail}', status)
    if status in (401, 403):
        return AuthError(detail, status)
    if status in (400, 422):
        return ValidationError(detail, status)
    if status == 404:
        return NotFoundError(detail, status)
    if status == 409:
        server = None
        try:
            server = resp.json().get('server')
        except (ValueError, AttributeError):
            pass
        return ConflictError(detail, server=server, status=status)
    return RemoteError(f'unexpected status {status}: {detail}', status)


def serialize(payload: dict[str, Any]) -> dict[str, Any]:
    out = {}
    for key, value in payload.items():
        if isinstance(value, PendingId):
            raise ValidationError(f'{key} refers to an entity that is not saved yet')
        if isinstance(value, DurableId):
            value = value.value
        out[key] = value
    return out


def _wire_id(entity_id: Any) -> str:
    if isinstance(entity_id, PendingId):
        raise ValidationError(f'{entity_id} is not saved yet')
    return entity_id.value if isinstance(entity_id, DurableId) else str(entity_id)


class RemoteCollectionGateway:
    def __init__(self, http: httpx.AsyncClient, collection: Collection, prefix: str = '/api'):
        self.http = http
        self.collection = collection
        self.path = f'{prefix}/{collection.name}'

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(method, url, **kwargs)
        except httpx.TransportError as e:
            # connect/read timeouts, refused connections, dropped sockets
            raise TransientError(f'{method} {url}: {e.__class__.__name__}: {e}') from e

    def _body(self, resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError as e:
            raise RemoteError(f'{resp.request.method} {resp.request.url.path}: response is not JSON', resp.status_code) from e
        if not isinstance(body, dict):
            raise RemoteError(f'{resp.request.method} {resp.request.url.path}: unexpected response body', resp.status_code)
        return body

    def _record(self, record: Any, status: int) -> Entity:
        if not isinstance(record, dict):
            raise RemoteError(f'response has no {self.collection.item_key}', status)
        try:
            return Entity.from_record(record)
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteError(f'malformed {self.collection.item_key} record: {e}', status) from e

    def _entity(self, resp: httpx.Response) -> Entity:
        return self._record(self._body(resp).get(self.collection.item_key), resp.status_code)

    async def fetch_all(self, filter: Optional[dict[str, Any]] = None) -> list[Entity]:
        params = {k: v for k, v in serialize(filter or {}).items() if v is not None}
        resp = await self._request('GET', self.path, params=params)
        if resp.status_code == 404:
            # the store answers 404 for an empty collection
            return []
        if resp.is_error:
            raise classify(resp)
        records = self._body(resp).get(self.collection.name) or []
        if not isinstance(records, list):
            raise RemoteError(f'{self.collection.name} is not a list', resp.status_code)
        return [self._record(r, resp.status_code) for r in records]

    async def create(self, payload: dict[str, Any]) -> Entity:
        resp = await self._request('POST', self.path, json=serialize(payload))
        if resp.is_error:
            raise classify(resp)
        return self._entity(resp)

    async def update(self, entity_id: Any, changes: dict[str, Any], base_modified_at: Optional[str] = None) -> Entity:
        body = serialize(changes)
        if base_modified_at:
            body['base_modified_at'] = base_modified_at
        resp = await self._request('PATCH', f'{self.path}/{_wire_id(entity_id)}', json=body)
        if resp.is_error:
            raise classify(resp)
        return self._entity(resp)

    async def delete(self, entity_id: Any) -> None:
        resp = await self._request('DELETE', f'{self.path}/{_wire_id(entity_id)}')
        if resp.status_code == 404:
            logger.debug('%s %s already gone', self.collection.name, entity_id)
            return
        if resp.is_error:
            raise classify(resp)

    async def reorder(self, orders: list[tuple[Any, int]]) -> list[dict[str, Any]]:
        body = {'tasks': [{'id': _wire_id(eid), 'order': order} for eid, order in orders]}
        resp = await self._request('POST', f'{self.path}/reorder', json=body)
        if resp.is_error:
            raise classify(resp)
        results = self._body(resp).get('results') or []
        if not isinstance(results, list) or not all(isinstance(r, dict) for r in results):
            raise RemoteError('reorder results are malformed', resp.status_code)
        return [
            {**r, 'task': self._record(r['task'], resp.status_code)} if r.get('task') is not None else r
            for r in results
        ]
