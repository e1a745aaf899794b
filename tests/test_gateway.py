import json

import httpx
import pytest

from todo_sync.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    RemoteError,
    TransientError,
    ValidationError,
)
from todo_sync.gateway import RemoteCollectionGateway
from todo_sync.models import LISTS, TASKS, DurableId, PendingId

RECORD = {
    'id': 'abc', 'type': 'tasks', 'slug': 'milk', 'title': 'milk',
    'metadata': {'title': 'milk', 'completed': False},
    'created_at': '2024-01-01T00:00:00+00:00', 'modified_at': '2024-01-01T00:00:00+00:00',
}


def gateway(handler, collection=TASKS):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url='http://test')
    return RemoteCollectionGateway(http, collection)


@pytest.mark.asyncio
async def test_fetch_all_parses_records_and_passes_filter():
    seen = {}

    def handler(request):
        seen['url'] = str(request.url)
        return httpx.Response(200, json={'tasks': [RECORD]})

    entities = await gateway(handler).fetch_all({'list': 'l1'})
    assert seen['url'] == 'http://test/api/tasks?list=l1'
    assert [e.id for e in entities] == [DurableId(value='abc')]
    assert entities[0].metadata['title'] == 'milk'


@pytest.mark.asyncio
async def test_fetch_all_treats_not_found_as_empty():
    entities = await gateway(lambda r: httpx.Response(404, json={'detail': 'no lists found'}), LISTS).fetch_all()
    assert entities == []


@pytest.mark.asyncio
@pytest.mark.parametrize('status,exc', [
    (500, TransientError),
    (503, TransientError),
    (401, AuthError),
    (403, AuthError),
    (400, ValidationError),
    (422, ValidationError),
    (404, NotFoundError),
    (418, RemoteError),
])
async def test_update_error_mapping(status, exc):
    gw = gateway(lambda r: httpx.Response(status, json={'detail': 'nope'}))
    with pytest.raises(exc) as info:
        await gw.update('abc', {'completed': True})
    assert info.value.status == status


@pytest.mark.asyncio
async def test_conflict_carries_server_copy():
    gw = gateway(lambda r: httpx.Response(409, json={'detail': 'conflict', 'server': RECORD}))
    with pytest.raises(ConflictError) as info:
        await gw.update('abc', {'completed': True}, base_modified_at='2023-12-31T00:00:00+00:00')
    assert info.value.server['id'] == 'abc'


@pytest.mark.asyncio
async def test_transport_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError('connection refused', request=request)

    with pytest.raises(TransientError):
        await gateway(handler).fetch_all()


@pytest.mark.asyncio
async def test_create_and_update_send_json():
    bodies = []

    def handler(request):
        bodies.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={'success': True, 'task': RECORD})

    gw = gateway(handler)
    created = await gw.create({'title': 'milk', 'list': DurableId(value='l1')})
    await gw.update(created.id, {'completed': True}, base_modified_at='2024-01-01T00:00:00+00:00')
    assert bodies == [
        ('POST', '/api/tasks', {'title': 'milk', 'list': 'l1'}),
        ('PATCH', '/api/tasks/abc', {'completed': True, 'base_modified_at': '2024-01-01T00:00:00+00:00'}),
    ]


@pytest.mark.asyncio
async def test_pending_references_never_reach_the_wire():
    gw = gateway(lambda r: pytest.fail('request should not be sent'))
    with pytest.raises(ValidationError):
        await gw.create({'title': 'x', 'list': PendingId(token='1')})
    with pytest.raises(ValidationError):
        await gw.delete(PendingId(token='1'))


@pytest.mark.asyncio
async def test_delete_is_idempotent():
    gw = gateway(lambda r: httpx.Response(404, json={'detail': 'Task not found'}))
    assert await gw.delete('abc') is None


@pytest.mark.asyncio
async def test_malformed_success_body_is_a_remote_error():
    gw = gateway(lambda r: httpx.Response(200, json={'success': True}))
    with pytest.raises(RemoteError):
        await gw.create({'title': 'x'})


@pytest.mark.asyncio
async def test_reorder_posts_orders():
    seen = {}

    def handler(request):
        seen['body'] = json.loads(request.content)
        return httpx.Response(200, json={'success': True, 'results': [{'id': 'a', 'order': 0, 'success': True}]})

    results = await gateway(handler).reorder([(DurableId(value='a'), 0)])
    assert seen['body'] == {'tasks': [{'id': 'a', 'order': 0}]}
    assert results[0]['success'] is True


@pytest.mark.asyncio
@pytest.mark.parametrize('body', [
    {'text': '<html>proxy login</html>'},
    {'json': [RECORD]},
    {'json': {'success': True, 'task': {'title': 'no id'}}},
])
async def test_unreadable_success_body_is_a_remote_error(body):
    gw = gateway(lambda r: httpx.Response(200, **body))
    with pytest.raises(RemoteError):
        await gw.create({'title': 'x'})
    with pytest.raises(RemoteError):
        await gw.update('abc', {'completed': True})


@pytest.mark.asyncio
@pytest.mark.parametrize('body', [
    {'text': '<html>proxy login</html>'},
    {'json': ['not', 'an', 'object']},
    {'json': {'tasks': {'abc': RECORD}}},
])
async def test_unreadable_snapshot_is_a_remote_error(body):
    with pytest.raises(RemoteError):
        await gateway(lambda r: httpx.Response(200, **body)).fetch_all()


@pytest.mark.asyncio
async def test_reorder_results_must_be_records():
    gw = gateway(lambda r: httpx.Response(200, json={'success': True, 'results': ['a']}))
    with pytest.raises(RemoteError):
        await gw.reorder([(DurableId(value='a'), 0)])

    gw = gateway(lambda r: httpx.Response(200, json={'success': True, 'results': [
        {'id': 'abc', 'order': 0, 'success': True, 'task': RECORD}]}))
    [result] = await gw.reorder([(DurableId(value='abc'), 0)])
    assert result['task'].id == DurableId(value='abc')
