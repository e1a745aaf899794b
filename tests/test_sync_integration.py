"""End-to-end: SyncClient + SessionClient driving the real FastAPI app."""
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from conftest import PASSWORD
from todo_server.main import app
from todo_sync.cache import ListsCache
from todo_sync.client import SyncClient
from todo_sync.errors import AuthError
from todo_sync.retry import RetryController, RetryPolicy
from todo_sync.session import SessionClient


async def no_sleep(delay):
    pass


def fast_retry():
    return RetryController(RetryPolicy(max_attempts=2), sleep=no_sleep)


@pytest_asyncio.fixture
async def http(db):
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as ac:
        yield ac


@pytest_asyncio.fixture
async def session(http, make_user):
    await make_user()
    s = SessionClient(http)
    await s.login('alice@example.com', PASSWORD)
    return s


@pytest.mark.asyncio
async def test_session_login_and_current_session(http, make_user):
    user = await make_user()
    s = SessionClient(http)
    assert await s.get_current_session() is None
    with pytest.raises(AuthError):
        await s.login('alice@example.com', 'wrong-password')

    current = await s.login('alice@example.com', PASSWORD)
    assert current.user_id == user['id']
    assert http.headers['Authorization'].startswith('Bearer ')
    assert (await s.get_current_session()).email == 'alice@example.com'

    await s.logout()
    assert 'Authorization' not in http.headers
    assert await s.get_current_session() is None
    with pytest.raises(AuthError):
        await s.require_session()


@pytest.mark.asyncio
async def test_lists_and_tasks_round_trip(http, session):
    cache = ListsCache()
    lists = SyncClient.for_lists(http, session=session, cache=cache, retry=fast_retry())
    await lists.refresh()
    assert lists.get_snapshot() == []
    assert cache.get(session.current.user_id) == []

    made = await lists.create({'name': 'Groceries'})
    assert made.ok, made.reason
    list_id = made.entity.id.value

    tasks = SyncClient.for_tasks(http, list_id=list_id, lists=lists, retry=fast_retry())
    await tasks.refresh()
    milk = await tasks.create({'title': 'milk', 'list': list_id})
    eggs = await tasks.create({'title': 'eggs', 'list': list_id, 'priority': 'high'})
    assert milk.ok and eggs.ok
    assert eggs.entity.metadata['priority'] == {'key': 'high', 'value': 'High'}

    toggled = await tasks.toggle(milk.entity.id)
    assert toggled.ok
    assert toggled.entity.metadata['completed'] is True

    assert (await tasks.reorder([eggs.entity.id, milk.entity.id])).ok
    deleted = await tasks.delete(eggs.entity.id)
    assert deleted.ok

    # a fresh client sees exactly what the server stored
    fresh = SyncClient.for_tasks(http, list_id=list_id, retry=fast_retry())
    await fresh.refresh()
    [only] = fresh.get_snapshot()
    assert only.title == 'milk'
    assert only.metadata['completed'] is True
    assert only.metadata['order'] == 1

    await lists.refresh()
    assert [e.title for e in cache.get(session.current.user_id)] == ['Groceries']
    assert cache.get('someone-else') is None


@pytest.mark.asyncio
async def test_server_rejection_rolls_back(http, session):
    tasks = SyncClient.for_tasks(http, retry=fast_retry())
    outcome = await tasks.create({'title': 'orphan', 'list': 'no-such-list'})
    assert outcome.ok is False
    assert 'List not found' in outcome.reason
    assert tasks.get_snapshot() == []


@pytest.mark.asyncio
async def test_concurrent_edit_is_detected_as_conflict(http, session):
    mine = SyncClient.for_tasks(http, retry=fast_retry(), detect_conflicts=True)
    created = await mine.create({'title': 'shared'})
    assert created.ok

    # someone else edits the task after we read it
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as other_http:
        other = SessionClient(other_http)
        await other.login('alice@example.com', PASSWORD)
        theirs = SyncClient.for_tasks(other_http, retry=fast_retry())
        await theirs.refresh()
        assert (await theirs.update(created.entity.id, {'title': 'renamed elsewhere'})).ok

    outcome = await mine.toggle(created.entity.id)
    assert outcome.ok is False
    assert outcome.reason == 'toggle failed: changed by someone else'
    current = mine.get(created.entity.id)
    assert current.title == 'renamed elsewhere'
    assert current.metadata['completed'] is False


@pytest.mark.asyncio
async def test_expired_session_surfaces_auth_error(http, session):
    tasks = SyncClient.for_tasks(http, retry=fast_retry())
    await session.logout()
    with pytest.raises(AuthError):
        await tasks.refresh()
