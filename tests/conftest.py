import os
import pathlib
import sys
import tempfile
import warnings

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except Exception:
    pass

# Settings are read at import time, so they must be in place before the
# server package is imported. Each test run gets its own throw-away SQLite
# file and a deterministic test-only secret.
_TMP = tempfile.mkdtemp(prefix='todo-tests-')
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')
os.environ['DATABASE_URL'] = f'sqlite+aiosqlite:///{_TMP}/test.db'
os.environ['COOKIE_SECURE'] = '0'
os.environ.pop('RESEND_API_KEY', None)

import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from todo_server.main import app
from todo_server.db import reset_db
from todo_server import mailer, store
from todo_server.auth import hash_password


PASSWORD = 'correct-horse'


@pytest_asyncio.fixture
async def db():
    await reset_db()


@pytest_asyncio.fixture
async def client(db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac


@pytest_asyncio.fixture
async def other_client(db):
    """A second, independent browser session against the same server."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing mail instead of calling the Resend API."""
    sent = []

    async def fake_deliver(payload, client=None):
        sent.append(payload)
        return True

    monkeypatch.setattr(mailer, 'deliver', fake_deliver)
    return sent


@pytest.fixture
def make_user():
    """Factory for verified users stored directly in the object store."""

    async def _make(email='alice@example.com', display_name='Alice', password=PASSWORD, verified=True):
        user = await store.create_user(email, hash_password(password), display_name)
        if verified:
            user = await store.update_one(user['id'], metadata={'email_verified': True})
        return user

    return _make


async def login(ac, email='alice@example.com', password=PASSWORD):
    resp = await ac.post('/api/auth/login', json={'email': email, 'password': password})
    assert resp.status_code == 200, resp.text
    return resp.json()['user']


@pytest_asyncio.fixture
async def alice(client, make_user):
    user = await make_user()
    await login(client)
    return user


@pytest_asyncio.fixture
async def bob(other_client, make_user):
    user = await make_user('bob@example.com', 'Bob')
    await login(other_client, 'bob@example.com')
    return user
