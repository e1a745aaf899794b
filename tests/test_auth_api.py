import pytest

from conftest import PASSWORD, login
from todo_server import store
from todo_server.auth import create_token, verify_token, session_user_from_record


@pytest.mark.asyncio
async def test_signup_creates_unverified_user_and_mails_code(client, outbox):
    resp = await client.post('/api/auth/signup', json={
        'email': 'New@Example.com', 'password': PASSWORD, 'display_name': 'Newbie'})
    assert resp.status_code == 201
    body = resp.json()
    assert body['success'] is True
    user = await store.get_user_by_email('new@example.com')
    assert user['id'] == body['userId']
    assert user['metadata']['email_verified'] is False
    code = user['metadata']['verification_code']
    assert len(code) == 6 and code.isalnum() and code == code.upper()

    assert len(outbox) == 1
    mail = outbox[0]
    assert mail['to'] == 'new@example.com'
    assert code in mail['html']
    assert 'verify-email?code=' in mail['html']


@pytest.mark.asyncio
async def test_signup_validation(client, outbox, make_user):
    resp = await client.post('/api/auth/signup', json={'email': 'a@example.com', 'password': PASSWORD})
    assert resp.status_code == 400
    resp = await client.post('/api/auth/signup', json={'email': 'not-an-email', 'password': PASSWORD, 'display_name': 'X'})
    assert resp.status_code == 400
    resp = await client.post('/api/auth/signup', json={'email': 'a@example.com', 'password': 'short', 'display_name': 'X'})
    assert resp.status_code == 400
    assert '8' in resp.json()['detail']

    await make_user('taken@example.com')
    resp = await client.post('/api/auth/signup', json={'email': 'taken@example.com', 'password': PASSWORD, 'display_name': 'X'})
    assert resp.status_code == 409
    assert outbox == []


@pytest.mark.asyncio
async def test_signup_succeeds_when_mail_is_not_configured(client):
    # no outbox fixture: RESEND_API_KEY is unset so delivery reports failure
    resp = await client.post('/api/auth/signup', json={
        'email': 'nomail@example.com', 'password': PASSWORD, 'display_name': 'No Mail'})
    assert resp.status_code == 201


@pytest.mark.asyncio
async def test_verify_then_login_flow(client, outbox):
    await client.post('/api/auth/signup', json={
        'email': 'flow@example.com', 'password': PASSWORD, 'display_name': 'Flow'})
    user = await store.get_user_by_email('flow@example.com')
    code = user['metadata']['verification_code']

    # unverified users can't log in yet
    resp = await client.post('/api/auth/login', json={'email': 'flow@example.com', 'password': PASSWORD})
    assert resp.status_code == 403

    resp = await client.post('/api/auth/verify', json={'email': 'flow@example.com', 'code': 'WRONG1'})
    assert resp.status_code == 400

    resp = await client.post('/api/auth/verify', json={'email': 'flow@example.com', 'code': code.lower()})
    assert resp.status_code == 200
    assert resp.json()['user']['email_verified'] is True
    assert client.cookies.get('auth-token')

    resp = await client.post('/api/auth/verify', json={'email': 'flow@example.com', 'code': code})
    assert resp.status_code == 400

    resp = await client.get('/api/auth/me')
    assert resp.status_code == 200
    me = resp.json()['user']
    assert me['email'] == 'flow@example.com'
    assert me['checkbox_position'] == 'left'


@pytest.mark.asyncio
async def test_verify_unknown_user(client):
    resp = await client.post('/api/auth/verify', json={'email': 'ghost@example.com', 'code': 'ABC123'})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_resend_verification_does_not_reveal_accounts(client, outbox, make_user):
    resp = await client.post('/api/auth/resend-verification', json={'email': 'ghost@example.com'})
    assert resp.status_code == 200
    assert outbox == []

    await make_user('pending@example.com', verified=False)
    resp = await client.post('/api/auth/resend-verification', json={'email': 'pending@example.com'})
    assert resp.status_code == 200
    assert len(outbox) == 1
    user = await store.get_user_by_email('pending@example.com')
    assert user['metadata']['verification_code'] in outbox[0]['html']

    await make_user('done@example.com')
    resp = await client.post('/api/auth/resend-verification', json={'email': 'done@example.com'})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_login_rejects_bad_credentials(client, make_user):
    await make_user()
    resp = await client.post('/api/auth/login', json={'email': 'alice@example.com', 'password': 'nope-nope'})
    assert resp.status_code == 401
    resp = await client.post('/api/auth/login', json={'email': 'nobody@example.com', 'password': PASSWORD})
    assert resp.status_code == 401
    resp = await client.post('/api/auth/login', json={'email': 'alice@example.com'})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_logout_clears_session(client, alice):
    assert (await client.get('/api/auth/me')).status_code == 200
    resp = await client.post('/api/auth/logout')
    assert resp.status_code == 200
    assert (await client.get('/api/auth/me')).status_code == 401


@pytest.mark.asyncio
async def test_bearer_header_is_authoritative(client, alice):
    # a tampered header must not fall back to the valid cookie
    resp = await client.get('/api/auth/me', headers={'Authorization': 'Bearer not-a-token'})
    assert resp.status_code == 401

    token = create_token(session_user_from_record(alice))
    client.cookies.clear()
    resp = await client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})
    assert resp.status_code == 200
    assert resp.json()['user']['id'] == alice['id']


def test_token_round_trip_keeps_identity():
    record = {'id': 'u1', 'title': 'Zed', 'metadata': {
        'email': 'zed@example.com', 'display_name': 'Zed', 'email_verified': True, 'color_theme': 'dark'}}
    user = verify_token(create_token(session_user_from_record(record)))
    assert user.id == 'u1'
    assert user.email == 'zed@example.com'
    assert user.color_theme == 'dark'
    assert verify_token('garbage') is None


@pytest.mark.asyncio
async def test_update_profile_and_preferences(client, alice):
    resp = await client.post('/api/auth/update-profile', json={'display_name': '  Alice B  '})
    assert resp.status_code == 200
    assert resp.json()['user']['display_name'] == 'Alice B'

    resp = await client.post('/api/auth/update-preferences', json={'checkbox_position': 'right', 'color_theme': 'dark', 'style_theme': 'ocean'})
    assert resp.status_code == 200
    me = (await client.get('/api/auth/me')).json()['user']
    assert me['display_name'] == 'Alice B'
    assert me['checkbox_position'] == 'right'
    assert me['color_theme'] == 'dark'
    assert me['style_theme'] == 'ocean'

    resp = await client.post('/api/auth/update-preferences', json={'checkbox_position': 'middle'})
    assert resp.status_code == 400
    resp = await client.post('/api/auth/update-profile', json={'display_name': '   '})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_change_password(client, alice):
    resp = await client.post('/api/auth/change-password', json={'current_password': 'wrong-pass', 'new_password': 'another-pass'})
    assert resp.status_code == 400
    resp = await client.post('/api/auth/change-password', json={'current_password': PASSWORD, 'new_password': 'short'})
    assert resp.status_code == 400
    resp = await client.post('/api/auth/change-password', json={'current_password': PASSWORD, 'new_password': 'another-pass'})
    assert resp.status_code == 200

    await client.post('/api/auth/logout')
    await login(client, password='another-pass')


@pytest.mark.asyncio
async def test_routes_require_login(client):
    assert (await client.get('/api/lists')).status_code == 401
    assert (await client.get('/api/tasks')).status_code == 401
    assert (await client.post('/api/auth/update-profile', json={'display_name': 'x'})).status_code == 401
