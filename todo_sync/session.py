"""Session collaborator: who is logged in, as far as the server is concerned."""
import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from .errors import AuthError, TransientError
from .gateway import classify

logger = logging.getLogger(__name__)


class CurrentSession(BaseModel):
    user_id: str
    email: str
    display_name: str = ''


class SessionClient:
    """Logs in against `/api/auth` and remembers the session token.

    The server sets the token as an HttpOnly cookie; outside a browser we
    lift it from the response and send it as a bearer header instead, so
    the client also works against plain-http development servers that
    mark the cookie secure.
    """

    def __init__(self, http: httpx.AsyncClient, cookie_name: str = 'auth-token', prefix: str = '/api/auth'):
        self.http = http
        self.cookie_name = cookie_name
        self.prefix = prefix
        self.current: Optional[CurrentSession] = None

    async def _post(self, path: str, json: Optional[dict] = None) -> httpx.Response:
        try:
            return await self.http.post(f'{self.prefix}{path}', json=json)
        except httpx.TransportError as e:
            raise TransientError(f'{path}: {e}') from e

    async def login(self, email: str, password: str) -> CurrentSession:
        resp = await self._post('/login', {'email': email, 'password': password})
        if resp.is_error:
            raise classify(resp)
        token = resp.cookies.get(self.cookie_name)
        if token:
            self.http.headers['Authorization'] = f'Bearer {token}'
        self.current = _from_user(resp.json()['user'])
        logger.info('logged in as %s', self.current.email)
        return self.current

    async def logout(self) -> None:
        try:
            await self._post('/logout')
        finally:
            self.http.headers.pop('Authorization', None)
            self.http.cookies.clear()
            self.current = None

    async def get_current_session(self) -> Optional[CurrentSession]:
        try:
            resp = await self.http.get(f'{self.prefix}/me')
        except httpx.TransportError as e:
            raise TransientError(f'/me: {e}') from e
        if resp.status_code == 401:
            self.current = None
            return None
        if resp.is_error:
            raise classify(resp)
        self.current = _from_user(resp.json()['user'])
        return self.current

    async def require_session(self) -> CurrentSession:
        session = self.current or await self.get_current_session()
        if session is None:
            raise AuthError('not logged in', 401)
        return session


def _from_user(user: dict) -> CurrentSession:
    return CurrentSession(
        user_id=user['id'],
        email=user.get('email', ''),
        display_name=user.get('display_name', ''),
    )
