import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException, status, Request, Response
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from jose import JWTError, jwt
from pydantic import BaseModel
import logging

from . import config

logger = logging.getLogger(__name__)

# prefer a pure-Python, widely-available scheme for tests and portability;
# keep bcrypt as a fallback for hashes created elsewhere.
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


class SessionUser(BaseModel):
    """Identity carried inside the session token."""
    id: str
    email: str
    display_name: str
    email_verified: bool = False
    checkbox_position: Optional[str] = None
    color_theme: Optional[str] = None
    style_theme: Optional[str] = None


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # unknown or malformed hash
        return False


def generate_verification_code() -> str:
    return ''.join(secrets.choice(_CODE_ALPHABET) for _ in range(6))


def session_user_from_record(user: dict) -> SessionUser:
    meta = user['metadata']
    return SessionUser(
        id=user['id'],
        email=meta.get('email', ''),
        display_name=meta.get('display_name', ''),
        email_verified=bool(meta.get('email_verified')),
        checkbox_position=meta.get('checkbox_position'),
        color_theme=meta.get('color_theme'),
        style_theme=meta.get('style_theme'),
    )


def create_token(user: SessionUser, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(days=config.SESSION_DAYS))
    to_encode = {
        "userId": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "email_verified": user.email_verified,
        # RFC 7519 NumericDate (seconds since epoch)
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    for pref in ('checkbox_position', 'color_theme', 'style_theme'):
        value = getattr(user, pref)
        if value:
            to_encode[pref] = value
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def verify_token(token: str) -> Optional[SessionUser]:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError as e:
        logger.info('session token rejected: %s', str(e))
        return None
    user_id = payload.get("userId")
    if not user_id:
        return None
    return SessionUser(
        id=user_id,
        email=payload.get("email") or '',
        display_name=payload.get("display_name") or '',
        email_verified=bool(payload.get("email_verified")),
        checkbox_position=payload.get("checkbox_position"),
        color_theme=payload.get("color_theme"),
        style_theme=payload.get("style_theme"),
    )


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        config.AUTH_COOKIE_NAME,
        token,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite='lax',
        max_age=60 * 60 * 24 * config.SESSION_DAYS,
        path='/',
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(config.AUTH_COOKIE_NAME, path='/')


def issue_session(response: Response, user: SessionUser) -> str:
    token = create_token(user)
    set_auth_cookie(response, token)
    return token


async def get_session(request: Request, token: Optional[str] = Depends(oauth2_scheme)) -> Optional[SessionUser]:
    """Resolve the caller's session from the bearer header or the auth cookie.

    An Authorization header, when present, is authoritative: a tampered
    header is not rescued by a valid cookie.
    """
    if token is None:
        token = request.cookies.get(config.AUTH_COOKIE_NAME)
    if not token:
        return None
    return verify_token(token)


async def require_login(user: Optional[SessionUser] = Depends(get_session)) -> SessionUser:
    """Dependency that enforces an authenticated user.

    Returns the SessionUser when present, otherwise raises 401 Unauthorized.
    """
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return user
