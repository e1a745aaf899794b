"""Account routes: sign-up, email verification, login and profile settings."""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import logging

from . import config, mailer, store
from .auth import (
    SessionUser,
    clear_auth_cookie,
    generate_verification_code,
    get_session,
    hash_password,
    issue_session,
    require_login,
    session_user_from_record,
    verify_password,
)
from .utils import is_valid_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/auth')

CHECKBOX_POSITIONS = ('left', 'right')
COLOR_THEMES = ('light', 'dark', 'system')
STYLE_THEMES = ('default', 'ocean', 'forest', 'sunset', 'rose', 'lavender', 'peach', 'mint')


class SignupIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    display_name: Optional[str] = None


class VerifyIn(BaseModel):
    email: Optional[str] = None
    code: Optional[str] = None


class EmailIn(BaseModel):
    email: Optional[str] = None


class LoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ProfileIn(BaseModel):
    display_name: Optional[str] = None


class PasswordChangeIn(BaseModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class PreferencesIn(BaseModel):
    checkbox_position: Optional[str] = None
    color_theme: Optional[str] = None
    style_theme: Optional[str] = None


def _user_payload(user: SessionUser) -> dict:
    out = user.model_dump(exclude_none=True)
    out.setdefault('checkbox_position', 'left')
    return out


@router.post('/signup', status_code=201)
async def signup(payload: SignupIn):
    if not payload.email or not payload.password or not payload.display_name:
        raise HTTPException(status_code=400, detail='Email, password, and display name are required')
    if not is_valid_email(payload.email):
        raise HTTPException(status_code=400, detail='Invalid email format')
    if len(payload.password) < config.MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f'Password must be at least {config.MIN_PASSWORD_LENGTH} characters')
    if await store.get_user_by_email(payload.email):
        raise HTTPException(status_code=409, detail='An account with this email already exists')

    code = generate_verification_code()
    user = await store.create_user(payload.email, hash_password(payload.password), payload.display_name.strip(), code)
    sent = await mailer.send_verification_email(user['metadata']['email'], user['metadata']['display_name'], code)
    if not sent:
        logger.error('failed to send verification email, but user %s was created', user['id'])
    return {
        'success': True,
        'message': 'Account created. Please check your email to verify your account.',
        'userId': user['id'],
    }


@router.post('/verify')
async def verify(payload: VerifyIn, response: Response):
    if not payload.email or not payload.code:
        raise HTTPException(status_code=400, detail='Email and verification code are required')
    user = await store.get_user_by_email(payload.email)
    if not user:
        raise HTTPException(status_code=404, detail='User not found')
    meta = user['metadata']
    if meta.get('email_verified'):
        raise HTTPException(status_code=400, detail='Email is already verified')
    if not meta.get('verification_code') or meta.get('verification_code') != payload.code.strip().upper():
        raise HTTPException(status_code=400, detail='Invalid verification code')

    user = await store.update_one(user['id'], metadata={'email_verified': True, 'verification_code': ''})
    session_user = session_user_from_record(user)
    issue_session(response, session_user)
    return {'success': True, 'user': _user_payload(session_user)}


@router.post('/resend-verification')
async def resend_verification(payload: EmailIn):
    if not payload.email:
        raise HTTPException(status_code=400, detail='Email is required')
    user = await store.get_user_by_email(payload.email)
    if not user:
        # same answer as the success path so the endpoint can't be used to
        # probe for accounts
        return {'success': True, 'message': 'If an account exists, a new verification email has been sent.'}
    if user['metadata'].get('email_verified'):
        raise HTTPException(status_code=400, detail='Email is already verified')
    code = generate_verification_code()
    await store.update_one(user['id'], metadata={'verification_code': code})
    await mailer.send_verification_email(user['metadata']['email'], user['metadata'].get('display_name', ''), code)
    return {'success': True, 'message': 'Verification email sent'}


@router.post('/login')
async def login(payload: LoginIn, response: Response):
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail='Email and password are required')
    user = await store.get_user_by_email(payload.email)
    if not user or not verify_password(payload.password, user['metadata'].get('password_hash', '')):
        raise HTTPException(status_code=401, detail='Invalid email or password')
    if not user['metadata'].get('email_verified'):
        raise HTTPException(status_code=403, detail='Please verify your email before logging in')
    session_user = session_user_from_record(user)
    issue_session(response, session_user)
    return {'success': True, 'user': _user_payload(session_user)}


@router.post('/logout')
async def logout():
    resp = JSONResponse({'success': True})
    clear_auth_cookie(resp)
    return resp


@router.get('/me')
async def me(session: Optional[SessionUser] = Depends(get_session)):
    if not session:
        raise HTTPException(status_code=401, detail='Not authenticated')
    fresh = await store.get_user_by_id(session.id)
    user = session_user_from_record(fresh) if fresh else session
    return {'user': _user_payload(user)}


@router.post('/update-profile')
async def update_profile(payload: ProfileIn, response: Response, session: SessionUser = Depends(require_login)):
    name = (payload.display_name or '').strip()
    if not name:
        raise HTTPException(status_code=400, detail='Display name is required')
    try:
        user = await store.update_one(session.id, title=name, metadata={'display_name': name})
    except store.ObjectNotFound:
        raise HTTPException(status_code=404, detail='User not found')
    updated = session_user_from_record(user)
    issue_session(response, updated)
    return {'success': True, 'user': _user_payload(updated)}


@router.post('/change-password')
async def change_password(payload: PasswordChangeIn, session: SessionUser = Depends(require_login)):
    if not payload.current_password or not payload.new_password:
        raise HTTPException(status_code=400, detail='Current password and new password are required')
    if len(payload.new_password) < config.MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f'New password must be at least {config.MIN_PASSWORD_LENGTH} characters')
    user = await store.get_user_by_id(session.id)
    if not user:
        raise HTTPException(status_code=404, detail='User not found')
    if not verify_password(payload.current_password, user['metadata'].get('password_hash', '')):
        raise HTTPException(status_code=400, detail='Current password is incorrect')
    await store.update_one(user['id'], metadata={'password_hash': hash_password(payload.new_password)})
    return {'success': True, 'message': 'Password changed successfully'}


@router.post('/update-preferences')
async def update_preferences(payload: PreferencesIn, response: Response, session: SessionUser = Depends(require_login)):
    if payload.checkbox_position and payload.checkbox_position not in CHECKBOX_POSITIONS:
        raise HTTPException(status_code=400, detail='Invalid checkbox position. Must be "left" or "right"')
    if payload.color_theme and payload.color_theme not in COLOR_THEMES:
        raise HTTPException(status_code=400, detail='Invalid color theme. Must be "light", "dark", or "system"')
    if payload.style_theme and payload.style_theme not in STYLE_THEMES:
        raise HTTPException(status_code=400, detail='Invalid style theme')
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail='No preferences provided to update')
    try:
        user = await store.update_one(session.id, metadata=changes)
    except store.ObjectNotFound:
        raise HTTPException(status_code=404, detail='User not found')
    updated = session_user_from_record(user)
    issue_session(response, updated)
    return {'success': True, 'user': _user_payload(updated)}
