"""Runtime configuration for the todo server.

Settings are read from environment variables at import time so they can be
toggled in development or production without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


# When true, the app is considered to be running in development mode.
# Use DEV_MODE=1 in the environment (set by dev launch scripts) to allow the
# insecure SECRET_KEY fallback and plain-http cookies.
DEV_MODE = _trueish(os.getenv('DEV_MODE', '0'))

# SECRET_KEY signs the session JWTs. The fallback exists only so tests and
# local experiments can import the package; startup refuses it outside
# DEV_MODE.
INSECURE_SECRET_KEY = 'CHANGE_ME_IN_ENV_FOR_TESTS'
SECRET_KEY = os.getenv('SECRET_KEY', INSECURE_SECRET_KEY)
ALGORITHM = 'HS256'

DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./todo_app.db')

# Session cookie settings. The token lives for SESSION_DAYS days.
AUTH_COOKIE_NAME = os.getenv('AUTH_COOKIE_NAME', 'auth-token')
try:
    SESSION_DAYS = int(os.getenv('SESSION_DAYS', '7'))
except ValueError:
    SESSION_DAYS = 7
COOKIE_SECURE = _trueish(os.getenv('COOKIE_SECURE', '0' if DEV_MODE else '1'))

# Outgoing mail goes through the Resend HTTP API. Without a key the mailer
# logs and reports failure instead of sending.
RESEND_API_KEY = os.getenv('RESEND_API_KEY')
RESEND_API_URL = os.getenv('RESEND_API_URL', 'https://api.resend.com/emails')
MAIL_FROM = os.getenv('MAIL_FROM', 'support@todo.example.com')

MIN_PASSWORD_LENGTH = 8
MAX_INVITE_MESSAGE_LENGTH = 500
DEFAULT_LIST_COLOR = '#3b82f6'


def base_url() -> str:
    """Public URL used to build links in outgoing mail."""
    explicit = os.getenv('BASE_URL')
    if explicit:
        return explicit.rstrip('/')
    vercel = os.getenv('VERCEL_URL')
    if vercel:
        return f'https://{vercel}'
    return 'http://localhost:3000'
