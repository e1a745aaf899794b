import json
import re
from datetime import datetime, timezone
from typing import Any, Optional

_EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
_SLUG_RE = re.compile(r'[^a-z0-9]+')


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to timezone-aware UTC.

    SQLite drops tzinfo on round trip, so values read back from the DB are
    naive; treat those as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; returns None for empty or unparsable input."""
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value))
    except (TypeError, ValueError):
        return None


def changed_since(record: dict[str, Any], base_modified_at: Optional[str]) -> bool:
    """True when `record` was modified after the client's base timestamp."""
    base = parse_iso(base_modified_at)
    server_time = parse_iso(record.get('modified_at')) or parse_iso(record.get('created_at'))
    return base is not None and server_time is not None and server_time > base


def slugify(text: str) -> str:
    return _SLUG_RE.sub('-', (text or '').lower()).strip('-')


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and bool(_EMAIL_RE.match(email))


def priority_value(key: str) -> dict:
    """Priority is stored as {key, value} with a capitalised display label."""
    return {'key': key, 'value': key[:1].upper() + key[1:]}


def load_metadata(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def dump_metadata(data: Optional[dict[str, Any]]) -> str:
    return json.dumps(data or {}, sort_keys=True)
