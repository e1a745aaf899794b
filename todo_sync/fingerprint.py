"""Order-independent digest over a collection snapshot.

Used to skip a merge when a poll returns exactly what we already merged.
Not cryptographic; sha1 is only here because it is fast and stable.
"""
import hashlib
import json
from typing import Any, Iterable, Optional, Sequence

from .models import Entity


def _plain(value: Any) -> Any:
    # PendingId / DurableId never reach a remote snapshot, but be safe for local ones
    if hasattr(value, 'model_dump'):
        return str(value)
    return value


def entity_line(entity: Entity, fields: Optional[Sequence[str]] = None) -> str:
    if fields is None:
        tracked = entity.metadata
    else:
        tracked = {f: entity.metadata.get(f) for f in fields}
    tracked = {k: _plain(v) for k, v in tracked.items()}
    body = json.dumps(tracked, sort_keys=True, separators=(',', ':'), default=str)
    return '|'.join((str(entity.id), entity.title, entity.modified_at or '', body))


def fingerprint(entities: Iterable[Entity], fields: Optional[Sequence[str]] = None) -> str:
    lines = sorted((entity_line(e, fields) for e in entities))
    digest = hashlib.sha1('\n'.join(lines).encode('utf-8'))
    return digest.hexdigest()[:16]
