"""Per-user cache of the lists collection, shared between views of one session."""
from typing import Iterable, Optional

from .models import Entity


class ListsCache:
    """Holds the last lists snapshot for exactly one owner.

    Reading with a different owner than the one that wrote the cache is a
    miss, so a re-login never shows the previous user's lists.
    """

    def __init__(self, owner: Optional[str] = None):
        self.owner = owner
        self._entities: Optional[list[Entity]] = None

    def has(self, owner: Optional[str] = None) -> bool:
        if self._entities is None:
            return False
        return owner is None or owner == self.owner

    def get(self, owner: Optional[str] = None) -> Optional[list[Entity]]:
        if not self.has(owner):
            return None
        return list(self._entities)

    def set(self, entities: Iterable[Entity], owner: Optional[str] = None) -> None:
        if owner is not None and owner != self.owner:
            self.owner = owner
        self._entities = [e for e in entities if not e.is_pending]

    def clear(self) -> None:
        self._entities = None
        self.owner = None
