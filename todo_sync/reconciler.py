"""Optimistic reconciler: the one owner of a collection's local snapshot.

Every public method is synchronous. Callers run on a single event loop and
only suspend around gateway calls, so no two state transitions can
interleave; that is the whole locking story.

Per entity the reconciler tracks at most one pending mutation. The pending
record remembers the last *confirmed* value of the entity (its base) so a
rollback always lands on something the remote store actually agreed to,
even when several optimistic edits were stacked on top of each other.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .errors import NotFoundError, ValidationError
from .fingerprint import fingerprint
from .models import (
    Collection,
    DurableId,
    Entity,
    EntityId,
    EntityState,
    Handle,
    Mutation,
    MutationKind,
    PendingId,
    new_pending_id,
)

logger = logging.getLogger(__name__)

Listener = Callable[[list[Entity]], Any]


@dataclass
class _Pending:
    handle: Handle
    base: Optional[Entity]


@dataclass(frozen=True)
class FetchToken:
    """Marks when a fetch started: its position among fetches and the confirmations seen so far."""
    seq: int
    confirms: int


def _newer(a: Optional[str], b: Optional[str]) -> bool:
    """True when timestamp `a` is strictly later than `b`."""
    if not a or not b:
        return False
    try:
        return datetime.fromisoformat(a) > datetime.fromisoformat(b)
    except ValueError:
        return a > b


class Reconciler:
    def __init__(
        self,
        collection: Optional[Collection] = None,
        tombstone_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.collection = collection
        self.title_field = collection.title_field if collection else 'title'
        self.tracked_fields = collection.tracked_fields if collection else None
        self.tombstone_ttl = tombstone_ttl
        self._clock = clock

        self._entities: dict[EntityId, Entity] = {}
        self._pending: dict[EntityId, _Pending] = {}
        self._tombstones: dict[str, float] = {}
        self._aliases: dict[PendingId, DurableId] = {}
        self._rolled_back: set[PendingId] = set()
        # confirmation and fetch counters; fetch tokens are snapshots of both
        self._confirms = 0
        self._confirmed_at: dict[EntityId, int] = {}
        self._merged_through = 0
        self._fetches = 0
        self._merged_fetch = 0
        self._last_fingerprint: Optional[str] = None
        self._seq = 0
        self._listeners: list[Listener] = []

        self.version = 0
        self.errors: list[str] = []

    # -- reading ---------------------------------------------------------

    def get_snapshot(self) -> list[Entity]:
        return [e for eid, e in self._entities.items() if not self._hidden(eid)]

    def get(self, entity_id: Any) -> Optional[Entity]:
        eid = self.resolve(entity_id)
        if self._hidden(eid):
            return None
        return self._entities.get(eid)

    def resolve(self, entity_id: Any) -> EntityId:
        """Map a confirmed temporary id to its durable id; plain strings become durable ids."""
        if isinstance(entity_id, str):
            return DurableId(value=entity_id)
        if isinstance(entity_id, PendingId):
            return self._aliases.get(entity_id, entity_id)
        return entity_id

    def state_of(self, entity_id: Any) -> Optional[EntityState]:
        eid = self.resolve(entity_id)
        rec = self._pending.get(eid)
        if rec is not None:
            return rec.handle.kind.pending_state
        if eid in self._entities:
            return EntityState.CONFIRMED
        if eid in self._rolled_back:
            return EntityState.ROLLED_BACK
        return None

    def confirmed_value(self, entity_id: Any) -> Optional[Entity]:
        """The last value the remote store agreed to, ignoring optimistic edits."""
        eid = self.resolve(entity_id)
        rec = self._pending.get(eid)
        if rec is not None:
            return rec.base
        return self._entities.get(eid)

    def pending_handle(self, entity_id: Any) -> Optional[Handle]:
        rec = self._pending.get(self.resolve(entity_id))
        return rec.handle if rec else None

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1] if self.errors else None

    def is_tombstoned(self, entity_id: Any) -> bool:
        eid = self.resolve(entity_id)
        return isinstance(eid, DurableId) and self._tombstoned(eid.value)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    # -- optimistic writes ----------------------------------------------

    def apply_optimistic(self, mutation: Mutation) -> Handle:
        if mutation.kind == MutationKind.CREATE:
            return self._apply_create(mutation)

        if mutation.target is None:
            raise ValidationError(f'{mutation.description} needs a target id')
        eid = self.resolve(mutation.target)
        current = self.get(eid)
        if current is None:
            raise NotFoundError(f'{eid} not found')
        prior = self._pending.get(eid)
        if prior is not None and prior.handle.kind == MutationKind.CREATE:
            raise ValidationError(f'{eid} is not confirmed yet')
        if mutation.kind == MutationKind.UPDATE and not mutation.changes:
            raise ValidationError(f'{mutation.description}: no changes given')

        # a superseding mutation keeps the confirmed base of the one it replaces
        base = prior.base if prior is not None else current
        handle = self._next_handle(mutation, eid)
        if mutation.kind == MutationKind.UPDATE:
            self._entities[eid] = current.with_changes(mutation.changes, self.title_field)
        self._pending[eid] = _Pending(handle, base)
        if prior is not None:
            logger.debug('%s supersedes pending %s on %s', handle.kind.value, prior.handle.kind.value, eid)
        self._changed()
        return handle

    def _apply_create(self, mutation: Mutation) -> Handle:
        if mutation.target is not None and not isinstance(mutation.target, PendingId):
            raise ValidationError('create target must be a temporary id')
        pid = mutation.target or new_pending_id()
        if pid in self._entities:
            raise ValidationError(f'{pid} already exists')
        changes = dict(mutation.changes)
        self._entities[pid] = Entity(
            id=pid,
            type=self.collection.name if self.collection else '',
            title=str(changes.get(self.title_field) or ''),
            metadata=changes,
        )
        handle = self._next_handle(mutation, pid)
        self._pending[pid] = _Pending(handle, None)
        self._changed()
        return handle

    def _next_handle(self, mutation: Mutation, eid: EntityId) -> Handle:
        self._seq += 1
        return Handle(seq=self._seq, kind=mutation.kind, entity_id=eid, label=mutation.label)

    def _current(self, handle: Handle) -> Optional[_Pending]:
        rec = self._pending.get(handle.entity_id)
        if rec is None or rec.handle.seq != handle.seq:
            return None
        return rec

    # -- settling ---------------------------------------------------------

    def confirm(self, handle: Handle, entity: Optional[Entity] = None) -> bool:
        """Settle `handle` as accepted by the remote store.

        Returns False when the handle was superseded; in that case the
        newer optimistic value stays visible and `entity`, if given, only
        becomes the value a later rollback would return to.
        """
        rec = self._current(handle)
        if rec is None:
            later = self._pending.get(handle.entity_id)
            if entity is not None and later is not None and later.handle.kind != MutationKind.CREATE:
                later.base = entity
                self._stamp(handle.entity_id)
            logger.debug('ignoring stale confirmation %s for %s', handle.seq, handle.entity_id)
            return False

        del self._pending[handle.entity_id]
        if handle.kind == MutationKind.CREATE:
            if entity is None or not isinstance(entity.id, DurableId):
                raise ValidationError('confirming a create needs the stored entity')
            self._swap(handle.entity_id, entity)
            self._stamp(entity.id)
        elif handle.kind == MutationKind.UPDATE:
            if entity is not None:
                self._entities[handle.entity_id] = entity
            self._stamp(handle.entity_id)
        else:
            self._entities.pop(handle.entity_id, None)
            self._forget_missing()
            if isinstance(handle.entity_id, DurableId):
                self._tombstones[handle.entity_id.value] = self._clock()
        self._changed()
        return True

    def rollback(self, handle: Handle, reason: str = '') -> bool:
        rec = self._current(handle)
        if rec is None:
            logger.debug('ignoring stale rollback %s for %s', handle.seq, handle.entity_id)
            return False

        del self._pending[handle.entity_id]
        if handle.kind == MutationKind.CREATE:
            self._entities.pop(handle.entity_id, None)
            self._rolled_back.add(handle.entity_id)
        elif rec.base is not None:
            self._entities[handle.entity_id] = rec.base
        message = f'{handle.label or handle.kind.value} failed'
        if reason:
            message = f'{message}: {reason}'
        self.errors.append(message)
        logger.warning('rolled back %s on %s: %s', handle.kind.value, handle.entity_id, reason or 'no reason given')
        self._changed()
        return True

    def discard(self, handle: Handle, server: Optional[Entity] = None, reason: str = 'changed elsewhere') -> bool:
        """Drop an optimistic value that lost a conflict and adopt the remote one."""
        # whatever happens, the next merge must run
        self._last_fingerprint = None
        rec = self._current(handle)
        if rec is None:
            return False
        del self._pending[handle.entity_id]
        if server is not None:
            self._entities[handle.entity_id] = server
            self._stamp(handle.entity_id)
        elif rec.base is not None:
            self._entities[handle.entity_id] = rec.base
        self.errors.append(f'{handle.label or handle.kind.value} failed: {reason}')
        logger.warning('discarded %s on %s after conflict', handle.kind.value, handle.entity_id)
        self._changed()
        return True

    def replace_reference(self, old: EntityId, new: Any) -> None:
        """Rewrite metadata references from `old` to `new` in every entity and base."""
        if self._replace_refs(old, new):
            self._changed()

    def _replace_refs(self, old: EntityId, new: Any) -> bool:
        changed = False
        for eid, ent in list(self._entities.items()):
            swapped = ent.with_refs_replaced(old, new)
            if swapped is not ent:
                self._entities[eid] = swapped
                changed = True
        for rec in self._pending.values():
            if rec.base is not None:
                rec.base = rec.base.with_refs_replaced(old, new)
        return changed

    def _swap(self, pid: EntityId, entity: Entity) -> None:
        self._aliases[pid] = entity.id
        self._confirmed_at.pop(pid, None)
        self._entities = {
            (entity.id if eid == pid else eid): (entity if eid == pid else ent)
            for eid, ent in self._entities.items()
            if eid != entity.id
        }
        self._replace_refs(pid, entity.id.value)

    def _forget_missing(self) -> None:
        """Drop bookkeeping for entities that are no longer held locally."""
        for eid in [e for e in self._confirmed_at if e not in self._entities]:
            del self._confirmed_at[eid]
        for pid in [p for p, d in self._aliases.items() if d not in self._entities]:
            del self._aliases[pid]

    def _stamp(self, eid: EntityId) -> None:
        self._confirms += 1
        self._confirmed_at[eid] = self._confirms

    # -- merging ----------------------------------------------------------

    def begin_fetch(self) -> FetchToken:
        """Token to pass to `merge_snapshot` for a fetch that starts now."""
        self._fetches += 1
        return FetchToken(seq=self._fetches, confirms=self._confirms)

    def merge_snapshot(self, remote: Iterable[Entity], since: Optional[FetchToken] = None) -> bool:
        """Fold a fetched snapshot into local state; returns True when anything changed.

        `since` is the token from `begin_fetch`. Entities confirmed locally
        after that point survive a snapshot that predates them, and a
        snapshot from a fetch that started before the last merged one is
        dropped. Without a token the previous merge is used as the cut-off.
        """
        if since is not None and since.seq < self._merged_fetch:
            logger.debug('dropping snapshot from fetch %d, already merged fetch %d', since.seq, self._merged_fetch)
            return False

        remote = list(remote)
        fp = fingerprint(remote, self.tracked_fields)
        if fp == self._last_fingerprint:
            if since is not None:
                self._merged_fetch = since.seq
            logger.debug('snapshot unchanged (%s), skipping merge', fp)
            return False

        cutoff = self._merged_through if since is None else since.confirms
        self._prune_tombstones()
        merged: dict[EntityId, Entity] = {}
        for theirs in remote:
            eid = theirs.id
            if self._tombstoned(eid.value):
                continue
            mine = self._entities.get(eid)
            if mine is not None and self._keep_local(eid, mine, theirs, cutoff):
                merged[eid] = mine
            else:
                merged[eid] = theirs
        for eid, mine in self._entities.items():
            if eid in merged:
                continue
            if eid in self._pending or self._confirmed_at.get(eid, 0) > cutoff:
                merged[eid] = mine

        self._last_fingerprint = fp
        if since is not None:
            self._merged_fetch = since.seq
            self._merged_through = max(self._merged_through, cutoff)
        else:
            self._merged_through = self._confirms
        if list(merged.items()) == list(self._entities.items()):
            return False
        self._entities = merged
        self._forget_missing()
        self._changed()
        return True

    def _keep_local(self, eid: EntityId, mine: Entity, theirs: Entity, cutoff: int) -> bool:
        if eid in self._pending:
            return True
        if self._confirmed_at.get(eid, 0) > cutoff:
            return True
        return _newer(mine.modified_at, theirs.modified_at)

    def reset_fingerprint(self) -> None:
        self._last_fingerprint = None

    # -- tombstones -------------------------------------------------------

    def _hidden(self, eid: EntityId) -> bool:
        rec = self._pending.get(eid)
        return rec is not None and rec.handle.kind == MutationKind.DELETE

    def _tombstoned(self, value: str) -> bool:
        stamp = self._tombstones.get(value)
        if stamp is None:
            return False
        if self.tombstone_ttl is not None and self._clock() - stamp > self.tombstone_ttl:
            return False
        return True

    def _prune_tombstones(self) -> None:
        if self.tombstone_ttl is None:
            return
        now = self._clock()
        for value, stamp in list(self._tombstones.items()):
            if now - stamp > self.tombstone_ttl:
                del self._tombstones[value]

    # -- notification -----------------------------------------------------

    def _changed(self) -> None:
        self.version += 1
        snapshot = self.get_snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception('snapshot listener failed')
