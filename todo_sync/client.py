"""SyncClient: one collection kept in sync with the todo server.

Wires a gateway, a retry controller, a reconciler and a poll scheduler.
Every write follows the same shape::

    apply optimistically -> gateway call (with retries) -> confirm | rollback | discard

and resolves to a `MutationOutcome` instead of raising, so a UI can show
"saved" or "failed, reverted: <reason>" without its own error plumbing.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from .cache import ListsCache
from .config import Config
from .errors import (
    AuthError,
    ConflictError,
    MutationFailed,
    NotFoundError,
    RetryExhaustedError,
    SyncError,
    ValidationError,
)
from .gateway import RemoteCollectionGateway
from .models import (
    LISTS,
    TASKS,
    DurableId,
    Entity,
    EntityId,
    Mutation,
    MutationKind,
    PendingId,
    as_entity_id,
)
from .reconciler import Reconciler
from .retry import RetryController, RetryPolicy
from .scheduler import PollScheduler
from .session import SessionClient

logger = logging.getLogger(__name__)


@dataclass
class MutationOutcome:
    ok: bool
    entity: Optional[Entity] = None
    error: Optional[MutationFailed] = None
    # True when a later mutation on the same entity replaced this one locally
    superseded: bool = False

    @property
    def reason(self) -> Optional[str]:
        return self.error.reason if self.error else None


def _reason(exc: BaseException) -> str:
    if isinstance(exc, RetryExhaustedError):
        return f'{_reason(exc.last_error)} (after {exc.attempts} attempts)'
    if isinstance(exc, ConflictError):
        return 'changed by someone else'
    message = getattr(exc, 'message', '') or str(exc)
    return message or exc.__class__.__name__


def _schema_error(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors()[0] if exc.errors() else {}
    where = '.'.join(str(p) for p in first.get('loc', ()))
    msg = first.get('msg', 'invalid payload')
    return ValidationError(f'{where}: {msg}' if where else msg)


def build_http(config: Config, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=config.server_url, timeout=config.request_timeout, transport=transport)


def retry_from_config(config: Config) -> RetryController:
    return RetryController(RetryPolicy(
        max_attempts=config.max_attempts,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
    ))


class SyncClient:
    def __init__(
        self,
        gateway: RemoteCollectionGateway,
        reconciler: Optional[Reconciler] = None,
        retry: Optional[RetryController] = None,
        filter: Optional[dict[str, Any]] = None,
        detect_conflicts: bool = False,
        cache: Optional[ListsCache] = None,
        session: Optional[SessionClient] = None,
        poll_interval: float = 30.0,
    ):
        self.gateway = gateway
        self.collection = gateway.collection
        self.reconciler = reconciler or Reconciler(self.collection)
        self.retry = retry or RetryController()
        self.filter = filter
        self.detect_conflicts = detect_conflicts
        self.cache = cache
        self.session = session
        self.poll_interval = poll_interval
        self.scheduler = PollScheduler(self._poll_tick)

        self._creating: dict[PendingId, asyncio.Future] = {}
        self._inflight: dict[EntityId, asyncio.Future] = {}
        self._parents: list['SyncClient'] = []
        self._dependents: list['SyncClient'] = []

    # -- construction helpers ---------------------------------------------

    @classmethod
    def for_lists(cls, http: httpx.AsyncClient, session: Optional[SessionClient] = None,
                  cache: Optional[ListsCache] = None, config: Optional[Config] = None, **kwargs) -> 'SyncClient':
        """Lists visible to the current session, optionally backed by a shared cache.

        With a session bound, `refresh` refuses to fetch while logged out.
        """
        if config is not None:
            kwargs.setdefault('retry', retry_from_config(config))
            kwargs.setdefault('reconciler', Reconciler(LISTS, tombstone_ttl=config.tombstone_ttl))
            kwargs.setdefault('poll_interval', config.poll_interval)
        return cls(RemoteCollectionGateway(http, LISTS), session=session, cache=cache, **kwargs)

    @classmethod
    def for_tasks(cls, http: httpx.AsyncClient, list_id: Optional[str] = None,
                  lists: Optional['SyncClient'] = None, config: Optional[Config] = None, **kwargs) -> 'SyncClient':
        """Tasks of one list (or every visible task).

        Links to `lists` for pending list ids and shares its session.
        """
        if config is not None:
            kwargs.setdefault('retry', retry_from_config(config))
            kwargs.setdefault('reconciler', Reconciler(TASKS, tombstone_ttl=config.tombstone_ttl))
            kwargs.setdefault('poll_interval', config.poll_interval)
        if lists is not None:
            kwargs.setdefault('session', lists.session)
        filter = {'list': list_id} if list_id else None
        client = cls(RemoteCollectionGateway(http, TASKS), filter=filter, **kwargs)
        if lists is not None:
            lists.link(client)
        return client

    def link(self, dependent: 'SyncClient') -> None:
        """Let `dependent` reference entities of this collection before they are saved."""
        if dependent not in self._dependents:
            self._dependents.append(dependent)
            dependent._parents.append(self)

    # -- reading ----------------------------------------------------------

    def get_snapshot(self) -> list[Entity]:
        return self.reconciler.get_snapshot()

    def get(self, entity_id: Any) -> Optional[Entity]:
        return self.reconciler.get(self._id(entity_id))

    def subscribe(self, listener):
        return self.reconciler.subscribe(listener)

    @property
    def errors(self) -> list[str]:
        return self.reconciler.errors

    def _owner(self) -> Optional[str]:
        if self.session is not None and self.session.current is not None:
            return self.session.current.user_id
        return None

    def load_cached(self) -> bool:
        """Seed local state from the shared cache; True when the cache had data for this user."""
        if self.cache is None:
            return False
        cached = self.cache.get(self._owner())
        if cached is None:
            return False
        self.reconciler.merge_snapshot(cached)
        return True

    async def refresh(self) -> bool:
        if self.session is not None:
            # the server scopes every collection to the logged-in user
            await self.session.require_session()
        token = self.reconciler.begin_fetch()
        remote = await self.retry.run(self.gateway.fetch_all, self.filter, label=f'fetch {self.collection.name}')
        changed = self.reconciler.merge_snapshot(remote, since=token)
        if self.cache is not None:
            self.cache.set(self.reconciler.get_snapshot(), self._owner())
        return changed

    # -- polling ----------------------------------------------------------

    def start_polling(self, interval: Optional[float] = None) -> None:
        self.scheduler.start(interval or self.poll_interval)

    def stop_polling(self) -> None:
        self.scheduler.stop()

    def pause_polling(self) -> None:
        self.scheduler.pause()

    def resume_polling(self) -> None:
        self.scheduler.resume()

    def visibility_changed(self, visible: bool) -> None:
        self.scheduler.visibility_changed(visible)

    def focus_changed(self, focused: bool) -> None:
        self.scheduler.focus_changed(focused)

    async def _poll_tick(self) -> None:
        try:
            await self.refresh()
        except AuthError:
            logger.warning('session expired while polling %s, stopping', self.collection.name)
            self.scheduler.stop()
            raise

    # -- writes -----------------------------------------------------------

    async def create(self, payload: dict[str, Any], label: str = 'create') -> MutationOutcome:
        try:
            fields = self._validate(self.collection.create_schema, payload, partial=False)
        except ValidationError as e:
            return self._rejected(label, None, e)

        metadata = {**self.collection.create_defaults, **fields}
        handle = self.reconciler.apply_optimistic(Mutation(kind=MutationKind.CREATE, changes=metadata, label=label))
        pid = handle.entity_id
        done = asyncio.get_running_loop().create_future()
        self._creating[pid] = done
        saved: Optional[Entity] = None
        try:
            wire = await self._settle_refs(fields)
            saved = await self.retry.run(self.gateway.create, wire, label=f'{label} {self.collection.item_key}')
        except SyncError as e:
            return self._failed(handle, label, e)
        except asyncio.CancelledError:
            self.reconciler.rollback(handle, 'cancelled')
            raise
        finally:
            self._creating.pop(pid, None)
            done.set_result(saved)

        self.reconciler.confirm(handle, saved)
        for dependent in self._dependents:
            dependent.reconciler.replace_reference(pid, saved.id.value)
        return MutationOutcome(ok=True, entity=self.reconciler.get(saved.id))

    async def update(self, entity_id: Any, changes: dict[str, Any], label: str = 'update') -> MutationOutcome:
        try:
            fields = self._validate(self.collection.changes_schema, changes, partial=True)
        except ValidationError as e:
            return self._rejected(label, entity_id, e)
        return await self._write(MutationKind.UPDATE, entity_id, fields, label)

    async def toggle(self, entity_id: Any, field: str = 'completed') -> MutationOutcome:
        eid = await self._await_created(self._id(entity_id))
        current = self.reconciler.get(eid)
        if current is None:
            return self._rejected('toggle', entity_id, NotFoundError(f'{entity_id} not found', 404))
        return await self._write(MutationKind.UPDATE, eid, {field: not current.metadata.get(field)}, 'toggle')

    async def delete(self, entity_id: Any, label: str = 'delete') -> MutationOutcome:
        return await self._write(MutationKind.DELETE, entity_id, {}, label)

    async def reorder(self, ordered_ids: list[Any], label: str = 'reorder') -> MutationOutcome:
        """Give each id its position in `ordered_ids` as its `order`, in one request."""
        eids = [await self._await_created(self._id(i)) for i in ordered_ids]
        handles = []
        try:
            for position, eid in enumerate(eids):
                if isinstance(eid, PendingId):
                    raise NotFoundError(f'{eid} was never saved')
                mutation = Mutation(kind=MutationKind.UPDATE, target=eid, changes={'order': position}, label=label)
                handles.append(self.reconciler.apply_optimistic(mutation))
        except SyncError as e:
            for h in handles:
                self.reconciler.rollback(h, _reason(e))
            return self._rejected(label, None, e)

        try:
            results = await self.retry.run(
                self.gateway.reorder, [(h.entity_id, i) for i, h in enumerate(handles)], label=label)
        except SyncError as e:
            for h in handles:
                self.reconciler.rollback(h, _reason(e))
            logger.warning('%s failed: %s', label, _reason(e))
            return MutationOutcome(ok=False, error=MutationFailed(f'{label} failed: {_reason(e)}', None, e))
        except asyncio.CancelledError:
            for h in handles:
                self.reconciler.rollback(h, 'cancelled')
            raise

        by_id = {r.get('id'): r for r in results}
        failed = []
        for h in handles:
            result = by_id.get(h.entity_id.value) or {}
            if result.get('success') and result.get('task'):
                self.reconciler.confirm(h, result['task'])
            else:
                self.reconciler.rollback(h, result.get('error') or 'not saved')
                failed.append(h.entity_id.value)
        if failed:
            reason = f'{label} failed for {len(failed)} item(s)'
            return MutationOutcome(ok=False, error=MutationFailed(reason, failed))
        return MutationOutcome(ok=True)

    async def _write(self, kind: MutationKind, entity_id: Any, fields: dict[str, Any], label: str) -> MutationOutcome:
        eid = await self._await_created(self._id(entity_id))
        if isinstance(eid, PendingId):
            return self._rejected(label, entity_id, NotFoundError(f'{entity_id} was never saved', 404))
        try:
            handle = self.reconciler.apply_optimistic(
                Mutation(kind=kind, target=eid, changes=fields, label=label))
        except SyncError as e:
            return self._rejected(label, entity_id, e)

        prior = self._inflight.get(eid)
        done = asyncio.get_running_loop().create_future()
        self._inflight[eid] = done
        try:
            if self.detect_conflicts and prior is not None:
                # the base timestamp is only meaningful once earlier writes landed
                await asyncio.shield(prior)
            if kind == MutationKind.DELETE:
                await self.retry.run(self.gateway.delete, eid, label=f'{label} {self.collection.item_key}')
                saved = None
            else:
                wire = await self._settle_refs(fields)
                base = self.reconciler.confirmed_value(eid) if self.detect_conflicts else None
                saved = await self.retry.run(
                    self.gateway.update, eid, wire, base.modified_at if base else None,
                    label=f'{label} {self.collection.item_key}')
        except ConflictError as e:
            server = Entity.from_record(e.server) if e.server else None
            self.reconciler.discard(handle, server, _reason(e))
            return MutationOutcome(ok=False, entity=server,
                                   error=MutationFailed(f'{label} failed: {_reason(e)}', eid, e))
        except SyncError as e:
            return self._failed(handle, label, e)
        except asyncio.CancelledError:
            self.reconciler.rollback(handle, 'cancelled')
            raise
        finally:
            if self._inflight.get(eid) is done:
                del self._inflight[eid]
            done.set_result(None)

        confirmed = self.reconciler.confirm(handle, saved)
        return MutationOutcome(ok=True, entity=self.reconciler.get(eid), superseded=not confirmed)

    # -- helpers ----------------------------------------------------------

    def _id(self, entity_id: Any) -> EntityId:
        return self.reconciler.resolve(as_entity_id(entity_id))

    async def _await_created(self, eid: EntityId) -> EntityId:
        pending = self._creating.get(eid) if isinstance(eid, PendingId) else None
        if pending is not None:
            await asyncio.shield(pending)
        return self.reconciler.resolve(eid)

    async def _settle_refs(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Replace temporary ids of linked collections with their durable ids, waiting if needed."""
        out = dict(fields)
        for key, value in fields.items():
            if not isinstance(value, PendingId):
                continue
            resolved: EntityId = value
            for parent in self._parents:
                resolved = await parent._await_created(value)
                if isinstance(resolved, DurableId):
                    break
            if not isinstance(resolved, DurableId):
                raise NotFoundError(f'{key} {value} was never saved', 404)
            out[key] = resolved.value
        return out

    def _validate(self, schema: type, payload: dict[str, Any], partial: bool) -> dict[str, Any]:
        try:
            obj = schema(**payload)
        except PydanticValidationError as e:
            raise _schema_error(e) from e
        except TypeError as e:
            raise ValidationError(str(e)) from e
        if partial:
            fields = {name: getattr(obj, name) for name in obj.model_fields_set}
            if not fields:
                raise ValidationError('no changes given')
            return fields
        return {name: getattr(obj, name) for name in type(obj).model_fields if getattr(obj, name) is not None}

    def _rejected(self, label: str, entity_id: Any, exc: SyncError) -> MutationOutcome:
        reason = _reason(exc)
        logger.info('%s rejected: %s', label, reason)
        return MutationOutcome(ok=False, error=MutationFailed(f'{label} failed: {reason}', entity_id, exc))

    def _failed(self, handle, label: str, exc: SyncError) -> MutationOutcome:
        reason = _reason(exc)
        self.reconciler.rollback(handle, reason)
        return MutationOutcome(ok=False, error=MutationFailed(f'{label} failed: {reason}', handle.entity_id, exc))
