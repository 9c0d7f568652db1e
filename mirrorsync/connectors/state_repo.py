"""
Connector State Repository

Typed access to engine state in the key/value store. Every value is keyed by
a `(concern, subject)` pair, where the subject is a resource id or, for
write-back concerns, an actor id. Each concern has a single writer per
subject.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import structlog
from pydantic import BaseModel, TypeAdapter

from mirrorsync.connectors.base.state import PendingWriteback, SyncState, WatchSubscription
from mirrorsync.connectors.storage.kv import KeyValueStore

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)

_pending_adapter = TypeAdapter(list[PendingWriteback])


class Concern(str, Enum):
    SYNC_STATE = "sync_state"
    SYNC_LOCK = "sync_lock"
    RESUME_TOKEN = "resume_token"
    WATCH = "watch"
    RENEWAL_TASK = "renewal_task"
    PENDING_WRITEBACK = "pending_writeback"
    AUTH_REQUEST = "auth_request"


@dataclass(frozen=True)
class StateKey:
    concern: Concern
    subject: str

    def render(self, namespace: str | None = None) -> str:
        key = f"{self.concern.value}:{self.subject}"
        return f"{namespace}:{key}" if namespace else key


class StateRepository:
    """Key/value-backed engine state, namespaced per connector."""

    def __init__(self, store: KeyValueStore, namespace: str | None = None) -> None:
        self._store = store
        self._namespace = namespace

    def key(self, concern: Concern, subject: str) -> str:
        return StateKey(concern, subject).render(self._namespace)

    async def _get_model(self, concern: Concern, subject: str, model_type: type[ModelT]) -> ModelT | None:
        raw = await self._store.get(self.key(concern, subject))
        if raw is None:
            return None
        return model_type.model_validate_json(raw)

    async def _set_model(self, concern: Concern, subject: str, value: BaseModel) -> None:
        await self._store.set(self.key(concern, subject), value.model_dump_json())

    async def _clear(self, concern: Concern, subject: str) -> bool:
        return await self._store.delete(self.key(concern, subject))

    # Sync state ---------------------------------------------------------

    async def get_sync_state(self, resource_id: str) -> SyncState | None:
        return await self._get_model(Concern.SYNC_STATE, resource_id, SyncState)

    async def set_sync_state(self, state: SyncState) -> None:
        await self._set_model(Concern.SYNC_STATE, state.resource_id, state)

    async def clear_sync_state(self, resource_id: str) -> None:
        await self._clear(Concern.SYNC_STATE, resource_id)

    # Sync lock ----------------------------------------------------------

    async def acquire_lock(self, resource_id: str, owner: str) -> bool:
        """Atomically take the sync lock; False if another pass holds it."""
        return await self._store.set_if_absent(self.key(Concern.SYNC_LOCK, resource_id), owner)

    async def get_lock(self, resource_id: str) -> str | None:
        return await self._store.get(self.key(Concern.SYNC_LOCK, resource_id))

    async def release_lock(self, resource_id: str, owner: str | None = None) -> bool:
        """Release the lock. With `owner`, only a lock held by that pass is released."""
        if owner is not None:
            holder = await self.get_lock(resource_id)
            if holder != owner:
                logger.warning(
                    "Sync lock held by another pass; not releasing",
                    resource_id=resource_id,
                    owner=owner,
                    holder=holder,
                )
                return False
        return await self._clear(Concern.SYNC_LOCK, resource_id)

    async def locked_resources(self) -> list[str]:
        prefix = self.key(Concern.SYNC_LOCK, "")
        return [key[len(prefix):] for key in await self._store.scan(prefix)]

    # Resume token -------------------------------------------------------

    async def get_resume_token(self, resource_id: str) -> str | None:
        return await self._store.get(self.key(Concern.RESUME_TOKEN, resource_id))

    async def set_resume_token(self, resource_id: str, token: str) -> None:
        await self._store.set(self.key(Concern.RESUME_TOKEN, resource_id), token)

    async def clear_resume_token(self, resource_id: str) -> None:
        await self._clear(Concern.RESUME_TOKEN, resource_id)

    # Watch subscription -------------------------------------------------

    async def get_watch(self, resource_id: str) -> WatchSubscription | None:
        return await self._get_model(Concern.WATCH, resource_id, WatchSubscription)

    async def set_watch(self, subscription: WatchSubscription) -> None:
        await self._set_model(Concern.WATCH, subscription.resource_id, subscription)

    async def clear_watch(self, resource_id: str) -> None:
        await self._clear(Concern.WATCH, resource_id)

    # Renewal task -------------------------------------------------------

    async def get_renewal_task(self, resource_id: str) -> str | None:
        return await self._store.get(self.key(Concern.RENEWAL_TASK, resource_id))

    async def set_renewal_task(self, resource_id: str, handle: str) -> None:
        await self._store.set(self.key(Concern.RENEWAL_TASK, resource_id), handle)

    async def clear_renewal_task(self, resource_id: str) -> None:
        await self._clear(Concern.RENEWAL_TASK, resource_id)

    # Pending write-backs ------------------------------------------------

    async def get_pending_writebacks(self, actor_id: str) -> list[PendingWriteback]:
        raw = await self._store.get(self.key(Concern.PENDING_WRITEBACK, actor_id))
        if raw is None:
            return []
        return _pending_adapter.validate_json(raw)

    async def append_pending_writeback(self, actor_id: str, entry: PendingWriteback) -> int:
        """Append to the actor's queue; returns the new queue length."""
        entries = await self.get_pending_writebacks(actor_id)
        entries.append(entry)
        await self.set_pending_writebacks(actor_id, entries)
        return len(entries)

    async def set_pending_writebacks(self, actor_id: str, entries: list[PendingWriteback]) -> None:
        """Replace the actor's queue. An empty list removes it."""
        if not entries:
            await self.clear_pending_writebacks(actor_id)
            return
        await self._store.set(
            self.key(Concern.PENDING_WRITEBACK, actor_id),
            _pending_adapter.dump_json(entries).decode("utf-8"),
        )

    async def clear_pending_writebacks(self, actor_id: str) -> None:
        await self._clear(Concern.PENDING_WRITEBACK, actor_id)

    # Authorization requests ---------------------------------------------

    async def mark_auth_requested(self, actor_id: str) -> bool:
        """True the first time; False while a request is already outstanding."""
        return await self._store.set_if_absent(self.key(Concern.AUTH_REQUEST, actor_id), "1")

    async def auth_requested(self, actor_id: str) -> bool:
        return await self._store.get(self.key(Concern.AUTH_REQUEST, actor_id)) is not None

    async def clear_auth_request(self, actor_id: str) -> None:
        await self._clear(Concern.AUTH_REQUEST, actor_id)


class SyncCursorStore:
    """Thin persistence seam for SyncState, so the orchestrator is testable without a real store."""

    def __init__(self, repo: StateRepository) -> None:
        self._repo = repo

    async def load(self, resource_id: str) -> SyncState | None:
        return await self._repo.get_sync_state(resource_id)

    async def save(self, resource_id: str, state: SyncState) -> None:
        if state.resource_id != resource_id:
            raise ValueError(f"state belongs to {state.resource_id!r}, not {resource_id!r}")
        await self._repo.set_sync_state(state)

    async def clear(self, resource_id: str) -> None:
        await self._repo.clear_sync_state(resource_id)
