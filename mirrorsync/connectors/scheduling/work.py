"""
Units of work.

Every batch, renewal and write-back runs as an independently scheduled
`WorkItem`. Work items are plain serializable data; the scheduler hands them
back to the dispatcher when they are due.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field

from mirrorsync.connectors.base.state import SyncMode


class WorkKind(str, Enum):
    SYNC_START = "sync_start"              # Start a pass (webhook-triggered incremental, scheduled full)
    SYNC_BATCH = "sync_batch"              # Continue a pass with batch N
    RENEW_WATCH = "renew_watch"            # Proactive push channel renewal
    WRITEBACK = "writeback"                # Propagate one local change to the vendor
    DRAIN_WRITEBACKS = "drain_writebacks"  # Replay an actor's queue after authorization


class WorkItem(BaseModel):
    """Typed continuation placed on the scheduler."""

    kind: WorkKind
    connector_type: str
    resource_id: str | None = None
    batch_number: int | None = None
    mode: SyncMode | None = None
    pass_id: str | None = None
    attempt: int = 1
    payload: dict[str, Any] = Field(default_factory=dict)
    nonce: str = Field(default_factory=lambda: uuid4().hex)

    @property
    def task_id(self) -> str:
        """Scheduler job id. Re-enqueueing the same logical work replaces the pending job."""
        base = f"{self.connector_type}:{self.kind.value}"
        if self.kind == WorkKind.SYNC_BATCH:
            return f"{base}:{self.resource_id}:{self.pass_id}:{self.batch_number}"
        if self.kind == WorkKind.SYNC_START:
            mode = self.mode.value if self.mode else SyncMode.INCREMENTAL.value
            return f"{base}:{self.resource_id}:{mode}"
        if self.kind == WorkKind.RENEW_WATCH:
            return f"{base}:{self.resource_id}"
        if self.kind == WorkKind.DRAIN_WRITEBACKS:
            return f"{base}:{self.payload.get('actor_id')}"
        return f"{base}:{self.nonce}"

    def next_attempt(self) -> WorkItem:
        return self.model_copy(update={"attempt": self.attempt + 1})


class TaskScheduler(Protocol):
    async def enqueue(self, work_item: WorkItem, run_at: datetime | None = None) -> str:
        """Schedule `work_item` now (run_at None) or at `run_at`; returns a cancel handle."""
        ...

    async def cancel(self, handle: str) -> None: ...
