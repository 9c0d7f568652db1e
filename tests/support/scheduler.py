from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from mirrorsync.connectors.scheduling.work import WorkItem, WorkKind


@dataclass
class ScheduledWork:
    work_item: WorkItem
    run_at: datetime | None


class ManualTaskScheduler:
    """
    TaskScheduler double that records work and only runs it when told to.

    Jobs are keyed by task id like the real scheduler, so re-enqueueing the
    same logical work replaces the pending entry.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, ScheduledWork] = {}
        self.enqueued: list[WorkItem] = []
        self.cancelled: list[str] = []

    async def enqueue(self, work_item: WorkItem, run_at: datetime | None = None) -> str:
        self.jobs.pop(work_item.task_id, None)
        self.jobs[work_item.task_id] = ScheduledWork(work_item=work_item, run_at=run_at)
        self.enqueued.append(work_item)
        return work_item.task_id

    async def cancel(self, handle: str) -> None:
        self.cancelled.append(handle)
        self.jobs.pop(handle, None)

    def pending(self, kind: WorkKind | None = None) -> list[WorkItem]:
        return [job.work_item for job in self.jobs.values() if kind is None or job.work_item.kind == kind]

    def pop_next(self, kind: WorkKind | None = None) -> WorkItem | None:
        for task_id, job in self.jobs.items():
            if kind is None or job.work_item.kind == kind:
                del self.jobs[task_id]
                return job.work_item
        return None

    async def run_until_idle(
        self,
        handler: Callable[[WorkItem], Awaitable[Any]],
        kind: WorkKind = WorkKind.SYNC_BATCH,
        limit: int = 100,
    ) -> list[Any]:
        """Run pending work of `kind` (including work it enqueues) until none is left."""
        results = []
        for _ in range(limit):
            work_item = self.pop_next(kind)
            if work_item is None:
                return results
            results.append(await handler(work_item))
        raise AssertionError(f"work of kind {kind.value} still pending after {limit} runs")
