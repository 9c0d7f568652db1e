"""
APScheduler-backed task scheduler.

Each WorkItem becomes a one-shot date-triggered job whose id is the item's
task id, so re-enqueueing the same logical work replaces the pending job
instead of duplicating it. Failed work is retried with backoff; a held sync
lock is not a failure.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from mirrorsync.config import Settings, get_settings
from mirrorsync.connectors.scheduling.work import WorkItem
from mirrorsync.kernel.errors import AlreadySyncing, MirrorSyncError, ResourceUnauthorized
from mirrorsync.kernel.time import Clock, SystemClock

logger = structlog.get_logger()

WorkHandler = Callable[[WorkItem], Awaitable[Any]]
FailureHandler = Callable[[WorkItem, Exception], Awaitable[Any]]


class ApschedulerTaskScheduler:
    """
    TaskScheduler running work on an AsyncIOScheduler.

    Usage:
        scheduler = ApschedulerTaskScheduler()
        engine = SyncEngine(connector, store=..., records=..., scheduler=scheduler)
        scheduler.set_handler(engine.dispatch, on_failure=engine.on_work_failed)
        await scheduler.start()
    """

    def __init__(
        self,
        handler: WorkHandler | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
        scheduler: AsyncIOScheduler | None = None,
        on_failure: FailureHandler | None = None,
    ) -> None:
        self._handler = handler
        self._on_failure = on_failure
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    def set_handler(self, handler: WorkHandler, on_failure: FailureHandler | None = None) -> None:
        """Register the work handler and, optionally, a callback for work that exhausted its retries."""
        self._handler = handler
        if on_failure is not None:
            self._on_failure = on_failure

    async def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Task scheduler started")

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
            logger.info("Task scheduler shutdown")

    def get_job(self, handle: str) -> Any:
        return self._scheduler.get_job(handle)

    async def enqueue(self, work_item: WorkItem, run_at: datetime | None = None) -> str:
        run_date = run_at or self._clock.now()
        job_id = work_item.task_id
        self._scheduler.add_job(
            self.run,
            trigger=DateTrigger(run_date=run_date),
            args=[work_item],
            id=job_id,
            name=f"{work_item.kind.value} {work_item.resource_id or ''}".strip(),
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.debug(
            "Work enqueued",
            task_id=job_id,
            kind=work_item.kind.value,
            resource_id=work_item.resource_id,
            run_at=run_date.isoformat(),
            attempt=work_item.attempt,
        )
        return job_id

    async def cancel(self, handle: str) -> None:
        try:
            self._scheduler.remove_job(handle)
        except JobLookupError:
            logger.debug("Task already ran or was removed", task_id=handle)

    def retry_delay(self, attempt: int) -> timedelta:
        delays = self._settings.task_retry_delays_seconds
        return timedelta(seconds=delays[min(attempt - 1, len(delays) - 1)])

    async def run(self, work_item: WorkItem) -> None:
        """Execute one work item, scheduling a retry on failure."""
        if self._handler is None:
            raise RuntimeError("No work handler registered")

        log = logger.bind(
            task_id=work_item.task_id,
            kind=work_item.kind.value,
            resource_id=work_item.resource_id,
            attempt=work_item.attempt,
        )
        try:
            await self._handler(work_item)
        except AlreadySyncing:
            log.info("Sync already running; dropping work")
        except ResourceUnauthorized as exc:
            log.error("Work abandoned; authorization missing", code=exc.code)
        except Exception as exc:
            code = exc.code if isinstance(exc, MirrorSyncError) else None
            if work_item.attempt >= self._settings.max_task_attempts:
                log.error("Work failed permanently", error=str(exc), code=code, error_type=type(exc).__name__)
                await self._notify_failure(work_item, exc, log)
                return

            delay = self.retry_delay(work_item.attempt)
            retry_after = getattr(exc, "retry_after", None)
            if retry_after:
                delay = max(delay, timedelta(seconds=retry_after))
            await self.enqueue(work_item.next_attempt(), run_at=self._clock.now() + delay)
            log.warning(
                "Work failed; retry scheduled",
                error=str(exc),
                code=code,
                error_type=type(exc).__name__,
                delay_seconds=delay.total_seconds(),
            )

    async def _notify_failure(self, work_item: WorkItem, exc: Exception, log: Any) -> None:
        if self._on_failure is None:
            return
        try:
            await self._on_failure(work_item, exc)
        except Exception as cleanup_exc:
            log.error(
                "Failure handler raised",
                error=str(cleanup_exc),
                error_type=type(cleanup_exc).__name__,
            )
