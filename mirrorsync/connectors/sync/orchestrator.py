"""
Batch Sync Orchestrator

Drives the poll loop for one connector: fetch one page, transform and save
each item, persist progress, then either schedule the next batch as a new
unit of work or finish the pass. Owns the per-resource sync lock.

Pass lifecycle:
    start() -> lock + initial SyncState -> batch 1 enqueued
    continue_batch(n) -> page n processed -> state persisted -> batch n+1 enqueued
    ... -> last page -> resume token kept, state cleared (full), lock released
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel

from mirrorsync.config import Settings, get_settings
from mirrorsync.connectors import metrics
from mirrorsync.connectors.base.connector import Connector, TransformContext
from mirrorsync.connectors.base.records import CanonicalRecord, Page, SeriesExceptionDraft, Tombstone
from mirrorsync.connectors.base.state import SyncMode, SyncOptions, SyncState, Token
from mirrorsync.connectors.scheduling.work import TaskScheduler, WorkItem, WorkKind
from mirrorsync.connectors.state_repo import StateRepository, SyncCursorStore
from mirrorsync.connectors.storage.records import RecordStore
from mirrorsync.connectors.sync.series import SeriesReconciler
from mirrorsync.kernel.errors import AlreadySyncing, ItemProcessingError, ResourceUnauthorized, TokenExpired
from mirrorsync.kernel.ids import new_prefixed_id
from mirrorsync.kernel.time import UTC, Clock, SystemClock

logger = structlog.get_logger()


class BatchOutcome(str, Enum):
    CONTINUED = "continued"      # More pages; next batch enqueued
    COMPLETED = "completed"      # Terminal batch; lock released
    RESUMED = "resumed"          # Retry of an already-persisted batch; successor re-enqueued
    SUPERSEDED = "superseded"    # Stale continuation or pass cancelled


class BatchResult(BaseModel):
    resource_id: str
    batch_number: int
    outcome: BatchOutcome
    pass_id: str | None = None
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    more: bool = False


def _item_ref(item: Any) -> str | None:
    if isinstance(item, dict):
        ref = item.get("id")
    else:
        ref = getattr(item, "id", None)
    return str(ref) if ref is not None else None


class BatchSyncOrchestrator:
    """Per-connector sync pass driver."""

    def __init__(
        self,
        connector: Connector,
        repo: StateRepository,
        records: RecordStore,
        scheduler: TaskScheduler,
        reconciler: SeriesReconciler | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._connector = connector
        self._repo = repo
        self._cursors = SyncCursorStore(repo)
        self._records = records
        self._scheduler = scheduler
        self._reconciler = reconciler or SeriesReconciler(records)
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()

    @property
    def connector_type(self) -> str:
        return self._connector.connector_type

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    def default_full_window_start(self, now: datetime) -> datetime:
        """January 1st, N years back."""
        years = self._connector.capabilities.full_sync_lookback_years
        if years is None:
            years = self._settings.full_sync_lookback_years
        return datetime(now.year - years, 1, 1, tzinfo=UTC)

    def incremental_lookback(self) -> timedelta:
        lookback = self._connector.capabilities.incremental_lookback
        if lookback is None:
            lookback = timedelta(days=self._settings.incremental_lookback_days)
        return lookback

    # ------------------------------------------------------------------
    # Pass start
    # ------------------------------------------------------------------

    async def start(
        self,
        resource_id: str,
        mode: SyncMode = SyncMode.FULL,
        options: SyncOptions | None = None,
    ) -> SyncState:
        """
        Start a pass for `resource_id` and enqueue its first batch.

        Raises:
            AlreadySyncing: another pass holds the lock
        """
        options = options or SyncOptions()
        pass_id = new_prefixed_id("pass")

        if not await self._repo.acquire_lock(resource_id, pass_id):
            raise AlreadySyncing(meta={"resource_id": resource_id, "connector_type": self.connector_type})

        try:
            state = await self._initial_state(resource_id, pass_id, mode, options)
            await self._cursors.save(resource_id, state)
            await self._schedule_batch(state)
        except Exception:
            await self._cursors.clear(resource_id)
            await self._repo.release_lock(resource_id, pass_id)
            raise

        logger.info(
            "Sync pass started",
            connector_type=self.connector_type,
            resource_id=resource_id,
            pass_id=pass_id,
            mode=state.mode.value,
            resume_token=state.resume_token is not None,
            window_start=state.window_start.isoformat() if state.window_start else None,
        )
        return state

    async def _initial_state(
        self,
        resource_id: str,
        pass_id: str,
        mode: SyncMode,
        options: SyncOptions,
    ) -> SyncState:
        now = self._clock.now()
        resume_token = await self._repo.get_resume_token(resource_id)

        if mode == SyncMode.FULL:
            if options.unbounded:
                window_start = None
            else:
                window_start = options.since or self.default_full_window_start(now)
            return SyncState(
                resource_id=resource_id,
                pass_id=pass_id,
                mode=SyncMode.FULL,
                window_start=window_start,
                window_end=options.until,
                initial_sync=resume_token is None,
                started_at=now,
                updated_at=now,
            )

        if resume_token:
            return SyncState(
                resource_id=resource_id,
                pass_id=pass_id,
                mode=SyncMode.INCREMENTAL,
                resume_token=resume_token,
                started_at=now,
                updated_at=now,
            )

        # No token yet: look back a bounded window instead.
        return SyncState(
            resource_id=resource_id,
            pass_id=pass_id,
            mode=SyncMode.INCREMENTAL,
            window_start=options.since or now - self.incremental_lookback(),
            window_end=options.until,
            started_at=now,
            updated_at=now,
        )

    async def _schedule_batch(self, state: SyncState) -> str:
        return await self._scheduler.enqueue(
            WorkItem(
                kind=WorkKind.SYNC_BATCH,
                connector_type=self.connector_type,
                resource_id=state.resource_id,
                batch_number=state.batch,
                mode=state.mode,
                pass_id=state.pass_id,
            )
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def continue_batch(
        self,
        resource_id: str,
        batch_number: int,
        pass_id: str | None = None,
    ) -> BatchResult:
        """
        Run batch `batch_number` of the pass currently active for `resource_id`.

        Errors from the page fetch propagate; the lock and any persisted
        progress stay in place so a retry resumes rather than restarts.
        """
        log = logger.bind(
            connector_type=self.connector_type,
            resource_id=resource_id,
            batch=batch_number,
            pass_id=pass_id,
        )

        state = await self._cursors.load(resource_id)
        if state is None:
            holder = await self._repo.get_lock(resource_id)
            if holder and (pass_id is None or holder == pass_id):
                log.warning("No sync state found, sync may have been superseded")
                await self._repo.release_lock(resource_id)
            return self._result(resource_id, batch_number, BatchOutcome.SUPERSEDED, pass_id)

        if pass_id is not None and state.pass_id != pass_id:
            log.info("Ignoring continuation of a superseded pass", active_pass=state.pass_id)
            return self._result(resource_id, batch_number, BatchOutcome.SUPERSEDED, pass_id)

        if await self._repo.get_lock(resource_id) != state.pass_id:
            log.info("Pass no longer holds the sync lock; ignoring batch")
            return self._result(resource_id, batch_number, BatchOutcome.SUPERSEDED, state.pass_id)

        if batch_number != state.batch:
            if batch_number == state.batch - 1 and state.more:
                log.info("Batch already persisted; re-enqueueing successor", next_batch=state.batch)
                await self._schedule_batch(state)
                return self._result(resource_id, batch_number, BatchOutcome.RESUMED, state.pass_id, more=True)
            log.info("Ignoring stale batch", expected_batch=state.batch)
            return self._result(resource_id, batch_number, BatchOutcome.SUPERSEDED, state.pass_id)

        now = self._clock.now()
        token = await self._connector.get_token(resource_id)
        if token is None or not token.is_valid(now):
            log.error("No valid token for resource; aborting pass")
            await self._abort(state)
            metrics.sync_batches_total.labels(self.connector_type, "unauthorized").inc()
            raise ResourceUnauthorized(meta={"resource_id": resource_id, "connector_type": self.connector_type})

        if batch_number == 1 and state.identity is None:
            identity = await self._connector.resolve_identity(token)
            state = state.model_copy(update={"identity": identity})

        page, state = await self._fetch(state, token, log)
        processed, skipped, failed = await self._process_items(page.items, state, log)

        current = await self._cursors.load(resource_id)
        if current is None or current.pass_id != state.pass_id:
            log.info("Pass superseded while batch was running; dropping progress")
            return self._result(
                resource_id,
                batch_number,
                BatchOutcome.SUPERSEDED,
                state.pass_id,
                processed=processed,
                skipped=skipped,
                failed=failed,
            )

        next_state = state.advance(page.next_cursor, page.has_more, page.final_resume_token, self._clock.now())
        await self._cursors.save(resource_id, next_state)

        if next_state.more:
            await self._schedule_batch(next_state)
            outcome = BatchOutcome.CONTINUED
        else:
            await self._finish(next_state)
            outcome = BatchOutcome.COMPLETED

        metrics.sync_batches_total.labels(self.connector_type, outcome.value).inc()
        log.info(
            "Sync batch processed",
            outcome=outcome.value,
            processed=processed,
            skipped=skipped,
            failed=failed,
            more=next_state.more,
        )
        return self._result(
            resource_id,
            batch_number,
            outcome,
            next_state.pass_id,
            processed=processed,
            skipped=skipped,
            failed=failed,
            more=next_state.more,
        )

    async def _fetch(self, state: SyncState, token: Token, log: Any) -> tuple[Page, SyncState]:
        try:
            return await self._connector.fetch_page(state, token), state
        except TokenExpired:
            now = self._clock.now()
            log.warning("Resume token expired; restarting as full resync", sequence=state.sequence)
            metrics.token_expired_fallbacks_total.labels(self.connector_type).inc()
            await self._repo.clear_resume_token(state.resource_id)
            state = state.restart_full(self.default_full_window_start(now), now)
            await self._cursors.save(state.resource_id, state)
            return await self._connector.fetch_page(state, token), state

    async def _process_items(self, items: list[Any], state: SyncState, log: Any) -> tuple[int, int, int]:
        context = TransformContext(
            resource_id=state.resource_id,
            mode=state.mode,
            initial_sync=state.initial_sync,
            identity=state.identity,
        )
        processed = skipped = failed = 0

        for item in items:
            try:
                result = self._connector.transform(item, context)
                if result is None:
                    skipped += 1
                    continue

                if isinstance(result, Tombstone):
                    # Nothing to cancel for items the mirror has never seen.
                    if state.initial_sync:
                        skipped += 1
                        continue
                    await self._records.save_tombstone(result)
                elif isinstance(result, SeriesExceptionDraft):
                    await self._reconciler.reconcile_draft(result)
                elif isinstance(result, CanonicalRecord):
                    await self._records.save(result)
                else:
                    raise TypeError(f"Unsupported transform result: {type(result).__name__}")
                processed += 1
            except Exception as exc:
                failed += 1
                error = ItemProcessingError(str(exc) or type(exc).__name__, meta={"item": _item_ref(item)})
                metrics.sync_items_failed_total.labels(self.connector_type).inc()
                log.error(
                    "Failed to process item",
                    code=error.code,
                    item=_item_ref(item),
                    error=error.message,
                    error_type=type(exc).__name__,
                )

        return processed, skipped, failed

    async def _finish(self, state: SyncState) -> None:
        if state.resume_token:
            await self._repo.set_resume_token(state.resource_id, state.resume_token)
        if state.mode == SyncMode.FULL:
            await self._cursors.clear(state.resource_id)
        await self._repo.release_lock(state.resource_id, state.pass_id)
        logger.info(
            "Sync pass completed",
            connector_type=self.connector_type,
            resource_id=state.resource_id,
            pass_id=state.pass_id,
            mode=state.mode.value,
            batches=state.batch - 1,
            sequence=state.sequence,
        )

    async def _abort(self, state: SyncState) -> None:
        await self._cursors.clear(state.resource_id)
        await self._repo.release_lock(state.resource_id, state.pass_id)

    async def fail_pass(self, resource_id: str, pass_id: str | None = None) -> bool:
        """
        Give up on a pass whose batch exhausted its retries.

        Releases the lock only if `pass_id` (or the stored pass) still holds
        it. The SyncState is kept so the failed position can be inspected;
        the next start() overwrites it.
        """
        state = await self._cursors.load(resource_id)
        if pass_id is None and state is not None:
            pass_id = state.pass_id
        if pass_id is None:
            return False

        released = await self._repo.release_lock(resource_id, pass_id)
        metrics.sync_batches_total.labels(self.connector_type, "failed").inc()
        logger.error(
            "Sync pass failed",
            connector_type=self.connector_type,
            resource_id=resource_id,
            pass_id=pass_id,
            batch=state.batch if state is not None and state.pass_id == pass_id else None,
            lock_released=released,
        )
        return released

    async def cancel(self, resource_id: str) -> None:
        """Stop any pass for the resource. In-flight batches notice and stop on their next step."""
        await self._cursors.clear(resource_id)
        await self._repo.release_lock(resource_id)
        logger.info("Sync cancelled", connector_type=self.connector_type, resource_id=resource_id)

    def _result(
        self,
        resource_id: str,
        batch_number: int,
        outcome: BatchOutcome,
        pass_id: str | None,
        **counts: Any,
    ) -> BatchResult:
        return BatchResult(
            resource_id=resource_id,
            batch_number=batch_number,
            outcome=outcome,
            pass_id=pass_id,
            **counts,
        )
