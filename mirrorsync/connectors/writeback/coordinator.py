"""
Write-back Coordinator

Propagates local changes (RSVPs, workflow states) to the vendor on behalf of
the actor who made them. Writes go out with the actor's own token; actors
who have not authorized yet get their changes queued and a single
authorization request, and the queue is replayed in order once they do.
Entries the vendor turns away transiently during replay stay queued.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta
from enum import Enum
from typing import Any

import structlog

from mirrorsync.config import Settings, get_settings
from mirrorsync.connectors import metrics
from mirrorsync.connectors.base.connector import Connector
from mirrorsync.connectors.base.state import PendingWriteback, Token
from mirrorsync.connectors.scheduling.work import TaskScheduler, WorkItem, WorkKind
from mirrorsync.connectors.state_repo import StateRepository
from mirrorsync.connectors.writeback.status import StatusResolver
from mirrorsync.kernel.errors import ResourceUnauthorized, VendorUnavailable, WritebackUnauthorized
from mirrorsync.kernel.time import Clock, SystemClock

logger = structlog.get_logger()


class WritebackOutcome(str, Enum):
    APPLIED = "applied"      # Remote value written
    UNCHANGED = "unchanged"  # Remote already had the desired value
    QUEUED = "queued"        # Waiting for the actor to authorize


class WritebackCoordinator:
    def __init__(
        self,
        connector: Connector,
        repo: StateRepository,
        clock: Clock | None = None,
        scheduler: TaskScheduler | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._connector = connector
        self._repo = repo
        self._clock = clock or SystemClock()
        self._scheduler = scheduler
        self._settings = settings or get_settings()

    @property
    def connector_type(self) -> str:
        return self._connector.connector_type

    async def _usable_token(self, actor_id: str) -> Token | None:
        token = await self._connector.get_token(actor_id)
        if token is None or not token.is_valid(self._clock.now()):
            return None
        return token

    async def propagate(
        self,
        resource_id: str,
        item_external_id: str,
        field: str,
        desired_value: Any,
        acting_actor_id: str,
    ) -> WritebackOutcome:
        """Write `field = desired_value` on the vendor item as `acting_actor_id`."""
        entry = PendingWriteback(
            target_resource=resource_id,
            target_item=item_external_id,
            desired_field=field,
            desired_value=desired_value,
            queued_at=self._clock.now(),
        )

        token = await self._usable_token(acting_actor_id)
        if token is None:
            await self._queue(acting_actor_id, entry)
            return WritebackOutcome.QUEUED

        try:
            return await self._apply(token, entry, acting_actor_id)
        except (WritebackUnauthorized, ResourceUnauthorized):
            logger.warning(
                "Vendor rejected actor token; queueing write-back",
                connector_type=self.connector_type,
                actor_id=acting_actor_id,
                target_item=item_external_id,
            )
            await self._queue(acting_actor_id, entry)
            return WritebackOutcome.QUEUED

    async def _apply(self, token: Token, entry: PendingWriteback, actor_id: str) -> WritebackOutcome:
        current = await self._connector.read_remote_value(
            token, entry.target_resource, entry.target_item, entry.desired_field
        )
        if current == entry.desired_value:
            logger.debug(
                "Remote value already up to date; skipping write",
                connector_type=self.connector_type,
                actor_id=actor_id,
                target_item=entry.target_item,
                field=entry.desired_field,
            )
            metrics.writebacks_total.labels(self.connector_type, WritebackOutcome.UNCHANGED.value).inc()
            return WritebackOutcome.UNCHANGED

        await self._connector.write_remote_value(
            token, entry.target_resource, entry.target_item, entry.desired_field, entry.desired_value
        )
        metrics.writebacks_total.labels(self.connector_type, WritebackOutcome.APPLIED.value).inc()
        logger.info(
            "Write-back applied",
            connector_type=self.connector_type,
            actor_id=actor_id,
            target_resource=entry.target_resource,
            target_item=entry.target_item,
            field=entry.desired_field,
        )
        return WritebackOutcome.APPLIED

    async def _queue(self, actor_id: str, entry: PendingWriteback) -> None:
        queued = await self._repo.append_pending_writeback(actor_id, entry)
        metrics.writebacks_total.labels(self.connector_type, WritebackOutcome.QUEUED.value).inc()

        if await self._repo.mark_auth_requested(actor_id):
            try:
                await self._connector.request_authorization(actor_id, entry.target_resource)
            except Exception:
                # Let the next queued change ask again.
                await self._repo.clear_auth_request(actor_id)
                raise
            logger.info("Authorization requested", connector_type=self.connector_type, actor_id=actor_id)

        logger.info(
            "Write-back queued until actor authorizes",
            connector_type=self.connector_type,
            actor_id=actor_id,
            target_item=entry.target_item,
            queued=queued,
        )

    async def on_authorized(self, actor_id: str, attempt: int = 1) -> int:
        """
        Replay the actor's queued write-backs in submission order.

        Entries that hit a transient vendor failure stay queued and, with a
        scheduler attached, a delayed drain is scheduled for them. Other
        failures are logged and dropped.

        Returns the number of entries applied or found already up to date.
        """
        token = await self._usable_token(actor_id)
        if token is None:
            logger.warning(
                "Authorization callback without a usable token; keeping queue",
                connector_type=self.connector_type,
                actor_id=actor_id,
            )
            return 0

        entries = await self._repo.get_pending_writebacks(actor_id)
        drained = 0
        retained: list[PendingWriteback] = []
        retry_after: float | None = None
        for entry in entries:
            try:
                await self._apply(token, entry, actor_id)
                drained += 1
            except VendorUnavailable as exc:
                retained.append(entry)
                retry_after = max(retry_after or 0, exc.retry_after or 0) or None
                logger.warning(
                    "Queued write-back deferred; vendor unavailable",
                    connector_type=self.connector_type,
                    actor_id=actor_id,
                    target_item=entry.target_item,
                    field=entry.desired_field,
                    status_code=exc.status_code,
                )
            except Exception as exc:
                metrics.writebacks_total.labels(self.connector_type, "failed").inc()
                logger.error(
                    "Queued write-back failed",
                    connector_type=self.connector_type,
                    actor_id=actor_id,
                    target_item=entry.target_item,
                    field=entry.desired_field,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        await self._repo.set_pending_writebacks(actor_id, retained)
        await self._repo.clear_auth_request(actor_id)
        if retained:
            await self._schedule_drain(actor_id, attempt, retry_after)

        logger.info(
            "Pending write-backs drained",
            connector_type=self.connector_type,
            actor_id=actor_id,
            total=len(entries),
            drained=drained,
            retained=len(retained),
        )
        return drained

    async def _schedule_drain(self, actor_id: str, attempt: int, retry_after: float | None) -> None:
        if self._scheduler is None:
            return
        if attempt >= self._settings.max_task_attempts:
            logger.error(
                "Write-back drain retries exhausted; entries wait for the next authorization",
                connector_type=self.connector_type,
                actor_id=actor_id,
                attempt=attempt,
            )
            return

        delays = self._settings.task_retry_delays_seconds
        delay = timedelta(seconds=max(delays[min(attempt - 1, len(delays) - 1)], retry_after or 0))
        await self._scheduler.enqueue(
            WorkItem(
                kind=WorkKind.DRAIN_WRITEBACKS,
                connector_type=self.connector_type,
                payload={"actor_id": actor_id},
                attempt=attempt + 1,
            ),
            run_at=self._clock.now() + delay,
        )

    async def propagate_status_change(
        self,
        resource_id: str,
        item_external_id: str,
        field: str,
        present: Iterable[str],
        added: Iterable[str],
        actors: Iterable[str],
        removed: Iterable[str] = (),
        resolver: StatusResolver | None = None,
    ) -> dict[str, WritebackOutcome]:
        """Resolve the desired status from local signals and write it for each changed actor."""
        resolver = resolver or StatusResolver()
        desired = resolver.resolve(present, added, removed)
        if desired is None:
            return {}

        outcomes: dict[str, WritebackOutcome] = {}
        for actor_id in dict.fromkeys(actors):
            outcomes[actor_id] = await self.propagate(resource_id, item_external_id, field, desired, actor_id)
        return outcomes
