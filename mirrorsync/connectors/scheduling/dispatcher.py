"""Routes due WorkItems to the engine component that owns them."""

from __future__ import annotations

from typing import Any

import structlog

from mirrorsync.connectors.base.state import SyncMode, SyncOptions
from mirrorsync.connectors.scheduling.work import WorkItem, WorkKind
from mirrorsync.connectors.sync.orchestrator import BatchSyncOrchestrator
from mirrorsync.connectors.webhooks.subscriptions import WebhookSubscriptionManager
from mirrorsync.connectors.writeback.coordinator import WritebackCoordinator
from mirrorsync.kernel.errors import AlreadySyncing, SubscriptionCreateFailed

logger = structlog.get_logger()


class WorkDispatcher:
    def __init__(
        self,
        orchestrator: BatchSyncOrchestrator,
        subscriptions: WebhookSubscriptionManager,
        writeback: WritebackCoordinator,
    ) -> None:
        self._orchestrator = orchestrator
        self._subscriptions = subscriptions
        self._writeback = writeback

    async def dispatch(self, work_item: WorkItem) -> Any:
        kind = work_item.kind

        if kind == WorkKind.SYNC_START:
            options = SyncOptions.model_validate(work_item.payload.get("options", {}))
            try:
                return await self._orchestrator.start(
                    self._require_resource(work_item),
                    work_item.mode or SyncMode.INCREMENTAL,
                    options,
                )
            except AlreadySyncing:
                # The running pass picks the change up.
                logger.info("Sync already running; start skipped", resource_id=work_item.resource_id)
                return None

        if kind == WorkKind.SYNC_BATCH:
            if work_item.batch_number is None:
                raise ValueError("sync_batch work requires batch_number")
            return await self._orchestrator.continue_batch(
                self._require_resource(work_item),
                work_item.batch_number,
                work_item.pass_id,
            )

        if kind == WorkKind.RENEW_WATCH:
            try:
                return await self._subscriptions.renew(self._require_resource(work_item), trigger="proactive")
            except SubscriptionCreateFailed:
                # The manager kept the old channel and scheduled its own retry.
                return None

        if kind == WorkKind.WRITEBACK:
            payload = work_item.payload
            return await self._writeback.propagate(
                self._require_resource(work_item),
                payload["item_external_id"],
                payload["field"],
                payload.get("desired_value"),
                payload["actor_id"],
            )

        if kind == WorkKind.DRAIN_WRITEBACKS:
            return await self._writeback.on_authorized(work_item.payload["actor_id"], attempt=work_item.attempt)

        raise ValueError(f"Unknown work kind: {kind}")

    @staticmethod
    def _require_resource(work_item: WorkItem) -> str:
        if not work_item.resource_id:
            raise ValueError(f"{work_item.kind.value} work requires resource_id")
        return work_item.resource_id

    async def on_permanent_failure(self, work_item: WorkItem, exc: Exception) -> None:
        """Undo what a dead work item leaves behind. Only sync batches hold anything."""
        if work_item.kind == WorkKind.SYNC_BATCH and work_item.resource_id:
            await self._orchestrator.fail_pass(work_item.resource_id, work_item.pass_id)
