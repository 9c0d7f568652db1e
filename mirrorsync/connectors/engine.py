"""
Sync Engine

Facade wiring one connector to the orchestrator, series reconciler,
subscription manager and write-back coordinator over shared state. Hosts
drive resources through it: enable/disable, notifications, write-back,
authorization callbacks and scheduled work.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog
from pydantic import BaseModel

from mirrorsync.config import Settings, get_settings
from mirrorsync.connectors.base.connector import Connector, ConnectorRegistry
from mirrorsync.connectors.base.state import SyncMode, SyncOptions, SyncState, WatchSubscription
from mirrorsync.connectors.scheduling.dispatcher import WorkDispatcher
from mirrorsync.connectors.scheduling.work import TaskScheduler, WorkItem
from mirrorsync.connectors.state_repo import StateRepository
from mirrorsync.connectors.storage.kv import KeyValueStore
from mirrorsync.connectors.storage.records import RecordStore
from mirrorsync.connectors.sync.orchestrator import BatchSyncOrchestrator
from mirrorsync.connectors.sync.series import SeriesReconciler
from mirrorsync.connectors.webhooks.subscriptions import (
    NotificationOutcome,
    WebhookNotification,
    WebhookSubscriptionManager,
)
from mirrorsync.connectors.writeback.coordinator import WritebackCoordinator, WritebackOutcome
from mirrorsync.connectors.writeback.status import StatusResolver
from mirrorsync.kernel.errors import AlreadySyncing, SubscriptionCreateFailed
from mirrorsync.kernel.time import Clock, SystemClock

logger = structlog.get_logger()


class ResourceStatus(BaseModel):
    """Point-in-time view of a resource's sync machinery."""

    resource_id: str
    connector_type: str
    syncing: bool
    lock_owner: str | None = None
    state: SyncState | None = None
    has_resume_token: bool = False
    subscription: WatchSubscription | None = None
    renewal_task: str | None = None


class SyncEngine:
    """
    One connector's sync engine.

    Example:
        engine = SyncEngine(CalendarConnector(), store=RedisKeyValueStore.from_settings(),
                            records=records, scheduler=scheduler)
        scheduler.set_handler(engine.dispatch, on_failure=engine.on_work_failed)
        await engine.enable_resource("team@example.com")
    """

    def __init__(
        self,
        connector: Connector,
        store: KeyValueStore,
        records: RecordStore,
        scheduler: TaskScheduler,
        settings: Settings | None = None,
        clock: Clock | None = None,
        namespace: str | None = None,
        callback_base_url: str | None = None,
    ) -> None:
        self._connector = connector
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()

        if namespace is None:
            prefix = self._settings.key_namespace
            namespace = f"{prefix}:{connector.connector_type}" if prefix else connector.connector_type

        self.repo = StateRepository(store, namespace)
        self.records = records
        self.scheduler = scheduler
        self.reconciler = SeriesReconciler(records)
        self.orchestrator = BatchSyncOrchestrator(
            connector,
            self.repo,
            records,
            scheduler,
            reconciler=self.reconciler,
            settings=self._settings,
            clock=self._clock,
        )
        self.subscriptions = WebhookSubscriptionManager(
            connector,
            self.repo,
            scheduler,
            settings=self._settings,
            clock=self._clock,
            callback_base_url=callback_base_url,
        )
        self.writeback = WritebackCoordinator(
            connector, self.repo, clock=self._clock, scheduler=scheduler, settings=self._settings
        )
        self._dispatcher = WorkDispatcher(self.orchestrator, self.subscriptions, self.writeback)

    @classmethod
    def for_type(cls, connector_type: str, **kwargs: Any) -> SyncEngine:
        """Build an engine for a registered connector type."""
        connector = ConnectorRegistry.create(connector_type)
        if connector is None:
            raise KeyError(f"Unknown connector type: {connector_type}")
        return cls(connector, **kwargs)

    @property
    def connector(self) -> Connector:
        return self._connector

    @property
    def connector_type(self) -> str:
        return self._connector.connector_type

    # ------------------------------------------------------------------
    # Resource lifecycle
    # ------------------------------------------------------------------

    async def enable_resource(self, resource_id: str, options: SyncOptions | None = None) -> SyncState | None:
        """Start the initial full pass, then subscribe to push notifications."""
        state = None
        try:
            state = await self.orchestrator.start(resource_id, SyncMode.FULL, options)
        except AlreadySyncing:
            logger.info("Resource already syncing", connector_type=self.connector_type, resource_id=resource_id)

        try:
            await self.subscriptions.ensure_subscription(resource_id)
        except SubscriptionCreateFailed as exc:
            logger.warning(
                "Push channel unavailable; resource is polling-only",
                connector_type=self.connector_type,
                resource_id=resource_id,
                error=exc.message,
            )

        logger.info("Resource enabled", connector_type=self.connector_type, resource_id=resource_id)
        return state

    async def disable_resource(self, resource_id: str) -> None:
        """Tear down the channel and stop any running pass."""
        await self.subscriptions.teardown(resource_id)
        await self.orchestrator.cancel(resource_id)
        logger.info("Resource disabled", connector_type=self.connector_type, resource_id=resource_id)

    async def start_sync(
        self,
        resource_id: str,
        mode: SyncMode = SyncMode.INCREMENTAL,
        options: SyncOptions | None = None,
    ) -> SyncState:
        return await self.orchestrator.start(resource_id, mode, options)

    async def handle_notification(self, resource_id: str, notification: WebhookNotification) -> NotificationOutcome:
        return await self.subscriptions.on_notification(resource_id, notification)

    # ------------------------------------------------------------------
    # Write-back
    # ------------------------------------------------------------------

    async def propagate(
        self,
        resource_id: str,
        item_external_id: str,
        field: str,
        desired_value: Any,
        acting_actor_id: str,
    ) -> WritebackOutcome:
        return await self.writeback.propagate(resource_id, item_external_id, field, desired_value, acting_actor_id)

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
        return await self.writeback.propagate_status_change(
            resource_id, item_external_id, field, present, added, actors, removed=removed, resolver=resolver
        )

    async def on_authorized(self, actor_id: str) -> int:
        return await self.writeback.on_authorized(actor_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def inspect(self, resource_id: str) -> ResourceStatus:
        lock_owner = await self.repo.get_lock(resource_id)
        return ResourceStatus(
            resource_id=resource_id,
            connector_type=self.connector_type,
            syncing=bool(lock_owner),
            lock_owner=lock_owner,
            state=await self.repo.get_sync_state(resource_id),
            has_resume_token=await self.repo.get_resume_token(resource_id) is not None,
            subscription=await self.repo.get_watch(resource_id),
            renewal_task=await self.repo.get_renewal_task(resource_id),
        )

    async def reset_locks(self) -> list[str]:
        """Clear every sync lock for this connector. Run after a deploy, before workers start."""
        released = []
        for resource_id in await self.repo.locked_resources():
            await self.repo.release_lock(resource_id)
            released.append(resource_id)
        logger.info("Sync locks reset", connector_type=self.connector_type, count=len(released))
        return released

    async def dispatch(self, work_item: WorkItem) -> Any:
        if work_item.connector_type != self.connector_type:
            raise ValueError(
                f"Work for {work_item.connector_type!r} dispatched to {self.connector_type!r} engine"
            )
        return await self._dispatcher.dispatch(work_item)

    async def on_work_failed(self, work_item: WorkItem, exc: Exception) -> None:
        """Called by the scheduler once `work_item` has exhausted its retries."""
        if work_item.connector_type != self.connector_type:
            return
        await self._dispatcher.on_permanent_failure(work_item, exc)
