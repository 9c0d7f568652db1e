"""
Webhook Subscription Manager

Keeps one live vendor push channel per resource:

- Creation: generated channel id + secret, persisted as a WatchSubscription,
  proactive renewal scheduled ahead of expiry.
- Renewal: proactive (scheduled) or reactive (a notification arrives close
  to expiry). The new channel is created first and the old one is then
  stopped best-effort. A refused renewal keeps the old channel and retries.
- Receipt: notifications are authenticated against the stored channel id and
  secret, then turned into an incremental sync start. Syncing never happens
  inline with the request.
"""

from __future__ import annotations

import hmac
from datetime import datetime, timedelta
from enum import Enum
from urllib.parse import quote, urlparse

import structlog
from pydantic import BaseModel, Field

from mirrorsync.config import Settings, get_settings
from mirrorsync.connectors import metrics
from mirrorsync.connectors.base.connector import ChannelRequest, Connector
from mirrorsync.connectors.base.state import SyncMode, WatchSubscription
from mirrorsync.connectors.scheduling.work import TaskScheduler, WorkItem, WorkKind
from mirrorsync.connectors.state_repo import StateRepository
from mirrorsync.kernel.errors import SubscriptionCreateFailed
from mirrorsync.kernel.ids import new_channel_secret, new_prefixed_id
from mirrorsync.kernel.time import Clock, SystemClock, utc_now

logger = structlog.get_logger()

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}


class NotificationOutcome(str, Enum):
    ACCEPTED = "accepted"  # Incremental sync enqueued
    BUSY = "busy"          # A pass is already running; it will pick the change up
    REJECTED = "rejected"  # Unknown channel or bad secret


class WebhookNotification(BaseModel):
    """An inbound push notification: the channel credentials plus the raw delivery body."""

    channel_id: str | None = None
    secret_token: str | None = None
    resource_state: str | None = None
    body: bytes = b""
    received_at: datetime = Field(default_factory=utc_now)


def _constant_time_equal(presented: str, expected: str) -> bool:
    # compare_digest only accepts ASCII str; vendor headers can carry anything.
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def is_local_address(address: str) -> bool:
    """Vendors cannot reach a local callback, so no channel is created for one."""
    hostname = urlparse(address).hostname
    return hostname is None or hostname in _LOCAL_HOSTS


class WebhookSubscriptionManager:
    """Push channel lifecycle for one connector."""

    def __init__(
        self,
        connector: Connector,
        repo: StateRepository,
        scheduler: TaskScheduler,
        settings: Settings | None = None,
        clock: Clock | None = None,
        callback_base_url: str | None = None,
    ) -> None:
        self._connector = connector
        self._repo = repo
        self._scheduler = scheduler
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._callback_base_url = (callback_base_url or self._settings.webhook_base_url).rstrip("/")

    @property
    def connector_type(self) -> str:
        return self._connector.connector_type

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------

    def channel_lifetime(self) -> timedelta:
        ttl = self._connector.capabilities.channel_ttl
        return ttl if ttl is not None else timedelta(hours=self._settings.channel_ttl_hours)

    def renewal_buffer(self, lifetime: timedelta) -> timedelta:
        caps = self._connector.capabilities
        fraction = caps.renewal_buffer_fraction
        if fraction is None:
            fraction = self._settings.renewal_buffer_fraction
        floor = caps.renewal_min_buffer
        if floor is None:
            floor = timedelta(hours=self._settings.renewal_min_buffer_hours)
        return max(lifetime * fraction, floor)

    def renewal_time(self, subscription: WatchSubscription) -> datetime:
        """When to renew proactively. Always strictly before expiry."""
        lifetime = subscription.expires_at - subscription.created_at
        renew_at = subscription.expires_at - self.renewal_buffer(lifetime)
        if renew_at <= subscription.created_at:
            # Short-lived channel: the buffer swallows the whole lifetime.
            renew_at = subscription.created_at + lifetime / 2
        return renew_at

    def reactive_horizon(self) -> timedelta:
        horizon = self._connector.capabilities.reactive_renewal_horizon
        if horizon is None:
            horizon = timedelta(hours=self._settings.reactive_renewal_horizon_hours)
        return horizon

    def callback_address(self, resource_id: str) -> str:
        return f"{self._callback_base_url}/webhooks/{self.connector_type}/{quote(resource_id, safe='')}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ensure_subscription(self, resource_id: str) -> WatchSubscription | None:
        """
        Return a live subscription for the resource, creating or renewing as needed.

        Returns None when the connector has no push support or the callback
        address is local.

        Raises:
            SubscriptionCreateFailed: the vendor refused the channel
        """
        if not self._connector.capabilities.supports_webhooks:
            logger.debug("Connector has no push channels", connector_type=self.connector_type)
            return None

        existing = await self._repo.get_watch(resource_id)
        if existing is not None:
            if self._clock.now() < self.renewal_time(existing):
                return existing
            return await self.renew(resource_id, trigger="ensure")

        return await self._create(resource_id)

    async def renew(self, resource_id: str, trigger: str = "proactive") -> WatchSubscription | None:
        """
        Replace the resource's channel with a fresh one.

        The new channel is created before the old one is stopped. If the
        vendor refuses it, the old subscription stays in place, a renewal
        retry is scheduled and SubscriptionCreateFailed propagates.
        """
        await self._cancel_renewal(resource_id)
        previous = await self._repo.get_watch(resource_id)

        try:
            subscription = await self._create(resource_id)
        except SubscriptionCreateFailed as exc:
            retry_at = await self._schedule_renewal_retry(previous) if previous is not None else None
            logger.warning(
                "Push channel renewal failed; keeping current channel",
                connector_type=self.connector_type,
                resource_id=resource_id,
                trigger=trigger,
                channel_id=previous.channel_id if previous else None,
                retry_at=retry_at.isoformat() if retry_at else None,
                error=exc.message,
            )
            raise

        if previous is not None:
            await self._stop_channel(previous)
            if subscription is None:
                await self._repo.clear_watch(resource_id)

        metrics.subscription_renewals_total.labels(self.connector_type, trigger).inc()
        logger.info(
            "Push channel renewed",
            connector_type=self.connector_type,
            resource_id=resource_id,
            trigger=trigger,
            previous_channel=previous.channel_id if previous else None,
            channel_id=subscription.channel_id if subscription else None,
        )
        return subscription

    async def teardown(self, resource_id: str) -> None:
        """Cancel renewal, stop the channel best-effort and forget the subscription."""
        await self._cancel_renewal(resource_id)
        subscription = await self._repo.get_watch(resource_id)
        if subscription is not None:
            await self._stop_channel(subscription)
            await self._repo.clear_watch(resource_id)
        logger.info("Push channel torn down", connector_type=self.connector_type, resource_id=resource_id)

    async def _create(self, resource_id: str) -> WatchSubscription | None:
        callback = self.callback_address(resource_id)
        if is_local_address(callback):
            logger.warning(
                "Callback address is local; skipping push channel",
                connector_type=self.connector_type,
                resource_id=resource_id,
                callback_address=callback,
            )
            return None

        request = ChannelRequest(
            resource_id=resource_id,
            channel_id=new_prefixed_id("chn"),
            secret=new_channel_secret(),
            callback_address=callback,
            ttl=self.channel_lifetime(),
        )
        now = self._clock.now()
        try:
            channel = await self._connector.create_channel(request)
        except SubscriptionCreateFailed:
            raise
        except Exception as exc:
            raise SubscriptionCreateFailed(
                str(exc) or None,
                meta={"resource_id": resource_id, "connector_type": self.connector_type},
            ) from exc

        subscription = WatchSubscription(
            resource_id=resource_id,
            channel_id=channel.channel_id,
            secret=request.secret,
            callback_address=callback,
            expires_at=channel.expires_at,
            vendor_ref=channel.vendor_ref,
            created_at=now,
        )
        await self._repo.set_watch(subscription)
        renew_at = await self._schedule_renewal(subscription)

        logger.info(
            "Push channel created",
            connector_type=self.connector_type,
            resource_id=resource_id,
            channel_id=subscription.channel_id,
            expires_at=subscription.expires_at.isoformat(),
            renew_at=renew_at.isoformat(),
        )
        return subscription

    async def _schedule_renewal(self, subscription: WatchSubscription) -> datetime:
        return await self._enqueue_renewal(subscription.resource_id, self.renewal_time(subscription))

    async def _schedule_renewal_retry(self, subscription: WatchSubscription) -> datetime:
        retry_at = self._clock.now() + timedelta(minutes=self._settings.renewal_retry_minutes)
        return await self._enqueue_renewal(subscription.resource_id, retry_at)

    async def _enqueue_renewal(self, resource_id: str, run_at: datetime) -> datetime:
        handle = await self._scheduler.enqueue(
            WorkItem(kind=WorkKind.RENEW_WATCH, connector_type=self.connector_type, resource_id=resource_id),
            run_at=run_at,
        )
        await self._repo.set_renewal_task(resource_id, handle)
        return run_at

    async def _cancel_renewal(self, resource_id: str) -> None:
        handle = await self._repo.get_renewal_task(resource_id)
        if handle:
            await self._scheduler.cancel(handle)
            await self._repo.clear_renewal_task(resource_id)

    async def _stop_channel(self, subscription: WatchSubscription) -> None:
        try:
            await self._connector.stop_channel(subscription)
        except Exception as exc:
            logger.warning(
                "Failed to stop push channel",
                connector_type=self.connector_type,
                resource_id=subscription.resource_id,
                channel_id=subscription.channel_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    # ------------------------------------------------------------------
    # Receipt
    # ------------------------------------------------------------------

    async def on_notification(self, resource_id: str, notification: WebhookNotification) -> NotificationOutcome:
        log = logger.bind(connector_type=self.connector_type, resource_id=resource_id)

        subscription = await self._repo.get_watch(resource_id)
        if subscription is None or not notification.channel_id:
            log.warning("Unknown or expired webhook notification", channel_id=notification.channel_id)
            return NotificationOutcome.REJECTED

        if not _constant_time_equal(notification.channel_id, subscription.channel_id):
            log.warning("Unknown or expired webhook notification", channel_id=notification.channel_id)
            return NotificationOutcome.REJECTED

        if not notification.secret_token or not _constant_time_equal(notification.secret_token, subscription.secret):
            log.warning("Invalid webhook secret", channel_id=notification.channel_id)
            return NotificationOutcome.REJECTED

        if subscription.time_left(self._clock.now()) < self.reactive_horizon():
            try:
                await self.renew(resource_id, trigger="reactive")
            except Exception as exc:
                log.error("Failed to reactively renew push channel", error=str(exc), error_type=type(exc).__name__)

        if await self._repo.get_lock(resource_id):
            log.info("Sync already running; notification coalesced")
            return NotificationOutcome.BUSY

        await self._scheduler.enqueue(
            WorkItem(
                kind=WorkKind.SYNC_START,
                connector_type=self.connector_type,
                resource_id=resource_id,
                mode=SyncMode.INCREMENTAL,
            )
        )
        log.info(
            "Incremental sync enqueued from notification",
            resource_state=notification.resource_state,
            body_bytes=len(notification.body),
        )
        return NotificationOutcome.ACCEPTED
