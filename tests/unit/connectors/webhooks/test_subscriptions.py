"""
Unit tests for WebhookSubscriptionManager.
"""

from datetime import timedelta

import httpx
import pytest

from mirrorsync.connectors.base import SyncMode
from mirrorsync.connectors.scheduling.work import WorkKind
from mirrorsync.connectors.webhooks.subscriptions import (
    NotificationOutcome,
    WebhookNotification,
    WebhookSubscriptionManager,
    is_local_address,
)
from mirrorsync.kernel.errors import SubscriptionCreateFailed, VendorUnavailable
from tests.support.connector import FakeConnector

pytestmark = pytest.mark.unit

RESOURCE = "team@example.com"


@pytest.fixture
def manager(connector, repo, scheduler, settings, fake_clock):
    return WebhookSubscriptionManager(connector, repo, scheduler, settings=settings, clock=fake_clock)


def _notification(subscription, **overrides) -> WebhookNotification:
    fields = {"channel_id": subscription.channel_id, "secret_token": subscription.secret}
    fields.update(overrides)
    return WebhookNotification(**fields)


# =============================================================================
# CREATION
# =============================================================================


@pytest.mark.asyncio
async def test_ensure_creates_channel_and_schedules_renewal(manager, connector, repo, scheduler, fake_clock):
    subscription = await manager.ensure_subscription(RESOURCE)

    [request] = connector.channels_created
    assert request.callback_address == "https://sync.example.com/webhooks/fake-calendar/team%40example.com"
    assert request.ttl == timedelta(days=7)
    assert len(request.secret) == 64
    assert subscription.channel_id == request.channel_id
    assert subscription.expires_at == fake_clock.now() + timedelta(days=7)
    assert await repo.get_watch(RESOURCE) == subscription

    handle = await repo.get_renewal_task(RESOURCE)
    job = scheduler.jobs[handle]
    assert job.work_item.kind == WorkKind.RENEW_WATCH
    # 10% of a week is under the 24h floor.
    assert job.run_at == subscription.expires_at - timedelta(hours=24)


@pytest.mark.asyncio
async def test_ensure_reuses_live_subscription(manager, connector):
    first = await manager.ensure_subscription(RESOURCE)
    second = await manager.ensure_subscription(RESOURCE)

    assert second == first
    assert len(connector.channels_created) == 1


@pytest.mark.asyncio
async def test_ensure_renews_subscription_due_for_renewal(manager, connector, fake_clock):
    first = await manager.ensure_subscription(RESOURCE)
    fake_clock.advance(timedelta(days=6, hours=1))

    second = await manager.ensure_subscription(RESOURCE)

    assert second.channel_id != first.channel_id
    assert connector.channels_stopped == [first.channel_id]


@pytest.mark.asyncio
async def test_local_callback_address_skips_channel(connector, repo, scheduler, settings, fake_clock):
    manager = WebhookSubscriptionManager(
        connector, repo, scheduler, settings=settings, clock=fake_clock, callback_base_url="http://localhost:8000"
    )

    assert await manager.ensure_subscription(RESOURCE) is None
    assert connector.channels_created == []
    assert await repo.get_watch(RESOURCE) is None


@pytest.mark.asyncio
async def test_connector_without_push_support_returns_none(repo, scheduler, settings, fake_clock):
    connector = FakeConnector(fake_clock, supports_webhooks=False)
    manager = WebhookSubscriptionManager(connector, repo, scheduler, settings=settings, clock=fake_clock)

    assert await manager.ensure_subscription(RESOURCE) is None
    assert connector.channels_created == []


@pytest.mark.asyncio
async def test_vendor_failure_raises_subscription_create_failed(manager, connector, repo):
    connector.channel_error = VendorUnavailable(status_code=500)

    with pytest.raises(SubscriptionCreateFailed):
        await manager.ensure_subscription(RESOURCE)

    assert await repo.get_watch(RESOURCE) is None
    assert await repo.get_renewal_task(RESOURCE) is None


def test_renewal_is_clamped_for_short_lived_channels(repo, scheduler, settings, fake_clock):
    from mirrorsync.connectors.base import WatchSubscription

    connector = FakeConnector(fake_clock, channel_ttl=timedelta(hours=12))
    manager = WebhookSubscriptionManager(connector, repo, scheduler, settings=settings, clock=fake_clock)
    now = fake_clock.now()
    subscription = WatchSubscription(
        resource_id=RESOURCE,
        channel_id="chn_1",
        secret="s",
        callback_address="https://sync.example.com/x",
        created_at=now,
        expires_at=now + timedelta(hours=12),
    )

    assert manager.renewal_time(subscription) == now + timedelta(hours=6)


def test_renewal_buffer_uses_fraction_of_long_lifetimes(manager):
    assert manager.renewal_buffer(timedelta(days=30)) == timedelta(days=3)
    assert manager.renewal_buffer(timedelta(days=7)) == timedelta(hours=24)


@pytest.mark.parametrize(
    "address, local",
    [
        ("http://localhost:8000/webhooks/x/y", True),
        ("http://127.0.0.1/webhooks", True),
        ("https://sync.example.com/webhooks", False),
    ],
)
def test_is_local_address(address, local):
    assert is_local_address(address) is local


# =============================================================================
# RENEWAL / TEARDOWN
# =============================================================================


@pytest.mark.asyncio
async def test_renew_replaces_channel_and_cancels_pending_task(manager, connector, repo, scheduler):
    first = await manager.ensure_subscription(RESOURCE)
    first_handle = await repo.get_renewal_task(RESOURCE)

    second = await manager.renew(RESOURCE)

    assert first_handle in scheduler.cancelled
    assert connector.channels_stopped == [first.channel_id]
    assert second.channel_id != first.channel_id
    assert second.secret != first.secret
    assert (await repo.get_watch(RESOURCE)).channel_id == second.channel_id
    assert await repo.get_renewal_task(RESOURCE) is not None


@pytest.mark.asyncio
async def test_renew_survives_failure_to_stop_old_channel(manager, connector):
    first = await manager.ensure_subscription(RESOURCE)
    connector.stop_error = VendorUnavailable(status_code=404)

    second = await manager.renew(RESOURCE)

    assert second.channel_id != first.channel_id


@pytest.mark.asyncio
async def test_renew_creates_new_channel_before_stopping_old(manager, connector):
    first = await manager.ensure_subscription(RESOURCE)
    created_before_stop = []

    original_stop = connector.stop_channel

    async def stop_after_create(subscription):
        created_before_stop.append(len(connector.channels_created))
        await original_stop(subscription)

    connector.stop_channel = stop_after_create

    await manager.renew(RESOURCE)

    assert created_before_stop == [2]
    assert connector.channels_stopped == [first.channel_id]


@pytest.mark.asyncio
async def test_failed_renewal_keeps_old_subscription_and_schedules_retry(
    manager, connector, repo, scheduler, settings, fake_clock
):
    first = await manager.ensure_subscription(RESOURCE)
    connector.channel_error = VendorUnavailable(status_code=503)

    with pytest.raises(SubscriptionCreateFailed):
        await manager.renew(RESOURCE, trigger="reactive")

    assert await repo.get_watch(RESOURCE) == first
    assert connector.channels_stopped == []
    handle = await repo.get_renewal_task(RESOURCE)
    job = scheduler.jobs[handle]
    assert job.work_item.kind == WorkKind.RENEW_WATCH
    assert job.run_at == fake_clock.now() + timedelta(minutes=settings.renewal_retry_minutes)

    connector.channel_error = None
    second = await manager.renew(RESOURCE)
    assert second.channel_id != first.channel_id
    assert connector.channels_stopped == [first.channel_id]


@pytest.mark.asyncio
async def test_renew_survives_unexpected_stop_errors(manager, connector, repo):
    first = await manager.ensure_subscription(RESOURCE)
    request = httpx.Request("POST", "https://vendor.example.com/channels/stop")
    connector.stop_error = httpx.HTTPStatusError(
        "server error", request=request, response=httpx.Response(500, request=request)
    )

    second = await manager.renew(RESOURCE)

    assert second.channel_id != first.channel_id
    assert (await repo.get_watch(RESOURCE)).channel_id == second.channel_id


@pytest.mark.asyncio
async def test_teardown_survives_unexpected_stop_errors(manager, connector, repo):
    await manager.ensure_subscription(RESOURCE)
    connector.stop_error = RuntimeError("connection reset")

    await manager.teardown(RESOURCE)

    assert await repo.get_watch(RESOURCE) is None


@pytest.mark.asyncio
async def test_teardown_clears_everything(manager, connector, repo, scheduler):
    subscription = await manager.ensure_subscription(RESOURCE)
    handle = await repo.get_renewal_task(RESOURCE)

    await manager.teardown(RESOURCE)

    assert connector.channels_stopped == [subscription.channel_id]
    assert handle in scheduler.cancelled
    assert await repo.get_watch(RESOURCE) is None
    assert await repo.get_renewal_task(RESOURCE) is None


# =============================================================================
# NOTIFICATIONS
# =============================================================================


@pytest.mark.asyncio
async def test_valid_notification_enqueues_incremental_sync(manager, scheduler):
    subscription = await manager.ensure_subscription(RESOURCE)

    outcome = await manager.on_notification(RESOURCE, _notification(subscription))

    assert outcome == NotificationOutcome.ACCEPTED
    [work] = scheduler.pending(WorkKind.SYNC_START)
    assert work.resource_id == RESOURCE
    assert work.mode == SyncMode.INCREMENTAL


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"secret_token": "wrong"},
        {"secret_token": None},
        {"channel_id": "chn_unknown"},
        {"channel_id": None},
        {"channel_id": "chn_\u00e9"},
        {"secret_token": "s\u00e9cret"},
    ],
)
async def test_bad_credentials_are_rejected(manager, scheduler, overrides):
    subscription = await manager.ensure_subscription(RESOURCE)

    outcome = await manager.on_notification(RESOURCE, _notification(subscription, **overrides))

    assert outcome == NotificationOutcome.REJECTED
    assert scheduler.pending(WorkKind.SYNC_START) == []


@pytest.mark.asyncio
async def test_notification_without_subscription_is_rejected(manager, scheduler):
    outcome = await manager.on_notification(RESOURCE, WebhookNotification(channel_id="chn_1", secret_token="s"))

    assert outcome == NotificationOutcome.REJECTED


@pytest.mark.asyncio
async def test_notification_while_syncing_is_busy(manager, repo, scheduler):
    subscription = await manager.ensure_subscription(RESOURCE)
    await repo.acquire_lock(RESOURCE, "pass_running")

    outcome = await manager.on_notification(RESOURCE, _notification(subscription))

    assert outcome == NotificationOutcome.BUSY
    assert scheduler.pending(WorkKind.SYNC_START) == []


@pytest.mark.asyncio
async def test_notification_near_expiry_renews_reactively(manager, connector, repo, fake_clock):
    subscription = await manager.ensure_subscription(RESOURCE)
    fake_clock.advance(timedelta(days=6, hours=1))

    outcome = await manager.on_notification(RESOURCE, _notification(subscription))

    assert outcome == NotificationOutcome.ACCEPTED
    assert len(connector.channels_created) == 2
    assert (await repo.get_watch(RESOURCE)).channel_id != subscription.channel_id


@pytest.mark.asyncio
async def test_reactive_renewal_failure_does_not_fail_notification(manager, connector, fake_clock):
    subscription = await manager.ensure_subscription(RESOURCE)
    fake_clock.advance(timedelta(days=6, hours=1))
    connector.channel_error = VendorUnavailable(status_code=503)

    outcome = await manager.on_notification(RESOURCE, _notification(subscription))

    assert outcome == NotificationOutcome.ACCEPTED


@pytest.mark.asyncio
async def test_channel_keeps_working_after_failed_reactive_renewal(manager, connector, repo, scheduler, fake_clock):
    subscription = await manager.ensure_subscription(RESOURCE)
    fake_clock.advance(timedelta(days=6, hours=1))
    connector.channel_error = VendorUnavailable(status_code=503)

    await manager.on_notification(RESOURCE, _notification(subscription))
    scheduler.pop_next(WorkKind.SYNC_START)
    outcome = await manager.on_notification(RESOURCE, _notification(subscription))

    assert outcome == NotificationOutcome.ACCEPTED
    assert await repo.get_watch(RESOURCE) == subscription
    assert await repo.get_renewal_task(RESOURCE) in scheduler.jobs
