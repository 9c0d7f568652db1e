"""Prometheus counters for the sync engine."""

from prometheus_client import Counter

sync_batches_total = Counter(
    "mirrorsync_sync_batches_total",
    "Sync batches by connector and outcome",
    ["connector_type", "outcome"],
)

sync_items_failed_total = Counter(
    "mirrorsync_sync_items_failed_total",
    "Items skipped after a transform or save failure",
    ["connector_type"],
)

token_expired_fallbacks_total = Counter(
    "mirrorsync_token_expired_fallbacks_total",
    "Passes restarted as full resync after the resume token expired",
    ["connector_type"],
)

subscription_renewals_total = Counter(
    "mirrorsync_subscription_renewals_total",
    "Push channel renewals by trigger",
    ["connector_type", "trigger"],
)

writebacks_total = Counter(
    "mirrorsync_writebacks_total",
    "Write-backs by outcome",
    ["connector_type", "outcome"],
)
