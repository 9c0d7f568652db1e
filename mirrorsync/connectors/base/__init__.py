"""Base connector interfaces and models."""

from mirrorsync.connectors.base.connector import (
    Channel,
    ChannelCredentials,
    ChannelRequest,
    Connector,
    ConnectorCapabilities,
    ConnectorRegistry,
    TransformContext,
    TransformResult,
)
from mirrorsync.connectors.base.records import (
    CanonicalRecord,
    Page,
    Participant,
    Provenance,
    RecordKind,
    RecordStatus,
    SeriesException,
    SeriesExceptionDraft,
    Tombstone,
    build_external_key,
)
from mirrorsync.connectors.base.state import (
    PendingWriteback,
    SyncMode,
    SyncOptions,
    SyncState,
    Token,
    WatchSubscription,
)

__all__ = [
    "CanonicalRecord",
    "Channel",
    "ChannelCredentials",
    "ChannelRequest",
    "Connector",
    "ConnectorCapabilities",
    "ConnectorRegistry",
    "Page",
    "Participant",
    "PendingWriteback",
    "Provenance",
    "RecordKind",
    "RecordStatus",
    "SeriesException",
    "SeriesExceptionDraft",
    "SyncMode",
    "SyncOptions",
    "SyncState",
    "Token",
    "Tombstone",
    "TransformContext",
    "TransformResult",
    "WatchSubscription",
    "build_external_key",
]
