"""
Base Connector Abstract Class

The interface every vendor connector (calendar, drive, issue tracker)
implements. The engine only calls these methods; vendor HTTP shapes and
OAuth flows stay inside the connector.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from mirrorsync.connectors.base.records import CanonicalRecord, Page, SeriesExceptionDraft, Tombstone
from mirrorsync.connectors.base.state import SyncMode, SyncState, Token, WatchSubscription

logger = structlog.get_logger()

TransformResult = CanonicalRecord | SeriesExceptionDraft | Tombstone | None


@dataclass
class ConnectorCapabilities:
    """Describes what a connector can do and its vendor-specific timings.

    Timing fields left as None fall back to the engine settings.
    """

    # Features
    supports_webhooks: bool = False
    supports_writeback: bool = False

    # Push channels
    channel_ttl: timedelta | None = None  # Vendor maximum lifetime
    renewal_buffer_fraction: float | None = None
    renewal_min_buffer: timedelta | None = None
    reactive_renewal_horizon: timedelta | None = None

    # Sync windows
    full_sync_lookback_years: int | None = None
    incremental_lookback: timedelta | None = None


@dataclass(frozen=True)
class TransformContext:
    """Per-pass facts a transform may need (e.g. to tag the account's own RSVP)."""

    resource_id: str
    mode: SyncMode
    initial_sync: bool
    identity: str | None = None


@dataclass(frozen=True)
class ChannelRequest:
    resource_id: str
    channel_id: str
    secret: str
    callback_address: str
    ttl: timedelta


@dataclass(frozen=True)
class Channel:
    channel_id: str
    expires_at: datetime
    vendor_ref: str | None = None


@dataclass(frozen=True)
class ChannelCredentials:
    channel_id: str | None
    secret_token: str | None


class Connector(ABC):
    """
    Abstract base class for all data source connectors.

    Each connector must implement:
    - connector_type: Unique identifier (e.g., "google-calendar", "linear")
    - fetch_page: One vendor page for the given sync state
    - transform: Vendor item -> canonical record / series exception / tombstone
    - get_token: Token for a resource or actor, or None if not authorized

    Push channels and write-back are optional; override the matching methods
    and flip the capability flags.

    Example usage:
        engine = SyncEngine(connector=CalendarConnector(), store=..., records=..., scheduler=...)
        await engine.enable_resource("team@example.com")
    """

    @property
    @abstractmethod
    def connector_type(self) -> str:
        """Unique identifier for this connector type."""

    @property
    def capabilities(self) -> ConnectorCapabilities:
        return ConnectorCapabilities()

    @abstractmethod
    async def fetch_page(self, state: SyncState, token: Token) -> Page:
        """
        Fetch one page for the pass described by `state`.

        Use `state.cursor` when set (pagination within a pass), otherwise
        `state.resume_token` (incremental), otherwise the window bounds.

        Raises:
            TokenExpired: the vendor no longer accepts the resume token
            VendorUnavailable: transient failure
        """

    @abstractmethod
    def transform(self, item: Any, context: TransformContext) -> TransformResult:
        """Map one vendor item. Return None to skip it."""

    @abstractmethod
    async def get_token(self, subject_id: str) -> Token | None:
        """Token for a resource id or an actor id; None when not authorized."""

    async def resolve_identity(self, token: Token) -> str | None:
        """The authenticated account's identity (e.g. its email). Optional."""
        return None

    async def create_channel(self, request: ChannelRequest) -> Channel:
        raise NotImplementedError(f"{self.connector_type} does not support push channels")

    async def stop_channel(self, subscription: WatchSubscription) -> None:
        raise NotImplementedError(f"{self.connector_type} does not support push channels")

    def extract_channel_credentials(self, headers: Mapping[str, str]) -> ChannelCredentials:
        """Pull the channel id and secret out of an inbound notification."""
        lowered = {key.lower(): value for key, value in headers.items()}
        return ChannelCredentials(
            channel_id=lowered.get("x-channel-id"),
            secret_token=lowered.get("x-channel-token"),
        )

    async def read_remote_value(self, token: Token, target_resource: str, target_item: str, field: str) -> Any:
        raise NotImplementedError(f"{self.connector_type} does not support write-back")

    async def write_remote_value(
        self,
        token: Token,
        target_resource: str,
        target_item: str,
        field: str,
        value: Any,
    ) -> None:
        raise NotImplementedError(f"{self.connector_type} does not support write-back")

    async def request_authorization(self, actor_id: str, target_resource: str) -> None:
        """Ask the actor to authorize (e.g. post a private auth prompt)."""
        raise NotImplementedError(f"{self.connector_type} does not support write-back")


class ConnectorRegistry:
    """
    Registry for connector implementations.

    Can be used as a decorator:
        @ConnectorRegistry.register
        class CalendarConnector(Connector):
            ...

    Or called directly with a type name:
        ConnectorRegistry.register("google-calendar", CalendarConnector)
    """

    _connectors: dict[str, type[Connector]] = {}

    @classmethod
    def register(
        cls,
        connector_type_or_class: str | type[Connector],
        connector_class: type[Connector] | None = None,
    ) -> type[Connector]:
        if isinstance(connector_type_or_class, str):
            if connector_class is None:
                raise ValueError("connector_class must be provided when type is a string")
            connector_type = connector_type_or_class
            actual_class = connector_class
        else:
            actual_class = connector_type_or_class
            connector_type = getattr(actual_class, "CONNECTOR_TYPE", None)
            if connector_type is None:
                raise ValueError(f"Connector {actual_class.__name__} must define CONNECTOR_TYPE")

        cls._connectors[connector_type] = actual_class
        logger.info("Registered connector", connector_type=connector_type)
        return actual_class

    @classmethod
    def get(cls, connector_type: str) -> type[Connector] | None:
        return cls._connectors.get(connector_type)

    @classmethod
    def create(cls, connector_type: str) -> Connector | None:
        """Create a connector instance by type."""
        connector_class = cls.get(connector_type)
        if connector_class:
            return connector_class()
        return None

    @classmethod
    def list_available(cls) -> list[str]:
        return list(cls._connectors.keys())

    @classmethod
    def unregister(cls, connector_type: str) -> None:
        cls._connectors.pop(connector_type, None)
