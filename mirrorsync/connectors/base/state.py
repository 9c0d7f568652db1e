"""
Connector State Management

Per-resource sync progress, push subscriptions, queued write-backs and the
tokens handed out by the host's auth layer. Everything here is persisted as
JSON through the state repository.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from mirrorsync.kernel.time import utc_now


class SyncMode(str, Enum):
    """Data synchronization modes."""

    FULL = "full"                  # Walk the whole window from scratch
    INCREMENTAL = "incremental"    # Only changes since the last resume token


class SyncOptions(BaseModel):
    """Caller options for starting a pass."""

    since: datetime | None = None
    until: datetime | None = None
    unbounded: bool = False  # No lower bound at all (ignores the default lookback)


class SyncState(BaseModel):
    """
    Progress of the sync pass currently running for a resource.

    `batch` is the number of the next batch this pass expects to run.
    """

    resource_id: str
    pass_id: str
    mode: SyncMode = SyncMode.FULL

    # Vendor position
    cursor: str | None = None        # Page token within the current pass
    resume_token: str | None = None  # Sync token / delta link for incremental passes
    window_start: datetime | None = None
    window_end: datetime | None = None

    # Progress
    sequence: int = 1
    more: bool = False
    batch: int = 1
    initial_sync: bool = False

    # Account identity resolved on batch 1, scoped to this pass
    identity: str | None = None

    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def restart_full(self, window_start: datetime | None, now: datetime) -> "SyncState":
        """Drop the vendor position and restart this pass as a full resync."""
        return self.model_copy(
            update={
                "mode": SyncMode.FULL,
                "cursor": None,
                "resume_token": None,
                "window_start": window_start,
                "sequence": self.sequence + 1,
                "more": False,
                "updated_at": now,
            }
        )

    def advance(self, next_cursor: str | None, has_more: bool, resume_token: str | None, now: datetime) -> "SyncState":
        """State after a page has been processed."""
        return self.model_copy(
            update={
                "cursor": next_cursor if has_more else None,
                "resume_token": resume_token if resume_token is not None else self.resume_token,
                "more": has_more,
                "batch": self.batch + 1,
                "updated_at": now,
            }
        )


class WatchSubscription(BaseModel):
    """An active vendor push channel for one resource."""

    resource_id: str
    channel_id: str
    secret: str
    callback_address: str
    expires_at: datetime
    vendor_ref: str | None = None  # Vendor handle needed to stop the channel
    created_at: datetime = Field(default_factory=utc_now)

    def time_left(self, now: datetime) -> timedelta:
        return self.expires_at - now


class PendingWriteback(BaseModel):
    """A write-back waiting for its actor to authorize."""

    target_resource: str
    target_item: str
    desired_field: str
    desired_value: Any
    queued_at: datetime = Field(default_factory=utc_now)


class Token(BaseModel):
    """Access token for a resource or an acting actor."""

    subject_id: str
    access_token: str
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)

    def is_valid(self, now: datetime) -> bool:
        if not self.access_token:
            return False
        return self.expires_at is None or self.expires_at > now
