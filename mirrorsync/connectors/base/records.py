"""
Record Types

Defines the canonical records produced by connector transforms and the page
envelope returned by vendor fetches.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from mirrorsync.kernel.time import coerce_utc, isoformat_z, utc_now


class RecordKind(str, Enum):
    """Kinds of mirrored items."""

    EVENT = "event"            # Calendar event, meeting
    FILE = "file"              # Drive file, document
    ISSUE = "issue"            # Issue tracker ticket
    MESSAGE = "message"        # Comment, email
    CUSTOM = "custom"          # Provider-specific


class RecordStatus(str, Enum):
    """Lifecycle state of a mirrored item. Removal is a state, never a delete."""

    ACTIVE = "active"
    CANCELLED = "cancelled"


class Provenance(BaseModel):
    """Where a record came from.

    `extra` is vendor passthrough only; the engine never branches on it.
    """

    source_system: str          # e.g. "google-calendar", "linear"
    external_id: str            # Vendor ID of the item
    resource_id: str | None = None  # Calendar / drive / project the item was synced from
    extra: dict[str, str] = Field(default_factory=dict)


class Participant(BaseModel):
    """A person attached to a record (attendee, assignee, collaborator)."""

    email: str | None = None
    name: str | None = None
    role: str | None = None        # organizer, attendee, owner, assignee
    response: str | None = None    # accepted, declined, tentative, needsAction


def build_external_key(source_system: str, *parts: str) -> str:
    """Build the stable upsert key for a vendor item: `{source}:{part}:{part}`."""
    if not source_system or not parts or not all(parts):
        raise ValueError("external key needs a source system and non-empty parts")
    return ":".join([source_system, *parts])


class SeriesException(BaseModel):
    """One occurrence's deviation from its recurring master.

    Identified by `(series_key, occurrence)`; `occurrence` is the originally
    scheduled instant, not the rescheduled one.
    """

    series_key: str
    occurrence: datetime
    override_start: datetime | None = None
    override_end: datetime | None = None
    override_fields: dict[str, Any] = Field(default_factory=dict)
    archived: bool = False

    @field_validator("occurrence", "override_start", "override_end")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return coerce_utc(value) if value is not None else None

    @property
    def occurrence_key(self) -> str:
        return isoformat_z(self.occurrence)


class SeriesExceptionDraft(SeriesException):
    """A SeriesException as emitted by a transform.

    Carries what the store needs to create a placeholder master when the
    exception is observed before its master.
    """

    provenance: Provenance | None = None
    kind: RecordKind = RecordKind.EVENT

    def to_exception(self) -> SeriesException:
        return SeriesException(
            series_key=self.series_key,
            occurrence=self.occurrence,
            override_start=self.override_start,
            override_end=self.override_end,
            override_fields=dict(self.override_fields),
            archived=self.archived,
        )


class CanonicalRecord(BaseModel):
    """
    The mirrored item.

    Identity is `external_key`; upsert by that key is the only mutation path.
    """

    # Identity
    external_key: str
    kind: RecordKind = RecordKind.CUSTOM
    provenance: Provenance

    # Content
    title: str = ""
    body: str | None = None

    # Timestamps
    created_at: datetime | None = None
    updated_at: datetime | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day: bool = False

    # Recurrence
    recurrence: str | None = None  # RRULE body for series masters
    occurrences: list[SeriesException] = Field(default_factory=list)

    # People
    participants: list[Participant] = Field(default_factory=list)

    # State
    status: RecordStatus = RecordStatus.ACTIVE
    placeholder: bool = False  # Created from an exception before the master arrived

    # Type-specific fields (issue state, file mime type, location, ...)
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_key")
    @classmethod
    def _key_has_source(cls, value: str) -> str:
        if ":" not in value or value.startswith(":") or value.endswith(":"):
            raise ValueError(f"external_key must look like 'source:id', got {value!r}")
        return value

    @property
    def duration(self) -> timedelta | None:
        if self.start_at is None or self.end_at is None:
            return None
        return self.end_at - self.start_at

    def find_occurrence(self, occurrence: datetime) -> SeriesException | None:
        key = isoformat_z(occurrence)
        for exception in self.occurrences:
            if exception.occurrence_key == key:
                return exception
        return None


class Tombstone(BaseModel):
    """An item the vendor reports as cancelled or removed."""

    external_key: str
    provenance: Provenance
    kind: RecordKind = RecordKind.CUSTOM
    title: str | None = None
    removed_at: datetime = Field(default_factory=utc_now)


class Page(BaseModel):
    """
    One page returned by a vendor fetch.

    `next_cursor` continues pagination while `has_more` is set. On the last
    page the vendor's resume token (sync token / delta link) is either given
    in `resume_token` or, for vendors that reuse one field, in `next_cursor`.
    """

    items: list[Any] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False
    resume_token: str | None = None

    @property
    def final_resume_token(self) -> str | None:
        if self.has_more:
            return None
        return self.resume_token or self.next_cursor
