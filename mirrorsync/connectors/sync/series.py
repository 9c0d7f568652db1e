"""
Series Reconciler

Recurring items arrive as a master (the template) plus per-occurrence
exceptions. Exceptions are never stored as records of their own: each one is
merged into the master addressed by its external key, keyed by the
originally scheduled instant. The master may not exist yet when an exception
is synced first; the record store then creates a placeholder that is
enriched once the master itself is processed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from mirrorsync.connectors.base.records import (
    CanonicalRecord,
    Provenance,
    RecordKind,
    SeriesException,
    SeriesExceptionDraft,
)
from mirrorsync.connectors.storage.records import RecordStore
from mirrorsync.kernel.time import coerce_utc, isoformat_z

logger = structlog.get_logger()


@dataclass
class OccurrenceView:
    """One occurrence of a series as it should be rendered."""

    series_key: str
    occurrence: datetime
    start: datetime
    end: datetime | None
    fields: dict[str, Any] = field(default_factory=dict)
    archived: bool = False
    overridden: bool = False


class SeriesReconciler:
    """Applies occurrence exceptions to their series master."""

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def reconcile(
        self,
        series_key: str,
        occurrence: datetime,
        *,
        override_start: datetime | None = None,
        override_end: datetime | None = None,
        fields: dict[str, Any] | None = None,
        archived: bool = False,
        provenance: Provenance | None = None,
        kind: RecordKind = RecordKind.EVENT,
    ) -> None:
        """Merge one occurrence override into the master record for `series_key`.

        A cancelled occurrence is `archived=True`; the occurrence is never deleted.
        """
        draft = SeriesExceptionDraft(
            series_key=series_key,
            occurrence=occurrence,
            # Always carry a start so a placeholder master can be scheduled.
            override_start=override_start or occurrence,
            override_end=override_end,
            override_fields=dict(fields or {}),
            archived=archived,
            provenance=provenance,
            kind=kind,
        )
        await self.reconcile_draft(draft)

    async def reconcile_draft(self, draft: SeriesExceptionDraft) -> None:
        if draft.override_start is None:
            draft = draft.model_copy(update={"override_start": draft.occurrence})
        logger.debug(
            "Reconciling series exception",
            series_key=draft.series_key,
            occurrence=isoformat_z(draft.occurrence),
            archived=draft.archived,
        )
        await self._records.save_exception(draft)


def master_template(master: CanonicalRecord) -> dict[str, Any]:
    """Fields every occurrence inherits unless overridden."""
    return {
        "title": master.title,
        "body": master.body,
        "participants": [participant.model_dump() for participant in master.participants],
        **master.attributes,
    }


def render_occurrence(master: CanonicalRecord, occurrence: datetime) -> OccurrenceView:
    """Render one occurrence; its override wins over the master template."""
    occurrence = coerce_utc(occurrence)
    fields = master_template(master)
    duration = master.duration
    default_end = occurrence + duration if duration is not None else None

    exception: SeriesException | None = master.find_occurrence(occurrence)
    if exception is None:
        return OccurrenceView(
            series_key=master.external_key,
            occurrence=occurrence,
            start=occurrence,
            end=default_end,
            fields=fields,
        )

    fields.update(exception.override_fields)
    start = exception.override_start or occurrence
    if exception.override_end is not None:
        end = exception.override_end
    else:
        end = start + duration if duration is not None else None
    return OccurrenceView(
        series_key=master.external_key,
        occurrence=occurrence,
        start=start,
        end=end,
        fields=fields,
        archived=exception.archived,
        overridden=True,
    )
