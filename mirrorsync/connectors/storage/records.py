"""
Canonical record store.

The persistence layer is owned by the host application; the engine only
needs upsert-by-external-key with merge semantics for series exceptions.
`InMemoryRecordStore` is the reference implementation of those semantics.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from mirrorsync.connectors.base.records import (
    CanonicalRecord,
    Provenance,
    RecordStatus,
    SeriesException,
    SeriesExceptionDraft,
    Tombstone,
)
from mirrorsync.kernel.ids import new_prefixed_id

logger = structlog.get_logger()


class RecordStore(Protocol):
    async def save(self, record: CanonicalRecord) -> str:
        """Upsert by `external_key`; returns the local record id."""
        ...

    async def save_exception(self, draft: SeriesExceptionDraft) -> None:
        """Merge one occurrence override into its master, creating a placeholder if needed."""
        ...

    async def save_tombstone(self, tombstone: Tombstone) -> str:
        """Mark a record cancelled (creating a minimal one if it was never seen)."""
        ...

    async def get(self, external_key: str) -> CanonicalRecord | None: ...


def merge_occurrences(
    existing: list[SeriesException],
    incoming: list[SeriesException],
) -> list[SeriesException]:
    """Merge overrides keyed by original occurrence; the incoming override replaces the stored one."""
    merged = {exception.occurrence_key: exception for exception in existing}
    for exception in incoming:
        merged[exception.occurrence_key] = exception
    return sorted(merged.values(), key=lambda exception: exception.occurrence)


def placeholder_master(draft: SeriesExceptionDraft) -> CanonicalRecord:
    """Minimal master created when an exception arrives before its series."""
    provenance = draft.provenance or Provenance(
        source_system=draft.series_key.split(":", 1)[0],
        external_id=draft.series_key.rsplit(":", 1)[-1],
    )
    return CanonicalRecord(
        external_key=draft.series_key,
        kind=draft.kind,
        provenance=provenance,
        start_at=draft.override_start or draft.occurrence,
        placeholder=True,
    )


class InMemoryRecordStore:
    """Dict-backed store for tests and local development."""

    def __init__(self) -> None:
        self._records: dict[str, CanonicalRecord] = {}
        self._ids: dict[str, str] = {}

    def _record_id(self, external_key: str) -> str:
        return self._ids.setdefault(external_key, new_prefixed_id("rec"))

    async def get(self, external_key: str) -> CanonicalRecord | None:
        return self._records.get(external_key)

    async def save(self, record: CanonicalRecord) -> str:
        existing = self._records.get(record.external_key)
        occurrences = record.occurrences
        if existing is not None:
            occurrences = merge_occurrences(existing.occurrences, record.occurrences)
        self._records[record.external_key] = record.model_copy(
            update={"occurrences": occurrences, "placeholder": False},
            deep=True,
        )
        return self._record_id(record.external_key)

    async def save_exception(self, draft: SeriesExceptionDraft) -> None:
        master = self._records.get(draft.series_key)
        if master is None:
            logger.debug("Creating placeholder master", series_key=draft.series_key)
            master = placeholder_master(draft)
            self._record_id(draft.series_key)
        self._records[draft.series_key] = master.model_copy(
            update={"occurrences": merge_occurrences(master.occurrences, [draft.to_exception()])},
            deep=True,
        )

    async def save_tombstone(self, tombstone: Tombstone) -> str:
        existing = self._records.get(tombstone.external_key)
        if existing is None:
            existing = CanonicalRecord(
                external_key=tombstone.external_key,
                kind=tombstone.kind,
                provenance=tombstone.provenance,
                title=tombstone.title or "",
            )
        self._records[tombstone.external_key] = existing.model_copy(
            update={"status": RecordStatus.CANCELLED, "updated_at": tombstone.removed_at},
            deep=True,
        )
        return self._record_id(tombstone.external_key)

    def all(self) -> list[CanonicalRecord]:
        return list(self._records.values())
