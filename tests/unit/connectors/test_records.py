"""
Unit tests for canonical record models and the in-memory record store.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from mirrorsync.connectors.base import (
    CanonicalRecord,
    Page,
    Provenance,
    RecordKind,
    RecordStatus,
    SeriesException,
    SeriesExceptionDraft,
    Tombstone,
    build_external_key,
)
from mirrorsync.connectors.storage import InMemoryRecordStore

pytestmark = pytest.mark.unit

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _record(key: str = "gcal:evt_1", **overrides) -> CanonicalRecord:
    fields = {
        "external_key": key,
        "kind": RecordKind.EVENT,
        "provenance": Provenance(source_system="gcal", external_id=key.partition(":")[2] or key),
        "title": "Standup",
        "start_at": T0,
        "end_at": T0 + timedelta(minutes=30),
    }
    fields.update(overrides)
    return CanonicalRecord(**fields)


def test_build_external_key() -> None:
    assert build_external_key("gcal", "team", "evt_1") == "gcal:team:evt_1"
    with pytest.raises(ValueError):
        build_external_key("gcal", "")


@pytest.mark.parametrize("key", ["evt_1", ":evt_1", "gcal:"])
def test_external_key_requires_source_prefix(key: str) -> None:
    with pytest.raises(ValidationError, match="external_key"):
        _record(key=key, provenance=Provenance(source_system="gcal", external_id="evt_1"))


def test_duration_and_occurrence_lookup() -> None:
    record = _record(
        occurrences=[SeriesException(series_key="gcal:evt_1", occurrence=T0, override_fields={"title": "Moved"})]
    )
    assert record.duration == timedelta(minutes=30)
    assert record.find_occurrence(T0.astimezone(timezone(timedelta(hours=1)))) is not None
    assert record.find_occurrence(T0 + timedelta(days=1)) is None


def test_series_exception_coerces_naive_to_utc() -> None:
    exception = SeriesException(series_key="gcal:evt_1", occurrence=datetime(2026, 1, 5, 9, 0))
    assert exception.occurrence.tzinfo == timezone.utc
    assert exception.occurrence_key == "2026-01-05T09:00:00Z"


@pytest.mark.parametrize(
    "page, expected",
    [
        (Page(has_more=True, next_cursor="p2", resume_token="s1"), None),
        (Page(has_more=False, resume_token="s1"), "s1"),
        (Page(has_more=False, next_cursor="delta-link"), "delta-link"),
        (Page(has_more=False), None),
    ],
)
def test_page_final_resume_token(page: Page, expected) -> None:
    assert page.final_resume_token == expected


@pytest.mark.asyncio
async def test_save_is_an_idempotent_upsert() -> None:
    store = InMemoryRecordStore()
    first_id = await store.save(_record())
    second_id = await store.save(_record())

    assert first_id == second_id
    assert len(store.all()) == 1
    assert (await store.get("gcal:evt_1")).title == "Standup"

    await store.save(_record(title="Renamed"))
    assert (await store.get("gcal:evt_1")).title == "Renamed"
    assert len(store.all()) == 1


@pytest.mark.asyncio
async def test_exception_before_master_creates_placeholder_then_enriches() -> None:
    store = InMemoryRecordStore()
    draft = SeriesExceptionDraft(
        series_key="gcal:evt_1",
        occurrence=T0,
        override_start=T0 + timedelta(hours=1),
        override_fields={"title": "Late standup"},
        provenance=Provenance(source_system="gcal", external_id="evt_1"),
    )

    await store.save_exception(draft)
    placeholder = await store.get("gcal:evt_1")
    assert placeholder.placeholder is True
    assert placeholder.start_at == T0 + timedelta(hours=1)
    assert len(placeholder.occurrences) == 1

    await store.save(_record())
    master = await store.get("gcal:evt_1")
    assert master.placeholder is False
    assert master.title == "Standup"
    assert master.occurrences[0].override_fields == {"title": "Late standup"}


@pytest.mark.asyncio
async def test_later_exception_replaces_same_occurrence() -> None:
    store = InMemoryRecordStore()
    await store.save(_record())
    for title in ("First", "Second"):
        await store.save_exception(
            SeriesExceptionDraft(series_key="gcal:evt_1", occurrence=T0, override_fields={"title": title})
        )

    master = await store.get("gcal:evt_1")
    assert len(master.occurrences) == 1
    assert master.occurrences[0].override_fields == {"title": "Second"}


@pytest.mark.asyncio
async def test_tombstone_cancels_without_deleting() -> None:
    store = InMemoryRecordStore()
    await store.save(_record())
    removed_at = T0 + timedelta(days=1)

    await store.save_tombstone(
        Tombstone(
            external_key="gcal:evt_1",
            provenance=Provenance(source_system="gcal", external_id="evt_1"),
            removed_at=removed_at,
        )
    )

    record = await store.get("gcal:evt_1")
    assert record.status == RecordStatus.CANCELLED
    assert record.updated_at == removed_at
    assert record.title == "Standup"


@pytest.mark.asyncio
async def test_tombstone_for_unknown_record_creates_cancelled_stub() -> None:
    store = InMemoryRecordStore()
    await store.save_tombstone(
        Tombstone(
            external_key="gcal:evt_9",
            provenance=Provenance(source_system="gcal", external_id="evt_9"),
            title="Gone",
        )
    )

    record = await store.get("gcal:evt_9")
    assert record.status == RecordStatus.CANCELLED
    assert record.title == "Gone"
