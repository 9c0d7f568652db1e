from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def coerce_utc(value: datetime, *, assume_naive_is_utc: bool = True) -> datetime:
    """Normalize a vendor datetime to tz-aware UTC.

    Naive values are read as UTC unless `assume_naive_is_utc` is False, in
    which case they are rejected.
    """
    if value.tzinfo is not None and value.utcoffset() is not None:
        return value.astimezone(UTC)
    if not assume_naive_is_utc:
        raise ValueError(f"Refusing to guess the timezone of naive datetime {value.isoformat()}")
    return value.replace(tzinfo=UTC)


def isoformat_z(value: datetime) -> str:
    """UTC ISO-8601 with a `Z` suffix; used as the occurrence key of series exceptions."""
    return coerce_utc(value).isoformat().replace("+00:00", "Z")


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock. Engine components take a Clock so tests can move time explicitly."""

    def now(self) -> datetime:
        return utc_now()
