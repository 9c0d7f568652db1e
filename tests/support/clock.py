from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


@dataclass
class FakeClock:
    """Deterministic `Clock` for tests. Time only moves through `advance` or `set`."""

    current: datetime

    @classmethod
    def fixed(cls, *, year: int = 2026, month: int = 1, day: int = 1, hour: int = 0) -> FakeClock:
        return cls(current=datetime(year, month, day, hour, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        self.current += delta
        return self.current

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            raise ValueError("FakeClock needs a tz-aware datetime")
        self.current = moment
