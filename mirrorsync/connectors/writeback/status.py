"""
Status resolution for write-back.

Local state models a single-valued vendor field (an RSVP, a workflow state)
as independent signals that may coexist. The resolver collapses them to one
value with a fixed, explicit priority order.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum


class RsvpSignal(str, Enum):
    ATTEND = "attend"
    SKIP = "skip"
    UNDECIDED = "undecided"


DEFAULT_RSVP_VALUES: dict[str, str] = {
    RsvpSignal.ATTEND.value: "accepted",
    RsvpSignal.SKIP.value: "declined",
    RsvpSignal.UNDECIDED.value: "tentative",
}


def _normalize(signals: Iterable[str | Enum]) -> set[str]:
    return {signal.value if isinstance(signal, Enum) else str(signal) for signal in signals}


@dataclass(frozen=True)
class StatusResolver:
    """
    Resolve a desired status from the signals present after an update.

    - No relevant signal added or removed: None (nothing to write)
    - No signal present: `fallback`
    - One signal present: its value
    - Several present: the highest-priority one among those just added;
      None when none of them was just added
    """

    priority: tuple[str, ...] = (
        RsvpSignal.ATTEND.value,
        RsvpSignal.SKIP.value,
        RsvpSignal.UNDECIDED.value,
    )
    values: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_RSVP_VALUES))
    fallback: str = "needsAction"

    def __post_init__(self) -> None:
        missing = [signal for signal in self.priority if signal not in self.values]
        if missing:
            raise ValueError(f"No status value for signals: {missing}")

    def resolve(
        self,
        present: Iterable[str | Enum],
        added: Iterable[str | Enum] = (),
        removed: Iterable[str | Enum] = (),
    ) -> str | None:
        relevant = set(self.priority)
        present_set = _normalize(present) & relevant
        added_set = _normalize(added) & relevant
        removed_set = _normalize(removed) & relevant

        if not added_set and not removed_set:
            return None

        ordered = [signal for signal in self.priority if signal in present_set]
        if not ordered:
            return self.fallback
        if len(ordered) == 1:
            return self.values[ordered[0]]

        for signal in ordered:
            if signal in added_set:
                return self.values[signal]
        return None
