"""Write-back of local changes to the vendor, with a pending queue per actor."""

from mirrorsync.connectors.writeback.coordinator import WritebackCoordinator, WritebackOutcome
from mirrorsync.connectors.writeback.status import RsvpSignal, StatusResolver

__all__ = [
    "RsvpSignal",
    "StatusResolver",
    "WritebackCoordinator",
    "WritebackOutcome",
]
