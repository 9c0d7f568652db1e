"""Connector-side sync machinery.

Keep imports in this module lightweight: importing any
`mirrorsync.connectors.<submodule>` executes this `__init__` first. The
engine lives at `mirrorsync.connectors.engine`.
"""

from mirrorsync.connectors.base.connector import Connector, ConnectorCapabilities, ConnectorRegistry
from mirrorsync.connectors.base.state import SyncMode, SyncOptions, SyncState

__all__ = [
    "Connector",
    "ConnectorCapabilities",
    "ConnectorRegistry",
    "SyncMode",
    "SyncOptions",
    "SyncState",
]
