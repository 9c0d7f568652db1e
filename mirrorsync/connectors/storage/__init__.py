"""Storage seams: key/value state and canonical records."""

from mirrorsync.connectors.storage.kv import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from mirrorsync.connectors.storage.records import InMemoryRecordStore, RecordStore

__all__ = [
    "InMemoryKeyValueStore",
    "InMemoryRecordStore",
    "KeyValueStore",
    "RecordStore",
    "RedisKeyValueStore",
]
