"""PWMS storage layer.

Storage backend fallback chain, entity mirror, change log, and the
local-first queue with its sync engine.
"""

from pwms.types import ChangeRecord, QueueItem, SyncResult

from .backends import (
    MemoryBackend,
    PartitionStore,
    SQLiteBackend,
    StorageBackend,
    SupabaseBackend,
    select_backend,
)
from .changelog import ChangeLog
from .local import LocalStore
from .mirror import EntityMirrorStore, build_quality_record, build_shipment_record
from .queue import SyncQueue
from .remote import RemoteStore
from .sync_engine import SyncEngine

__all__ = [
    "ChangeLog",
    "ChangeRecord",
    "EntityMirrorStore",
    "LocalStore",
    "MemoryBackend",
    "PartitionStore",
    "QueueItem",
    "RemoteStore",
    "SQLiteBackend",
    "StorageBackend",
    "SupabaseBackend",
    "SyncEngine",
    "SyncQueue",
    "SyncResult",
    "build_quality_record",
    "build_shipment_record",
    "select_backend",
]
