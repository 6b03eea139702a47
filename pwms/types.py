"""
Shared types for pwms.

The dataclasses and constants here are the contract between the storage
layer, the sync engine and the HTTP surface. Wire dictionaries use the
camelCase keys the web and mobile clients already speak.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string. Naive values are taken as UTC."""
    if not s:
        return None
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_change_id() -> str:
    """Generate a change id: epoch milliseconds plus a random suffix."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


# === Storage Partitions ===

QUALITY_PARTITION = "quality"
SHIPMENT_PARTITION = "shipment"
CHANGELOG_PARTITION = "changelog"

PARTITIONS = frozenset({QUALITY_PARTITION, SHIPMENT_PARTITION, CHANGELOG_PARTITION})

# Entity kinds mirrored by EntityMirrorStore
MIRROR_KINDS = frozenset({QUALITY_PARTITION, SHIPMENT_PARTITION})

# Change log retention cap and query cap
CHANGELOG_CAPACITY = 1000
CHANGELOG_QUERY_LIMIT = 1000


def validate_partition(key: str) -> str:
    """Reject storage keys outside the closed partition set."""
    if key not in PARTITIONS:
        raise ValueError(f"Unknown storage partition: {key}")
    return key


# === Sync Queue ===

# sync_queue.status values
QUEUE_PENDING = 0
QUEUE_DEAD_LETTER = 2

DEFAULT_MAX_RETRIES = 5


class Operation(str, Enum):
    """Mutation kinds recorded in the local queue."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


VALID_OPERATIONS = frozenset(op.value for op in Operation)


class SyncState(str, Enum):
    """Sync engine state."""

    IDLE = "idle"
    DRAINING = "draining"


# === Errors ===


class PwmsError(Exception):
    """Base exception for pwms."""


class StorageError(PwmsError):
    """Storage layer failure."""


class BackendUnavailable(StorageError):
    """A durable storage backend could not be constructed or reached."""

    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"{backend} backend unavailable: {reason}")


class ReplayFailure(PwmsError):
    """Applying a queued item to the remote store failed.

    Transient failures leave the item queued for the next drain cycle.
    """

    permanent = False

    def __init__(self, table: str, record_id: str, reason: str):
        self.table = table
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Replay of {table}:{record_id} failed: {reason}")


class SerializationError(ReplayFailure):
    """A queued item can never be applied (bad payload, unknown table or operation)."""

    permanent = True


# === Records ===


@dataclass(frozen=True)
class ChangeRecord:
    """An immutable fact in the change log."""

    id: str
    kind: str
    entity_key: str
    payload: Any = None
    origin: str = "unknown"
    occurred_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Wire form consumed by polling clients."""
        return {
            "id": self.id,
            "type": self.kind,
            "batchNumber": self.entity_key,
            "data": self.payload,
            "source": self.origin,
            "timestamp": self.occurred_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeRecord":
        return cls(
            id=data["id"],
            kind=data["type"],
            entity_key=data["batchNumber"],
            payload=data.get("data"),
            origin=data.get("source") or "unknown",
            occurred_at=data.get("timestamp") or utc_now(),
        )

    @property
    def occurred_at_dt(self) -> Optional[datetime]:
        return parse_datetime(self.occurred_at)


@dataclass
class QueueItem:
    """A mutation waiting to be replayed to the remote store."""

    id: int
    table_name: str
    record_id: str
    operation: str
    payload: Optional[str] = None  # JSON text as stored
    enqueued_at: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[str] = None
    status: int = QUEUE_PENDING

    def decode(self) -> Dict[str, Any]:
        """Decode the JSON payload, raising SerializationError if malformed."""
        if not self.payload:
            return {}
        try:
            data = json.loads(self.payload)
        except (TypeError, ValueError) as e:
            raise SerializationError(self.table_name, self.record_id, f"malformed payload: {e}")
        if not isinstance(data, dict):
            raise SerializationError(
                self.table_name, self.record_id, "payload must be a JSON object"
            )
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table": self.table_name,
            "recordId": self.record_id,
            "operation": self.operation,
            "enqueuedAt": self.enqueued_at,
            "retryCount": self.retry_count,
            "lastError": self.last_error,
            "lastAttemptAt": self.last_attempt_at,
        }


@dataclass
class SyncResult:
    """Result of one drain cycle."""

    synced: int = 0
    failed: int = 0
    dead_lettered: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    message: Optional[str] = None
    skipped: bool = False  # cycle did not run (no remote / unreachable)

    @property
    def success(self) -> bool:
        return not self.skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "synced": self.synced,
            "failed": self.failed,
            "deadLettered": self.dead_lettered,
            "errors": list(self.errors),
            "message": self.message,
        }
