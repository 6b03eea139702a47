"""Storage backends and the fallback chain the mirror and change log sit on.

Three backends share one get/set contract over a closed set of logical
partitions (``quality``, ``shipment``, ``changelog``):

- ``SupabaseBackend``: durable relational store, one row per entity.
- ``SQLiteBackend``: durable key-value store on local disk.
- ``MemoryBackend``: process-local dict, lost on restart.

``select_backend()`` picks one at composition time. ``PartitionStore`` wraps
the choice with a live in-memory secondary: every write lands in memory, and
a durable call that raises is served from memory for that call only.
"""

import contextlib
import copy
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from pwms.types import (
    CHANGELOG_CAPACITY,
    QUALITY_PARTITION,
    SHIPMENT_PARTITION,
    BackendUnavailable,
    parse_datetime,
    utc_now,
    validate_partition,
)

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    """Uniform get/set contract over logical partitions."""

    name: str = "abstract"
    durable: bool = False

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the document stored under ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> bool:
        """Replace the document stored under ``key``."""


class MemoryBackend(StorageBackend):
    """In-memory partitions. Values are deep-copied in and out."""

    name = "memory"
    durable = False

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Any:
        validate_partition(key)
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> bool:
        validate_partition(key)
        with self._lock:
            self._data[key] = copy.deepcopy(value)
        return True


class SQLiteBackend(StorageBackend):
    """Durable key-value partitions in a local SQLite file."""

    name = "sqlite"
    durable = True

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS partitions (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).expanduser()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(self.SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise BackendUnavailable(self.name, str(e)) from e

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    async def get(self, key: str) -> Any:
        validate_partition(key)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM partitions WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise BackendUnavailable(self.name, str(e)) from e
        return json.loads(row["value"]) if row else None

    async def set(self, key: str, value: Any) -> bool:
        validate_partition(key)
        try:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO partitions (key, value, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET
                           value = excluded.value,
                           updated_at = excluded.updated_at""",
                    (key, json.dumps(value), utc_now()),
                )
        except sqlite3.Error as e:
            raise BackendUnavailable(self.name, str(e)) from e
        return True


# =============================================================================
# Supabase (relational) row mapping
# =============================================================================

QUALITY_TABLE = "quality"
SHIPMENTS_TABLE = "shipments"
SYNC_CHANGES_TABLE = "sync_changes"


def _quality_to_row(batch_number: str, record: dict) -> dict:
    return {
        "batch_number": batch_number,
        "status": record.get("status"),
        "notes": record.get("notes"),
        "checked_by": record.get("checkedBy"),
        "checked_date": record.get("checkedDate") or utc_now(),
        "updated_at": record.get("updatedAt") or utc_now(),
    }


def _row_to_quality(row: dict) -> dict:
    return {
        "status": row.get("status"),
        "notes": row.get("notes"),
        "checkedBy": row.get("checked_by"),
        "checkedDate": row.get("checked_date"),
        "updatedAt": row.get("updated_at"),
    }


def _shipment_to_row(batch_number: str, record: dict) -> dict:
    shipped = record.get("shipped")
    return {
        "batch_number": batch_number,
        "shipped": True if shipped is None else bool(shipped),
        "shipped_date": record.get("shippedDate") or utc_now(),
        "shipped_by": record.get("shippedBy"),
        "notes": record.get("notes"),
        "updated_at": record.get("updatedAt") or utc_now(),
    }


def _row_to_shipment(row: dict) -> dict:
    return {
        "shipped": row.get("shipped"),
        "shippedDate": row.get("shipped_date"),
        "shippedBy": row.get("shipped_by"),
        "notes": row.get("notes"),
        "updatedAt": row.get("updated_at"),
    }


def _change_to_row(change: dict) -> dict:
    return {
        "change_id": change["id"],
        "type": change["type"],
        "batch_number": change["batchNumber"],
        "data": change.get("data"),
        "source": change.get("source") or "unknown",
        "timestamp": change.get("timestamp") or utc_now(),
    }


def _row_to_change(row: dict) -> dict:
    return {
        "id": row["change_id"],
        "type": row["type"],
        "batchNumber": row["batch_number"],
        "data": row.get("data"),
        "source": row.get("source"),
        "timestamp": row.get("timestamp"),
    }


class SupabaseBackend(StorageBackend):
    """Durable relational partitions in Supabase (PostgREST).

    ``quality`` and ``shipment`` map to one row per batch number; a ``set``
    upserts every row of the map that is not older than the stored one.
    ``changelog`` maps to ``sync_changes``: a ``set`` inserts unseen change
    ids, then deletes rows outside the newest ``capacity`` by serial id.
    """

    name = "supabase"
    durable = True

    def __init__(self, client, capacity: int = CHANGELOG_CAPACITY):
        self._client = client
        self.capacity = capacity

    @classmethod
    def from_settings(cls, settings) -> "SupabaseBackend":
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not settings.supabase_url or not api_key:
            raise BackendUnavailable(
                cls.name, "SUPABASE_URL and SUPABASE_SECRET_KEY must both be set"
            )
        try:
            from supabase import create_client

            client = create_client(settings.supabase_url, api_key)
        except Exception as e:
            raise BackendUnavailable(cls.name, str(e)) from e
        return cls(client, capacity=settings.changelog_capacity)

    async def get(self, key: str) -> Any:
        validate_partition(key)
        try:
            if key == QUALITY_PARTITION:
                result = self._client.table(QUALITY_TABLE).select("*").execute()
                return {row["batch_number"]: _row_to_quality(row) for row in result.data}
            if key == SHIPMENT_PARTITION:
                result = self._client.table(SHIPMENTS_TABLE).select("*").execute()
                return {row["batch_number"]: _row_to_shipment(row) for row in result.data}
            result = (
                self._client.table(SYNC_CHANGES_TABLE)
                .select("*")
                .order("id", desc=True)
                .limit(self.capacity)
                .execute()
            )
            # Newest rows by insertion, returned oldest first
            return [_row_to_change(row) for row in reversed(result.data)]
        except Exception as e:
            raise BackendUnavailable(self.name, f"read {key} failed: {e}") from e

    async def set(self, key: str, value: Any) -> bool:
        validate_partition(key)
        try:
            if key == QUALITY_PARTITION:
                self._upsert_map(QUALITY_TABLE, value or {}, _quality_to_row)
            elif key == SHIPMENT_PARTITION:
                self._upsert_map(SHIPMENTS_TABLE, value or {}, _shipment_to_row)
            else:
                self._write_changes(value or [])
        except Exception as e:
            raise BackendUnavailable(self.name, f"write {key} failed: {e}") from e
        return True

    def _upsert_map(self, table: str, data: Dict[str, dict], to_row) -> None:
        rows = [to_row(batch_number, record) for batch_number, record in data.items()]
        if not rows:
            return
        # The map may be a memory fallback from a failed read; never let an
        # older copy overwrite a newer durable row.
        result = (
            self._client.table(table)
            .select("batch_number, updated_at")
            .in_("batch_number", [row["batch_number"] for row in rows])
            .execute()
        )
        current = {row["batch_number"]: parse_datetime(row.get("updated_at")) for row in result.data}
        fresh = []
        for row in rows:
            stored = current.get(row["batch_number"])
            incoming = parse_datetime(row["updated_at"])
            if stored is not None and incoming is not None and incoming < stored:
                logger.debug(f"Skipping stale {table} row {row['batch_number']}")
                continue
            fresh.append(row)
        if fresh:
            self._client.table(table).upsert(fresh, on_conflict="batch_number").execute()

    def _write_changes(self, changes: List[dict]) -> None:
        if not changes:
            return
        rows = [_change_to_row(change) for change in changes]
        self._client.table(SYNC_CHANGES_TABLE).upsert(
            rows, on_conflict="change_id", ignore_duplicates=True
        ).execute()
        # Retention is decided from the table itself: the list handed in may
        # be a partial memory copy.
        try:
            result = (
                self._client.table(SYNC_CHANGES_TABLE)
                .select("id")
                .order("id", desc=True)
                .limit(self.capacity)
                .execute()
            )
            if len(result.data) >= self.capacity:
                cutoff = min(row["id"] for row in result.data)
                self._client.table(SYNC_CHANGES_TABLE).delete().lt("id", cutoff).execute()
        except Exception as e:
            # Trimming is housekeeping; the insert already landed.
            logger.warning(f"Failed to trim {SYNC_CHANGES_TABLE}: {e}")


# =============================================================================
# Selection
# =============================================================================


def select_backend(settings) -> StorageBackend:
    """Pick the storage backend for this process.

    Order: Supabase (if configured) → SQLite key-value (if ``storage_path``)
    → memory. A backend that fails to initialize is logged and skipped.
    """
    if settings.supabase_url:
        try:
            backend = SupabaseBackend.from_settings(settings)
            logger.info("Storage backend: supabase")
            return backend
        except BackendUnavailable as e:
            logger.error(f"{e}; trying next storage backend")

    if settings.storage_path:
        try:
            backend = SQLiteBackend(Path(settings.storage_path))
            logger.info(f"Storage backend: sqlite ({backend.db_path})")
            return backend
        except BackendUnavailable as e:
            logger.error(f"{e}; trying next storage backend")

    logger.warning(
        "No durable storage configured, using in-memory storage "
        "(data will be lost on restart)"
    )
    return MemoryBackend()


class PartitionStore:
    """The storage selector seen by the mirror and the change log.

    Holds the backend chosen by ``select_backend`` plus an in-memory
    secondary. Storage failures never propagate past this class.
    """

    def __init__(self, backend: StorageBackend, memory: Optional[MemoryBackend] = None):
        if isinstance(backend, MemoryBackend) and memory is None:
            memory = backend
        self.backend = backend
        self.memory = memory or MemoryBackend()

    @property
    def backend_name(self) -> str:
        return self.backend.name

    @property
    def durable(self) -> bool:
        return self.backend.durable

    async def get(self, key: str) -> Any:
        validate_partition(key)
        if self.backend is self.memory:
            return await self.memory.get(key)
        try:
            return await self.backend.get(key)
        except Exception as e:
            logger.error(f"Error reading {key} from {self.backend.name}, using memory: {e}")
            return await self.memory.get(key)

    async def set(self, key: str, value: Any) -> bool:
        validate_partition(key)
        await self.memory.set(key, value)
        if self.backend is self.memory:
            return True
        try:
            await self.backend.set(key, value)
        except Exception as e:
            logger.error(f"Error writing {key} to {self.backend.name}, kept in memory: {e}")
        return True
