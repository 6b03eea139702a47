"""Local durable queue of mutations waiting for replay to the remote store.

Rows live in the ``sync_queue`` table of the local SQLite database and are
consumed strictly in insertion (id) order. An item leaves the queue only
after its remote apply succeeded; failed items stay pending until they
exhaust ``max_retries`` and move to the dead-letter state.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from pwms.types import (
    DEFAULT_MAX_RETRIES,
    QUEUE_DEAD_LETTER,
    QUEUE_PENDING,
    VALID_OPERATIONS,
    QueueItem,
    utc_now,
)

from .schema import SYNCABLE_TABLES, validate_table_name

logger = logging.getLogger(__name__)

_QUEUE_COLUMNS = """id, table_name, record_id, operation, data, created_at,
                    status, COALESCE(retry_count, 0) AS retry_count,
                    last_error, last_attempt_at"""


class SyncQueue:
    """Queue operations over a LocalStore's database.

    Args:
        host: The LocalStore providing connections.
        max_retries: Transient failures allowed before an item is dead-lettered.
    """

    def __init__(self, host, max_retries: int = DEFAULT_MAX_RETRIES):
        self._host = host
        self.max_retries = max_retries

    # === Enqueue ===

    def enqueue(
        self,
        table: str,
        record_id: str,
        operation: str,
        payload: Optional[Dict[str, Any]] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Append a mutation to the queue. Returns the queue item id.

        Pass ``conn`` to enqueue inside the caller's transaction.
        """
        if table not in SYNCABLE_TABLES:
            raise ValueError(f"Table {table} is not syncable")
        if operation not in VALID_OPERATIONS:
            raise ValueError(f"Invalid operation: {operation}")

        data_json = json.dumps(payload) if payload is not None else None
        params = (table, record_id, operation, data_json, utc_now())
        sql = """INSERT INTO sync_queue (table_name, record_id, operation, data, created_at, status)
                 VALUES (?, ?, ?, ?, ?, 0)"""

        if conn is not None:
            return conn.execute(sql, params).lastrowid
        with self._host._connect() as own_conn:
            return own_conn.execute(sql, params).lastrowid

    # === Reads ===

    def peek_all_ordered(self) -> List[QueueItem]:
        """Pending items in insertion order."""
        with self._host._connect() as conn:
            rows = conn.execute(
                f"SELECT {_QUEUE_COLUMNS} FROM sync_queue WHERE status = ? ORDER BY id",
                (QUEUE_PENDING,),
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def get(self, item_id: int) -> Optional[QueueItem]:
        with self._host._connect() as conn:
            row = conn.execute(
                f"SELECT {_QUEUE_COLUMNS} FROM sync_queue WHERE id = ?", (item_id,)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def count(self, status: int = QUEUE_PENDING) -> int:
        with self._host._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE status = ?", (status,)
            ).fetchone()[0]

    def dead_letters(self) -> List[QueueItem]:
        """Dead-lettered items, most recently attempted first."""
        with self._host._connect() as conn:
            rows = conn.execute(
                f"""SELECT {_QUEUE_COLUMNS} FROM sync_queue
                    WHERE status = ?
                    ORDER BY last_attempt_at DESC, id""",
                (QUEUE_DEAD_LETTER,),
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def status(self) -> Dict[str, Any]:
        """Queue depth plus unsynced row counts per local table."""
        with self._host._connect() as conn:
            unsynced = {
                table: conn.execute(
                    f"SELECT COUNT(*) FROM {validate_table_name(table)} WHERE synced = 0"
                ).fetchone()[0]
                for table in sorted(SYNCABLE_TABLES)
            }
            by_table = {
                row["table_name"]: row["count"]
                for row in conn.execute(
                    """SELECT table_name, COUNT(*) AS count FROM sync_queue
                       WHERE status = ? GROUP BY table_name""",
                    (QUEUE_PENDING,),
                ).fetchall()
            }
        return {
            "queueCount": self.count(QUEUE_PENDING),
            "deadLetterCount": self.count(QUEUE_DEAD_LETTER),
            "byTable": by_table,
            "unsynced": unsynced,
        }

    # === Removal / completion ===

    def remove(self, item_id: int) -> bool:
        with self._host._connect() as conn:
            cursor = conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
        return cursor.rowcount > 0

    def complete(self, item: QueueItem) -> None:
        """Mark the local row synced, then drop the queue item.

        Both steps share one local transaction. A DELETE whose row is already
        gone simply updates nothing.
        """
        table = validate_table_name(item.table_name)
        with self._host._connect() as conn:
            conn.execute(f"UPDATE {table} SET synced = 1 WHERE id = ?", (item.record_id,))
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (item.id,))

    # === Failures / dead letters ===

    def record_failure(self, item: QueueItem, error: str, permanent: bool = False) -> bool:
        """Record a failed apply. Returns True if the item was dead-lettered.

        Permanent failures are dead-lettered at once; transient ones once
        the retry count reaches ``max_retries``.
        """
        now = utc_now()
        with self._host._connect() as conn:
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = COALESCE(retry_count, 0) + 1,
                       last_error = ?,
                       last_attempt_at = ?
                   WHERE id = ?""",
                (error[:500], now, item.id),
            )
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE id = ?", (item.id,)
            ).fetchone()
            retry_count = row["retry_count"] if row else 0
            dead_lettered = permanent or retry_count >= self.max_retries
            if dead_lettered:
                conn.execute(
                    "UPDATE sync_queue SET status = ? WHERE id = ?",
                    (QUEUE_DEAD_LETTER, item.id),
                )
                logger.warning(
                    f"Queue item {item.id} ({item.table_name}:{item.record_id}) "
                    f"moved to dead letter after {retry_count} attempt(s): {error}"
                )
        return dead_lettered

    def requeue_dead_letters(self, item_ids: Optional[List[int]] = None) -> int:
        """Return dead-lettered items to the pending state.

        Args:
            item_ids: Specific ids to requeue, or None for all.
        Returns:
            Number of items requeued.
        """
        with self._host._connect() as conn:
            if item_ids:
                placeholders = ",".join("?" for _ in item_ids)
                cursor = conn.execute(
                    f"""UPDATE sync_queue SET status = ?, retry_count = 0, last_error = NULL
                        WHERE status = ? AND id IN ({placeholders})""",
                    (QUEUE_PENDING, QUEUE_DEAD_LETTER, *item_ids),
                )
            else:
                cursor = conn.execute(
                    """UPDATE sync_queue SET status = ?, retry_count = 0, last_error = NULL
                       WHERE status = ?""",
                    (QUEUE_PENDING, QUEUE_DEAD_LETTER),
                )
            return cursor.rowcount

    def _row_to_item(self, row: sqlite3.Row) -> QueueItem:
        return QueueItem(
            id=row["id"],
            table_name=row["table_name"],
            record_id=row["record_id"],
            operation=row["operation"],
            payload=row["data"],
            enqueued_at=row["created_at"],
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
            status=row["status"],
        )
