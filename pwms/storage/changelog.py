"""Capped, append-only change log for cursor-based client convergence.

Clients poll ``query(since=...)`` with the newest timestamp they have seen
and receive everything strictly newer, most recent first. Producers may
retry an append after a timeout without knowing whether the first attempt
landed, so ``append`` is idempotent on the record id.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from pwms.types import (
    CHANGELOG_CAPACITY,
    CHANGELOG_PARTITION,
    CHANGELOG_QUERY_LIMIT,
    ChangeRecord,
    new_change_id,
    parse_datetime,
    utc_now,
)

from .backends import PartitionStore

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class ChangeLog:
    """Change records stored as one insertion-ordered list partition.

    Args:
        store: The PartitionStore to persist through.
        capacity: Records retained; the oldest are evicted first.
    """

    def __init__(self, store: PartitionStore, capacity: int = CHANGELOG_CAPACITY):
        self._store = store
        self.capacity = capacity
        self._lock = asyncio.Lock()

    async def _load(self) -> List[dict]:
        changes = await self._store.get(CHANGELOG_PARTITION)
        return list(changes or [])

    async def append(self, record: ChangeRecord) -> str:
        """Store a record unless its id is already present. Returns the id."""
        async with self._lock:
            changes = await self._load()
            if any(change.get("id") == record.id for change in changes):
                logger.debug(f"Change {record.id} already recorded, skipping")
                return record.id

            changes.append(record.to_dict())
            if len(changes) > self.capacity:
                evicted = len(changes) - self.capacity
                changes = changes[evicted:]
                logger.debug(f"Evicted {evicted} oldest change record(s)")

            await self._store.set(CHANGELOG_PARTITION, changes)
        return record.id

    async def record(
        self, kind: str, entity_key: str, payload: Any = None, origin: Optional[str] = None
    ) -> ChangeRecord:
        """Create a record with a fresh id and timestamp and append it."""
        change = ChangeRecord(
            id=new_change_id(),
            kind=kind,
            entity_key=entity_key,
            payload=payload,
            origin=origin or "unknown",
            occurred_at=utc_now(),
        )
        await self.append(change)
        return change

    async def query(
        self,
        since: Optional[datetime] = None,
        entity_key: Optional[str] = None,
        limit: int = CHANGELOG_QUERY_LIMIT,
    ) -> List[ChangeRecord]:
        """Records newer than ``since`` (strict), optionally for one entity key.

        Ordered most recent first and capped at ``limit``.
        """
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        records = []
        for change in await self._load():
            record = ChangeRecord.from_dict(change)
            occurred = record.occurred_at_dt
            if since is not None and (occurred is None or occurred <= since):
                continue
            if entity_key is not None and record.entity_key != entity_key:
                continue
            records.append((occurred, record))

        # Newest first; among equal timestamps the later insertion wins.
        records.reverse()
        records.sort(key=lambda pair: pair[0] or _EPOCH, reverse=True)
        return [record for _, record in records[:limit]]

    async def last_update(self) -> Optional[str]:
        """Timestamp of the newest record, or None when empty."""
        newest = None
        newest_raw = None
        for change in await self._load():
            occurred = parse_datetime(change.get("timestamp"))
            if occurred is not None and (newest is None or occurred > newest):
                newest, newest_raw = occurred, change.get("timestamp")
        return newest_raw

    async def count(self) -> int:
        return len(await self._load())
