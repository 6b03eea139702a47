"""Sync engine: drains the local queue into the remote system of record.

One drain cycle snapshots the pending queue in insertion order and applies
each item to the remote store. On success the local row is marked synced and
the item removed; on failure the item stays queued with its error recorded
and the cycle moves on, so one bad item never blocks independent ones.

Cycles are serialized by a lock: a manual trigger that arrives while the
timer-driven cycle is running waits for it, then drains whatever is left.
"""

import asyncio
import logging
from typing import Optional

from pwms.types import ReplayFailure, SyncResult, SyncState

from .queue import SyncQueue
from .remote import RemoteStore

logger = logging.getLogger(__name__)


class SyncEngine:
    """Drain the local queue against a remote store.

    Args:
        queue: The SyncQueue to drain.
        remote: The RemoteStore to apply to, or None when not configured.
    """

    def __init__(self, queue: SyncQueue, remote: Optional[RemoteStore]):
        self.queue = queue
        self.remote = remote
        self.state = SyncState.IDLE
        self.last_result: Optional[SyncResult] = None
        self._lock = asyncio.Lock()

    @property
    def is_draining(self) -> bool:
        return self.state == SyncState.DRAINING

    async def drain(self) -> SyncResult:
        """Run one drain cycle."""
        async with self._lock:
            self.state = SyncState.DRAINING
            try:
                result = await self._drain_once()
            finally:
                self.state = SyncState.IDLE
            self.last_result = result
            return result

    async def _drain_once(self) -> SyncResult:
        result = SyncResult()

        if self.remote is None:
            logger.info("Remote database not configured")
            result.skipped = True
            result.message = "Remote database not configured"
            return result

        if not await self.remote.is_available():
            logger.info("Remote database not available - sync skipped, changes stay queued")
            result.skipped = True
            result.message = "Remote database not available"
            return result

        items = self.queue.peek_all_ordered()
        logger.debug(f"Draining {len(items)} queued changes")

        for item in items:
            try:
                data = item.decode()
                await self.remote.apply(item.table_name, item.operation, data, item.record_id)
            except ReplayFailure as e:
                self._record_failure(result, item, e.reason, permanent=e.permanent)
                continue
            except Exception as e:
                logger.error(
                    f"Unexpected error syncing {item.table_name}:{item.record_id}: {e}",
                    exc_info=True,
                )
                self._record_failure(result, item, str(e), permanent=False)
                continue

            try:
                self.queue.complete(item)
            except Exception as e:
                # Applied remotely but still queued: the next cycle replays it harmlessly.
                logger.error(f"Failed to complete queue item {item.id}: {e}", exc_info=True)
                result.failed += 1
                result.errors.append(
                    {"table": item.table_name, "id": item.record_id, "error": str(e)}
                )
                continue
            result.synced += 1

        result.message = f"Synced {result.synced}, failed {result.failed}"
        logger.info(
            f"Sync complete: synced={result.synced}, failed={result.failed}, "
            f"dead_lettered={result.dead_lettered}"
        )
        return result

    def _record_failure(self, result: SyncResult, item, error: str, permanent: bool) -> None:
        logger.error(f"Error syncing {item.table_name}:{item.record_id}: {error}")
        result.failed += 1
        result.errors.append({"table": item.table_name, "id": item.record_id, "error": error})
        try:
            if self.queue.record_failure(item, error, permanent=permanent):
                result.dead_lettered += 1
        except Exception as e:
            # Retry bookkeeping lost for this attempt; the item is still pending.
            logger.error(f"Failed to record failure for queue item {item.id}: {e}", exc_info=True)

    async def run_periodic(self, interval: float) -> None:
        """Drain every ``interval`` seconds until cancelled."""
        logger.info(f"Periodic sync every {interval}s")
        while True:
            try:
                await self.drain()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Periodic sync cycle failed: {e}", exc_info=True)
            await asyncio.sleep(interval)
