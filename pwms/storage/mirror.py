"""Entity mirror: latest quality and shipment status per batch number.

Writes are full replacements. ``set_one`` reads the whole map for a kind,
replaces one key and writes the map back, so callers must pass every field
of the record. Each successful write also appends a change record; that
append is best-effort and never fails the write.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from pwms.types import MIRROR_KINDS, utc_now

from .backends import PartitionStore
from .changelog import ChangeLog

logger = logging.getLogger(__name__)


def build_quality_record(
    status: str, notes: Optional[str] = None, checked_by: Optional[str] = None
) -> Dict[str, Any]:
    """Complete quality record stamped with the current time."""
    now = utc_now()
    return {
        "status": status,
        "notes": notes or None,
        "checkedBy": checked_by or None,
        "checkedDate": now,
        "updatedAt": now,
    }


def build_shipment_record(
    shipped: Optional[bool] = None,
    shipped_date: Optional[str] = None,
    shipped_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Complete shipment record. ``shipped`` defaults to True, the date to now."""
    now = utc_now()
    return {
        "shipped": True if shipped is None else shipped,
        "shippedDate": shipped_date or now,
        "shippedBy": shipped_by or None,
        "notes": notes or None,
        "updatedAt": now,
    }


class EntityMirrorStore:
    """Keyed maps for the mirrored entity kinds.

    Args:
        store: The PartitionStore holding one map per kind.
        changelog: Where successful writes are announced, or None.
    """

    def __init__(self, store: PartitionStore, changelog: Optional[ChangeLog] = None):
        self._store = store
        self._changelog = changelog
        # Serializes the read-modify-write of each kind's map within this process
        self._locks = {kind: asyncio.Lock() for kind in MIRROR_KINDS}

    @staticmethod
    def _check_kind(kind: str) -> str:
        if kind not in MIRROR_KINDS:
            raise ValueError(f"Unknown mirrored entity kind: {kind}")
        return kind

    async def get_all(self, kind: str) -> Dict[str, Any]:
        return await self._store.get(self._check_kind(kind)) or {}

    async def get_one(self, kind: str, entity_key: str) -> Optional[Dict[str, Any]]:
        return (await self.get_all(kind)).get(entity_key)

    async def set_one(
        self, kind: str, entity_key: str, record: Dict[str, Any], origin: str = "web"
    ) -> bool:
        """Replace the record for ``entity_key`` and announce the change."""
        self._check_kind(kind)
        async with self._locks[kind]:
            data = await self.get_all(kind)
            data[entity_key] = dict(record)
            ok = await self._store.set(kind, data)

        if ok and self._changelog is not None:
            try:
                await self._changelog.record(kind, entity_key, dict(record), origin)
            except Exception as e:
                logger.warning(f"Failed to register {kind} change for {entity_key}: {e}")
        return ok
