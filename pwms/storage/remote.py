"""Remote system of record for local-first replay.

Applies queued mutations to Supabase tables with upsert/delete semantics:

- INSERT/UPDATE upsert on the primary key, so replaying an item twice leaves
  the remote row identical to a single apply (last applied wins).
- DELETE removes by primary key; deleting an absent row is not an error.

Payloads arrive in the camelCase shape the local store queued and are mapped
to snake_case columns here. Only keys present in the payload are sent, so a
partial UPDATE does not null out columns it does not mention.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from pwms.types import Operation, ReplayFailure, SerializationError

logger = logging.getLogger(__name__)

# Namespace for deterministic child-row ids (replay must not duplicate rows)
_LINE_NAMESPACE = uuid.UUID("6f1d3c52-8f0e-4a7b-9a55-2b6c1e0f4d21")

# payload key -> remote column, per table
COLUMN_MAPS: Dict[str, Dict[str, str]] = {
    "materials": {"id": "id", "name": "name", "unit": "unit"},
    "warehouse": {"id": "id", "materialId": "material_id", "quantity": "quantity"},
    "production_types": {"id": "id", "name": "name", "description": "description"},
    "production": {
        "id": "id",
        "productionTypeId": "production_type_id",
        "quantity": "quantity",
        "notes": "notes",
        "productionDate": "production_date",
    },
    "production_materials": {
        "id": "id",
        "productionId": "production_id",
        "materialId": "material_id",
        "quantity": "quantity",
    },
    "recipes": {
        "id": "id",
        "productionTypeId": "production_type_id",
        "name": "name",
        "description": "description",
    },
    "recipe_materials": {
        "id": "id",
        "recipeId": "recipe_id",
        "materialId": "material_id",
        "quantityPerUnit": "quantity_per_unit",
    },
}


def _to_row(table: str, data: Dict[str, Any]) -> Dict[str, Any]:
    mapping = COLUMN_MAPS[table]
    row = {column: data[key] for key, column in mapping.items() if key in data}
    row["synced"] = 1
    return row


def _line_id(parent_id: str, material_id: str) -> str:
    return str(uuid.uuid5(_LINE_NAMESPACE, f"{parent_id}:{material_id}"))


class RemoteStore:
    """Supabase-backed remote store.

    Args:
        client: A supabase ``Client``.
    """

    def __init__(self, client):
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> Optional["RemoteStore"]:
        """Build a RemoteStore, or None when no remote is configured."""
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not settings.supabase_url or not api_key:
            return None
        try:
            from supabase import create_client

            return cls(create_client(settings.supabase_url, api_key))
        except Exception as e:
            logger.error(f"Failed to create remote client: {e}")
            return None

    async def is_available(self) -> bool:
        """Probe the remote with a one-row select."""
        try:
            self._client.table("materials").select("id").limit(1).execute()
            return True
        except Exception as e:
            logger.error(f"Remote database not available: {e}")
            return False

    async def apply(
        self, table: str, operation: str, data: Dict[str, Any], record_id: Optional[str] = None
    ) -> None:
        """Apply one mutation.

        Raises:
            SerializationError: Unknown table or operation; retrying cannot help.
            ReplayFailure: The remote call failed.
        """
        record_id = data.get("id") or record_id
        if table not in COLUMN_MAPS:
            raise SerializationError(table, record_id or "?", f"Unknown table: {table}")
        if operation not in (Operation.INSERT.value, Operation.UPDATE.value, Operation.DELETE.value):
            raise SerializationError(table, record_id or "?", f"Unknown operation: {operation}")
        if not record_id:
            raise SerializationError(table, "?", "payload has no id")

        data = {**data, "id": record_id}
        try:
            if operation == Operation.DELETE.value:
                self._delete(table, record_id)
            else:
                self._upsert(table, data)
        except (KeyError, TypeError) as e:
            raise SerializationError(table, record_id, f"bad payload: {e}") from e
        except Exception as e:
            raise ReplayFailure(table, record_id, str(e)) from e

    def _upsert(self, table: str, data: Dict[str, Any]) -> None:
        self._client.table(table).upsert(_to_row(table, data), on_conflict="id").execute()

        if table == "production" and data.get("materials"):
            lines = self._child_rows("production_materials", "productionId", data, "quantity")
            self._client.table("production_materials").upsert(lines, on_conflict="id").execute()
        elif table == "recipes" and "materials" in data:
            # Recipe materials are replaced wholesale, matching the local update.
            self._client.table("recipe_materials").delete().eq("recipe_id", data["id"]).execute()
            lines = self._child_rows("recipe_materials", "recipeId", data, "quantityPerUnit")
            if lines:
                self._client.table("recipe_materials").upsert(lines, on_conflict="id").execute()

    def _child_rows(
        self, table: str, parent_key: str, data: Dict[str, Any], quantity_key: str
    ) -> List[Dict[str, Any]]:
        rows = []
        for material in data["materials"]:
            rows.append(
                _to_row(
                    table,
                    {
                        "id": material.get("id") or _line_id(data["id"], material["materialId"]),
                        parent_key: data["id"],
                        "materialId": material["materialId"],
                        quantity_key: material[quantity_key],
                    },
                )
            )
        return rows

    def _delete(self, table: str, record_id: str) -> None:
        if table == "production":
            self._client.table("production_materials").delete().eq("production_id", record_id).execute()
        elif table == "recipes":
            self._client.table("recipe_materials").delete().eq("recipe_id", record_id).execute()
        self._client.table(table).delete().eq("id", record_id).execute()
