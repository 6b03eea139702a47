"""Local-first SQLite store for factory domain entities.

Every write path updates its table with ``synced = 0`` and appends a
``sync_queue`` item inside the same transaction, so a committed local write
always has a pending replay.
"""

import contextlib
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from pwms.types import DEFAULT_MAX_RETRIES, Operation, utc_now

from .queue import SyncQueue
from .schema import init_db, validate_table_name

logger = logging.getLogger(__name__)


class LocalStore:
    """SQLite database holding domain entities and the sync queue.

    Args:
        db_path: Path to the SQLite file (created if missing).
        max_retries: Transient replay failures allowed before dead-lettering.
    """

    def __init__(self, db_path: Path, max_retries: int = DEFAULT_MAX_RETRIES):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            init_db(conn)
        self.queue = SyncQueue(self, max_retries=max_retries)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-operation; nothing to release."""
        pass

    def _get_row(self, table: str, record_id: str, conn=None) -> Optional[Dict[str, Any]]:
        table = validate_table_name(table)
        if conn is not None:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        else:
            with self._connect() as own_conn:
                row = own_conn.execute(
                    f"SELECT * FROM {table} WHERE id = ?", (record_id,)
                ).fetchone()
        return dict(row) if row else None

    def is_synced(self, table: str, record_id: str) -> Optional[bool]:
        row = self._get_row(table, record_id)
        return bool(row["synced"]) if row else None

    # === Materials ===

    def list_materials(self) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM materials ORDER BY name").fetchall()
        return [dict(row) for row in rows]

    def get_material(self, material_id: str) -> Optional[Dict[str, Any]]:
        return self._get_row("materials", material_id)

    def create_material(self, name: str, unit: str) -> Dict[str, Any]:
        material_id = str(uuid.uuid4())
        now = utc_now()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO materials (id, name, unit, created_at, updated_at, synced)
                   VALUES (?, ?, ?, ?, ?, 0)""",
                (material_id, name, unit, now, now),
            )
            self.queue.enqueue(
                "materials",
                material_id,
                Operation.INSERT.value,
                {"id": material_id, "name": name, "unit": unit},
                conn=conn,
            )
        return self.get_material(material_id)

    def update_material(self, material_id: str, name: str, unit: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE materials SET name = ?, unit = ?, updated_at = ?, synced = 0
                   WHERE id = ?""",
                (name, unit, utc_now(), material_id),
            )
            if cursor.rowcount == 0:
                return None
            self.queue.enqueue(
                "materials",
                material_id,
                Operation.UPDATE.value,
                {"id": material_id, "name": name, "unit": unit},
                conn=conn,
            )
        return self.get_material(material_id)

    def delete_material(self, material_id: str) -> bool:
        return self._delete("materials", material_id)

    # === Warehouse ===

    def get_warehouse_entry(self, entry_id: str) -> Optional[Dict[str, Any]]:
        return self._get_row("warehouse", entry_id)

    def get_warehouse_by_material(self, material_id: str, conn=None) -> Optional[Dict[str, Any]]:
        sql = "SELECT * FROM warehouse WHERE material_id = ?"
        if conn is not None:
            row = conn.execute(sql, (material_id,)).fetchone()
        else:
            with self._connect() as own_conn:
                row = own_conn.execute(sql, (material_id,)).fetchone()
        return dict(row) if row else None

    def create_warehouse_entry(self, material_id: str, quantity: float) -> Dict[str, Any]:
        """Stock a material. Adds to the existing entry when there is one."""
        with self._connect() as conn:
            existing = self.get_warehouse_by_material(material_id, conn=conn)
            if existing:
                entry_id = existing["id"]
                self._set_warehouse_quantity(
                    conn, entry_id, material_id, existing["quantity"] + quantity
                )
            else:
                entry_id = str(uuid.uuid4())
                conn.execute(
                    """INSERT INTO warehouse (id, material_id, quantity, last_updated, synced)
                       VALUES (?, ?, ?, ?, 0)""",
                    (entry_id, material_id, quantity, utc_now()),
                )
                self.queue.enqueue(
                    "warehouse",
                    entry_id,
                    Operation.INSERT.value,
                    {"id": entry_id, "materialId": material_id, "quantity": quantity},
                    conn=conn,
                )
        return self.get_warehouse_entry(entry_id)

    def update_warehouse_entry(self, entry_id: str, quantity: float) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            entry = self._get_row("warehouse", entry_id, conn=conn)
            if entry is None:
                return None
            self._set_warehouse_quantity(conn, entry_id, entry["material_id"], quantity)
        return self.get_warehouse_entry(entry_id)

    def adjust_quantity(self, material_id: str, change: float, conn=None) -> Dict[str, Any]:
        """Add ``change`` (may be negative) to a material's stock.

        Raises:
            ValueError: No warehouse entry, or the result would go negative.
        """
        if conn is None:
            with self._connect() as own_conn:
                return self.adjust_quantity(material_id, change, conn=own_conn)

        existing = self.get_warehouse_by_material(material_id, conn=conn)
        if existing is None:
            raise ValueError("Warehouse entry not found for material")
        new_quantity = existing["quantity"] + change
        if new_quantity < 0:
            raise ValueError("Insufficient quantity in warehouse")
        self._set_warehouse_quantity(conn, existing["id"], material_id, new_quantity)
        return {**existing, "quantity": new_quantity, "synced": 0}

    def _set_warehouse_quantity(self, conn, entry_id: str, material_id: str, quantity: float):
        conn.execute(
            "UPDATE warehouse SET quantity = ?, last_updated = ?, synced = 0 WHERE id = ?",
            (quantity, utc_now(), entry_id),
        )
        self.queue.enqueue(
            "warehouse",
            entry_id,
            Operation.UPDATE.value,
            {"id": entry_id, "materialId": material_id, "quantity": quantity},
            conn=conn,
        )

    def delete_warehouse_entry(self, entry_id: str) -> bool:
        return self._delete("warehouse", entry_id)

    # === Production types ===

    def get_production_type(self, type_id: str) -> Optional[Dict[str, Any]]:
        return self._get_row("production_types", type_id)

    def create_production_type(self, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        type_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO production_types (id, name, description, created_at, synced)
                   VALUES (?, ?, ?, ?, 0)""",
                (type_id, name, description, utc_now()),
            )
            self.queue.enqueue(
                "production_types",
                type_id,
                Operation.INSERT.value,
                {"id": type_id, "name": name, "description": description},
                conn=conn,
            )
        return self.get_production_type(type_id)

    def update_production_type(
        self, type_id: str, name: str, description: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE production_types SET name = ?, description = ?, synced = 0 WHERE id = ?",
                (name, description, type_id),
            )
            if cursor.rowcount == 0:
                return None
            self.queue.enqueue(
                "production_types",
                type_id,
                Operation.UPDATE.value,
                {"id": type_id, "name": name, "description": description},
                conn=conn,
            )
        return self.get_production_type(type_id)

    def delete_production_type(self, type_id: str) -> bool:
        return self._delete("production_types", type_id)

    # === Production ===

    def get_production(self, production_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            production = self._get_row("production", production_id, conn=conn)
            if production is None:
                return None
            rows = conn.execute(
                "SELECT * FROM production_materials WHERE production_id = ?", (production_id,)
            ).fetchall()
        production["materials"] = [dict(row) for row in rows]
        return production

    def create_production(
        self,
        production_type_id: str,
        quantity: float,
        materials: Optional[List[Dict[str, Any]]] = None,
        notes: Optional[str] = None,
        production_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record a production run and deduct its materials from the warehouse.

        ``materials`` items are ``{"materialId": ..., "quantity": ...}``. A
        deduction that fails (no stock entry, insufficient stock) is logged
        and does not block the production record.
        """
        production_id = str(uuid.uuid4())
        production_date = production_date or utc_now()
        queued_materials = []

        with self._connect() as conn:
            conn.execute(
                """INSERT INTO production
                   (id, production_type_id, quantity, production_date, notes, created_at, synced)
                   VALUES (?, ?, ?, ?, ?, ?, 0)""",
                (production_id, production_type_id, quantity, production_date, notes, utc_now()),
            )
            for material in materials or []:
                line_id = str(uuid.uuid4())
                conn.execute(
                    """INSERT INTO production_materials
                       (id, production_id, material_id, quantity, synced)
                       VALUES (?, ?, ?, ?, 0)""",
                    (line_id, production_id, material["materialId"], material["quantity"]),
                )
                queued_materials.append(
                    {"id": line_id, "materialId": material["materialId"], "quantity": material["quantity"]}
                )
                try:
                    self.adjust_quantity(material["materialId"], -material["quantity"], conn=conn)
                except ValueError as e:
                    logger.error(f"Error adjusting warehouse quantity for {material['materialId']}: {e}")

            self.queue.enqueue(
                "production",
                production_id,
                Operation.INSERT.value,
                {
                    "id": production_id,
                    "productionTypeId": production_type_id,
                    "quantity": quantity,
                    "materials": queued_materials,
                    "notes": notes,
                    "productionDate": production_date,
                },
                conn=conn,
            )
        return self.get_production(production_id)

    def update_production(
        self, production_id: str, quantity: float, notes: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            production = self._get_row("production", production_id, conn=conn)
            if production is None:
                return None
            conn.execute(
                "UPDATE production SET quantity = ?, notes = ?, synced = 0 WHERE id = ?",
                (quantity, notes, production_id),
            )
            # The remote upsert needs every NOT NULL column, not just the changed ones
            self.queue.enqueue(
                "production",
                production_id,
                Operation.UPDATE.value,
                {
                    "id": production_id,
                    "productionTypeId": production["production_type_id"],
                    "quantity": quantity,
                    "notes": notes,
                    "productionDate": production["production_date"],
                },
                conn=conn,
            )
        return self.get_production(production_id)

    def delete_production(self, production_id: str) -> bool:
        """Delete a production run, returning its materials to the warehouse."""
        with self._connect() as conn:
            if self._get_row("production", production_id, conn=conn) is None:
                return False
            lines = conn.execute(
                "SELECT material_id, quantity FROM production_materials WHERE production_id = ?",
                (production_id,),
            ).fetchall()
            for line in lines:
                try:
                    self.adjust_quantity(line["material_id"], line["quantity"], conn=conn)
                except ValueError as e:
                    logger.error(f"Error restoring warehouse quantity for {line['material_id']}: {e}")
            conn.execute("DELETE FROM production_materials WHERE production_id = ?", (production_id,))
            conn.execute("DELETE FROM production WHERE id = ?", (production_id,))
            self.queue.enqueue(
                "production", production_id, Operation.DELETE.value, {"id": production_id}, conn=conn
            )
        return True

    # === Recipes ===

    def get_recipe(self, recipe_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            recipe = self._get_row("recipes", recipe_id, conn=conn)
            if recipe is None:
                return None
            rows = conn.execute(
                "SELECT * FROM recipe_materials WHERE recipe_id = ?", (recipe_id,)
            ).fetchall()
        recipe["materials"] = [dict(row) for row in rows]
        return recipe

    def _insert_recipe_materials(self, conn, recipe_id: str, materials) -> List[Dict[str, Any]]:
        lines = []
        for material in materials or []:
            line_id = str(uuid.uuid4())
            conn.execute(
                """INSERT INTO recipe_materials (id, recipe_id, material_id, quantity_per_unit, synced)
                   VALUES (?, ?, ?, ?, 0)""",
                (line_id, recipe_id, material["materialId"], material["quantityPerUnit"]),
            )
            lines.append(
                {
                    "id": line_id,
                    "materialId": material["materialId"],
                    "quantityPerUnit": material["quantityPerUnit"],
                }
            )
        return lines

    def create_recipe(
        self,
        production_type_id: str,
        name: str,
        description: Optional[str] = None,
        materials: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        recipe_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO recipes (id, production_type_id, name, description, created_at, synced)
                   VALUES (?, ?, ?, ?, ?, 0)""",
                (recipe_id, production_type_id, name, description, utc_now()),
            )
            lines = self._insert_recipe_materials(conn, recipe_id, materials)
            self.queue.enqueue(
                "recipes",
                recipe_id,
                Operation.INSERT.value,
                {
                    "id": recipe_id,
                    "productionTypeId": production_type_id,
                    "name": name,
                    "description": description,
                    "materials": lines,
                },
                conn=conn,
            )
        return self.get_recipe(recipe_id)

    def update_recipe(
        self,
        recipe_id: str,
        name: str,
        description: Optional[str] = None,
        materials: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Replace a recipe's fields and its full material list."""
        with self._connect() as conn:
            recipe = self._get_row("recipes", recipe_id, conn=conn)
            if recipe is None:
                return None
            conn.execute(
                "UPDATE recipes SET name = ?, description = ?, synced = 0 WHERE id = ?",
                (name, description, recipe_id),
            )
            conn.execute("DELETE FROM recipe_materials WHERE recipe_id = ?", (recipe_id,))
            lines = self._insert_recipe_materials(conn, recipe_id, materials)
            self.queue.enqueue(
                "recipes",
                recipe_id,
                Operation.UPDATE.value,
                {
                    "id": recipe_id,
                    "productionTypeId": recipe["production_type_id"],
                    "name": name,
                    "description": description,
                    "materials": lines,
                },
                conn=conn,
            )
        return self.get_recipe(recipe_id)

    def delete_recipe(self, recipe_id: str) -> bool:
        return self._delete("recipes", recipe_id)

    # === Shared ===

    def _delete(self, table: str, record_id: str) -> bool:
        table = validate_table_name(table)
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            if cursor.rowcount == 0:
                return False
            self.queue.enqueue(table, record_id, Operation.DELETE.value, {"id": record_id}, conn=conn)
        return True
