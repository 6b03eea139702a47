"""Database schema for the local-first SQLite store.

Contains:
- Schema DDL (LOCAL_SCHEMA)
- Table allowlists (ALLOWED_TABLES, SYNCABLE_TABLES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Tables whose rows carry a `synced` flag and replay to the remote store
SYNCABLE_TABLES = frozenset(
    {
        "materials",
        "warehouse",
        "production_types",
        "production",
        "production_materials",
        "recipes",
        "recipe_materials",
    }
)

# Allowed table names for SQL queries (prevents SQL injection via table names)
ALLOWED_TABLES = SYNCABLE_TABLES | {"sync_queue", "schema_version"}


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


LOCAL_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS materials (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    unit TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    synced INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS warehouse (
    id TEXT PRIMARY KEY,
    material_id TEXT NOT NULL,
    quantity REAL NOT NULL,
    last_updated TEXT NOT NULL,
    synced INTEGER DEFAULT 0,
    FOREIGN KEY (material_id) REFERENCES materials(id)
);

CREATE TABLE IF NOT EXISTS production_types (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    created_at TEXT NOT NULL,
    synced INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS production (
    id TEXT PRIMARY KEY,
    production_type_id TEXT NOT NULL,
    quantity REAL NOT NULL,
    production_date TEXT NOT NULL,
    notes TEXT,
    created_at TEXT NOT NULL,
    synced INTEGER DEFAULT 0,
    FOREIGN KEY (production_type_id) REFERENCES production_types(id)
);

CREATE TABLE IF NOT EXISTS production_materials (
    id TEXT PRIMARY KEY,
    production_id TEXT NOT NULL,
    material_id TEXT NOT NULL,
    quantity REAL NOT NULL,
    synced INTEGER DEFAULT 0,
    FOREIGN KEY (production_id) REFERENCES production(id) ON DELETE CASCADE,
    FOREIGN KEY (material_id) REFERENCES materials(id)
);

CREATE TABLE IF NOT EXISTS recipes (
    id TEXT PRIMARY KEY,
    production_type_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    created_at TEXT NOT NULL,
    synced INTEGER DEFAULT 0,
    FOREIGN KEY (production_type_id) REFERENCES production_types(id)
);

CREATE TABLE IF NOT EXISTS recipe_materials (
    id TEXT PRIMARY KEY,
    recipe_id TEXT NOT NULL,
    material_id TEXT NOT NULL,
    quantity_per_unit REAL NOT NULL,
    synced INTEGER DEFAULT 0,
    FOREIGN KEY (recipe_id) REFERENCES recipes(id) ON DELETE CASCADE,
    FOREIGN KEY (material_id) REFERENCES materials(id)
);

-- Mutations waiting for replay to the remote store
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,  -- INSERT, UPDATE, DELETE
    data TEXT,  -- JSON payload
    created_at TEXT NOT NULL,
    status INTEGER DEFAULT 0,  -- 0 = pending, 2 = dead letter
    retry_count INTEGER DEFAULT 0,
    last_error TEXT,
    last_attempt_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_warehouse_material ON warehouse(material_id);
CREATE INDEX IF NOT EXISTS idx_production_type ON production(production_type_id);
CREATE INDEX IF NOT EXISTS idx_production_materials_prod ON production_materials(production_id);
CREATE INDEX IF NOT EXISTS idx_recipe_materials_recipe ON recipe_materials(recipe_id);
CREATE INDEX IF NOT EXISTS idx_sync_queue_table ON sync_queue(table_name);
CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and record the schema version."""
    conn.executescript(LOCAL_SCHEMA)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    if row[0] is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.debug(f"Initialized local schema v{SCHEMA_VERSION}")
