"""Pydantic models for API requests and responses.

Request fields are optional at the schema level: the routes check required
fields themselves so a missing one answers 400, not 422. JSON uses camelCase.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Mirror Models
# =============================================================================

class QualityRequest(CamelModel):
    """Request to record a batch's quality status."""
    batch_number: str | None = None
    status: str | None = None
    notes: str | None = None
    checked_by: str | None = None


class ShipmentRequest(CamelModel):
    """Request to record a batch's shipment status."""
    batch_number: str | None = None
    shipped: bool | None = None  # Defaults to True
    shipped_date: str | None = None  # Defaults to now
    shipped_by: str | None = None
    notes: str | None = None


class MirrorWriteResponse(CamelModel):
    """Response after a mirror write."""
    success: bool = True
    message: str
    data: dict[str, Any]


# =============================================================================
# Change Log Models
# =============================================================================

class ChangeRequest(CamelModel):
    """Request to register a change."""
    type: str | None = None  # quality, shipment, production, ...
    batch_number: str | None = None
    data: Any = None
    source: str | None = None  # web, app


class ChangeRegistered(CamelModel):
    """Response after registering a change."""
    success: bool = True
    message: str = "Change registered successfully"
    change_id: str
    timestamp: str


class ChangeOut(CamelModel):
    """One change record as polled by clients."""
    id: str
    type: str
    batch_number: str
    data: Any = None
    source: str | None = None
    timestamp: str


class ChangesResponse(CamelModel):
    """Changes since a cursor, most recent first."""
    success: bool = True
    last_update: str
    changes: list[ChangeOut]
    count: int


# =============================================================================
# Local-first Sync Models
# =============================================================================

class SyncErrorOut(CamelModel):
    table: str
    id: str
    error: str


class SyncRunResponse(CamelModel):
    """Outcome of one drain cycle."""
    success: bool
    synced: int = 0
    failed: int = 0
    dead_lettered: int = 0
    errors: list[SyncErrorOut] = []
    message: str | None = None


class SyncStatusResponse(CamelModel):
    """Local queue introspection."""
    success: bool = True
    queue_count: int
    dead_letter_count: int
    by_table: dict[str, int] = {}
    unsynced: dict[str, int]
    state: str
