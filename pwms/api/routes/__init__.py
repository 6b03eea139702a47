"""API routes."""

from .local_sync import router as local_sync_router
from .quality import router as quality_router
from .shipment import router as shipment_router
from .sync import router as sync_router

__all__ = [
    "quality_router",
    "shipment_router",
    "sync_router",
    "local_sync_router",
]
