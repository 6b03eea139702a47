"""Shipment status routes (mirrored per batch number)."""

from fastapi import APIRouter, HTTPException

from ...storage import build_shipment_record
from ...types import SHIPMENT_PARTITION
from ..context import Context
from ..logging_config import get_logger
from ..models import MirrorWriteResponse, ShipmentRequest

logger = get_logger("pwms.shipment")
router = APIRouter(prefix="/shipment", tags=["shipment"])


@router.post("", response_model=MirrorWriteResponse)
async def save_shipment(request: ShipmentRequest, context: Context):
    """Record that a batch shipped. ``shipped`` defaults to true, the date to now."""
    if not request.batch_number:
        raise HTTPException(
            status_code=400, detail="Missing required field: batchNumber is required"
        )

    record = build_shipment_record(
        shipped=request.shipped,
        shipped_date=request.shipped_date,
        shipped_by=request.shipped_by,
        notes=request.notes,
    )
    if not await context.mirror.set_one(SHIPMENT_PARTITION, request.batch_number, record, origin="web"):
        raise HTTPException(status_code=500, detail="Failed to save data")

    logger.info(f"SHIPMENT | {request.batch_number} | shipped={record['shipped']}")
    return MirrorWriteResponse(message="Shipment status saved successfully", data=record)


@router.get("")
async def get_shipment(context: Context, batchNumber: str | None = None):  # noqa: N803
    """Shipment for one batch, or all shipments when no batch is given."""
    if batchNumber:
        shipment = await context.mirror.get_one(SHIPMENT_PARTITION, batchNumber)
        return {"success": True, "batchNumber": batchNumber, "shipment": shipment}

    return {"success": True, "shipments": await context.mirror.get_all(SHIPMENT_PARTITION)}
