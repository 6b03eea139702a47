"""Quality status routes (mirrored per batch number)."""

from fastapi import APIRouter, HTTPException

from ...storage import build_quality_record
from ...types import QUALITY_PARTITION
from ..context import Context
from ..logging_config import get_logger
from ..models import MirrorWriteResponse, QualityRequest

logger = get_logger("pwms.quality")
router = APIRouter(prefix="/quality", tags=["quality"])


@router.post("", response_model=MirrorWriteResponse)
async def save_quality(request: QualityRequest, context: Context):
    """Record the quality status of a batch.

    The stored record is a full replacement; the change is announced in the
    change log for other clients to pick up.
    """
    if not request.batch_number or not request.status:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: batchNumber and status are required",
        )

    record = build_quality_record(request.status, request.notes, request.checked_by)
    if not await context.mirror.set_one(QUALITY_PARTITION, request.batch_number, record, origin="web"):
        raise HTTPException(status_code=500, detail="Failed to save data")

    logger.info(f"QUALITY | {request.batch_number} | {request.status}")
    return MirrorWriteResponse(message="Quality status saved successfully", data=record)


@router.get("")
async def get_quality(context: Context, batchNumber: str | None = None):  # noqa: N803
    """Quality for one batch, or the whole map when no batch is given."""
    if batchNumber:
        quality = await context.mirror.get_one(QUALITY_PARTITION, batchNumber)
        return {"success": True, "batchNumber": batchNumber, "quality": quality}

    return {"success": True, "quality": await context.mirror.get_all(QUALITY_PARTITION)}
