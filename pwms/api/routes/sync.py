"""Change log routes: clients register changes and poll for newer ones."""

from dateutil.parser import isoparse
from fastapi import APIRouter, HTTPException, Request

from ...types import utc_now
from ..config import get_settings
from ..context import Context
from ..logging_config import get_logger, log_change_event
from ..models import ChangeOut, ChangeRegistered, ChangeRequest, ChangesResponse
from ..rate_limit import limiter

logger = get_logger("pwms.sync")
router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("", response_model=ChangeRegistered)
@limiter.limit(lambda: get_settings().change_rate_limit)
async def register_change(
    request: Request,
    change: ChangeRequest,
    context: Context,
):
    """
    Register a change so other clients can pick it up.

    The response timestamp is the newest timestamp in the log, which clients
    can use as their next ``since`` cursor.
    """
    if not change.type or not change.batch_number:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: type and batchNumber are required",
        )

    record = await context.changelog.record(
        change.type, change.batch_number, change.data, change.source or "unknown"
    )
    log_change_event(record.kind, record.entity_key, record.origin, record.id)

    return ChangeRegistered(
        change_id=record.id,
        timestamp=await context.changelog.last_update() or record.occurred_at,
    )


@router.get("", response_model=ChangesResponse)
async def get_changes(
    context: Context,
    since: str | None = None,
    batchNumber: str | None = None,  # noqa: N803
):
    """
    Changes strictly newer than ``since``, most recent first.

    - since: ISO-8601 cursor (omit for everything retained)
    - batchNumber: only changes for this batch
    """
    since_dt = None
    if since:
        try:
            # An unencoded "+" in a query string arrives as a space
            since_dt = isoparse(since.strip().replace(" ", "+"))
        except (ValueError, OverflowError):
            raise HTTPException(status_code=400, detail=f"Invalid since timestamp: {since}")

    records = await context.changelog.query(since=since_dt, entity_key=batchNumber or None)
    changes = [ChangeOut.model_validate(record.to_dict()) for record in records]

    return ChangesResponse(
        last_update=await context.changelog.last_update() or utc_now(),
        changes=changes,
        count=len(changes),
    )
