"""Local-first sync routes: queue introspection and manual drain."""

from fastapi import APIRouter

from ..context import LocalContext
from ..logging_config import get_logger, log_sync_result
from ..models import SyncRunResponse, SyncStatusResponse

logger = get_logger("pwms.local_sync")
router = APIRouter(prefix="/sync", tags=["local-sync"])


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(context: LocalContext):
    """Pending queue depth, dead letters and unsynced rows per table."""
    status = context.local.queue.status()
    return SyncStatusResponse(
        queue_count=status["queueCount"],
        dead_letter_count=status["deadLetterCount"],
        by_table=status["byTable"],
        unsynced=status["unsynced"],
        state=context.engine.state.value,
    )


@router.post("/run", response_model=SyncRunResponse)
async def run_sync(context: LocalContext):
    """
    Drain the local queue now.

    Waits for a timer-driven cycle in progress, then drains what is left.
    Skipped cycles (no remote, or remote unreachable) answer success=false.
    """
    result = await context.engine.drain()
    log_sync_result("manual", result.synced, result.failed, result.message)
    return SyncRunResponse.model_validate(result.to_dict())
