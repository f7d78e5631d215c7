"""mylife sync router.

Manual sync trigger and sync loop status. Triggers that arrive while a
cycle is running join that cycle instead of starting another one.
"""

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from mylife_sync.config import Settings, settings
from mylife_sync.logging_config import get_logger
from mylife_sync.schemas.sync import SyncStatusResponse, SyncTriggerResponse
from mylife_sync.services.sync_orchestrator import SyncOrchestrator, SyncResult

logger = get_logger(__name__)

router = APIRouter(prefix="/api/mylife", tags=["mylife"])


def get_settings() -> Settings:
    return settings


def get_orchestrator(request: Request) -> SyncOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="mylife sync is not running",
        )
    return orchestrator


def verify_api_key(
    x_api_key: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
) -> None:
    """Require X-API-Key when a trigger key is configured."""
    expected = config.sync_trigger_api_key
    if not expected:
        return
    if x_api_key is None or not hmac.compare_digest(
        x_api_key.encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


def _raise_for_failure(result: SyncResult) -> None:
    stage = result.error_stage
    if stage == "authenticating" and result.retryable is False:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid mylife credentials. Please update the connector settings.",
        )
    if stage in ("authenticating", "fetching"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to connect to mylife cloud. Please try again later.",
        )
    if stage == "submitting":
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Treatment store rejected the upload. Please try again later.",
        )
    if stage == "cancelled":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="mylife sync is shutting down",
        )
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Sync failed during {stage}: {result.error}",
    )


@router.post(
    "/sync",
    response_model=SyncTriggerResponse,
    dependencies=[Depends(verify_api_key)],
)
async def trigger_mylife_sync(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncTriggerResponse:
    """Run a sync cycle now, or wait for the one in flight."""
    result = await orchestrator.trigger_sync()
    if not result.success:
        logger.warning(
            "Manual mylife sync failed",
            cycle_id=result.cycle_id,
            stage=result.error_stage,
            error=result.error,
        )
        _raise_for_failure(result)

    return SyncTriggerResponse(
        message="Sync completed successfully",
        cycle_id=result.cycle_id,
        events_parsed=result.events_parsed,
        records_skipped=result.records_skipped,
        archive_truncated=result.archive_truncated,
        events_seen=result.events_seen,
        events_handled=result.events_handled,
        handler_errors=result.handler_errors,
        records_submitted=result.records_submitted,
    )


@router.get("/sync/status", response_model=SyncStatusResponse)
async def get_mylife_sync_status(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncStatusResponse:
    last = orchestrator.last_result
    return SyncStatusResponse(
        state=orchestrator.state.value,
        is_syncing=orchestrator.is_syncing,
        consecutive_failures=orchestrator.consecutive_failures,
        next_run_at=orchestrator.next_run_at,
        last_cycle_id=last.cycle_id if last else None,
        last_sync_at=last.finished_at if last else None,
        last_success=last.success if last else None,
        last_error=last.error if last else None,
        last_error_stage=last.error_stage if last else None,
        last_records_skipped=last.records_skipped if last else None,
        last_archive_truncated=last.archive_truncated if last else None,
    )
