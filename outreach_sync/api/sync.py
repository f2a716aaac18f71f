"""
Data synchronization endpoints
"""
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from outreach_sync.services.progress_store import ProgressStore
from outreach_sync.services.reconciliation_service import Reconciler
from outreach_sync.services.recovery_service import SyncRecoveryService
from outreach_sync.services.sync_orchestrator import (
    SyncConflictError, SyncOrchestrator, SyncRequest, SyncSetupError, get_orchestrator,
)
from outreach_sync.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncRunRequest(BaseModel):
    client_id: Optional[str] = None
    engagement_id: Optional[str] = None
    data_source_id: int
    reset: bool = False
    batch_number: Optional[int] = None
    auto_continue: Optional[bool] = None
    internal_continuation: bool = False
    current_phase: Optional[str] = None
    lease_token: Optional[str] = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _is_service(request: Request) -> bool:
    caller = getattr(request.state, "caller", None)
    return bool(caller and caller.is_service)


async def _run_in_background(orchestrator: SyncOrchestrator, sync_request: SyncRequest):
    """Background task: one continuation batch accepted over HTTP."""
    try:
        outcome = await orchestrator.run(sync_request)
        log.info(f"Background batch for data source {sync_request.data_source_id}: {outcome.message}")
    except (SyncSetupError, SyncConflictError) as e:
        log.warning(f"Background batch for data source {sync_request.data_source_id} rejected: {str(e)}")
    except Exception as e:
        log.error(f"Background batch for data source {sync_request.data_source_id} error: {str(e)}")


@router.post("/run")
async def run_sync(
    body: SyncRunRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Run one sync batch for a data source.

    Returns the partial or complete outcome. Internal continuations (service
    credential only) are accepted with 202 in http continuation mode and
    run in the background.
    """
    if body.internal_continuation and not _is_service(request):
        return _error(403, "Internal continuations require the service credential")

    sync_request = SyncRequest(**body.model_dump())

    if body.internal_continuation and orchestrator.settings.continuation_mode == "http":
        background_tasks.add_task(_run_in_background, orchestrator, sync_request)
        return JSONResponse(status_code=202, content={"success": True, "accepted": True})

    try:
        outcome = await orchestrator.run(sync_request)
    except SyncSetupError as e:
        return _error(e.status_code, str(e))
    except SyncConflictError as e:
        return _error(409, str(e))
    except Exception as e:
        log.error(f"Sync error for data source {body.data_source_id}: {str(e)}")
        return _error(500, str(e))

    return outcome.to_response()


@router.get("/progress/{data_source_id}")
def get_sync_progress(data_source_id: int, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Latest run progress and data source status, with a staleness flag"""
    settings = orchestrator.settings
    db = orchestrator.session_factory()
    try:
        store = ProgressStore(db, now=orchestrator.now)
        data_source = store.get_data_source(data_source_id)
        if data_source is None:
            return _error(404, f"Data source {data_source_id} not found")

        now = orchestrator.now()
        heartbeat_stale = (
            data_source.last_sync_status == "syncing"
            and data_source.heartbeat_at is not None
            and now - data_source.heartbeat_at > timedelta(minutes=settings.stale_sync_minutes)
        )
        success_stale = (
            data_source.last_sync_at is not None
            and now - data_source.last_sync_at > timedelta(hours=settings.freshness_threshold_hours)
        )

        progress = store.latest_progress(data_source_id)
        return {
            "data_source_id": data_source.id,
            "status": data_source.last_sync_status,
            "last_sync_at": data_source.last_sync_at.isoformat() if data_source.last_sync_at else None,
            "last_sync_error": data_source.last_sync_error,
            "heartbeat_at": data_source.heartbeat_at.isoformat() if data_source.heartbeat_at else None,
            "is_stale": bool(heartbeat_stale or success_stale),
            "progress": {
                "run_id": progress.run_id,
                "status": progress.status,
                "phase": progress.current_phase,
                "batch_number": progress.batch_number,
                "current": progress.processed_units,
                "total": progress.total_units,
                "current_unit": progress.current_unit,
                "counters": progress.counters or {},
                "error_count": len(progress.errors or []),
                "started_at": progress.started_at.isoformat() if progress.started_at else None,
                "completed_at": progress.completed_at.isoformat() if progress.completed_at else None,
            } if progress else None,
        }
    finally:
        db.close()


@router.post("/reconcile")
def reconcile(request: Request, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Run the reconciliation checks and a full metrics recompute"""
    if not _is_service(request):
        return _error(403, "Reconciliation requires the service credential")

    db = orchestrator.session_factory()
    try:
        return Reconciler(db, settings=orchestrator.settings, now=orchestrator.now).run()
    except Exception as e:
        log.error(f"Reconciliation error: {str(e)}")
        return _error(500, str(e))
    finally:
        db.close()


@router.post("/recover")
async def recover(request: Request, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Close timed-out runs and resume stalled partial syncs"""
    if not _is_service(request):
        return _error(403, "Recovery requires the service credential")

    db = orchestrator.session_factory()
    try:
        service = SyncRecoveryService(
            db, orchestrator.continuations, settings=orchestrator.settings, now=orchestrator.now
        )
        return await service.recover()
    except Exception as e:
        log.error(f"Recovery error: {str(e)}")
        return _error(500, str(e))
    finally:
        db.close()
