"""
Scheduler for background sync jobs

Uses APScheduler to drain queued continuations, recover stalled runs,
reconcile metrics nightly and optionally start scheduled syncs.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from outreach_sync.config import get_settings
from outreach_sync.models.base import SessionLocal
from outreach_sync.models.data_source import DataSource
from outreach_sync.services.continuation import ContinuationRequest
from outreach_sync.services.progress_store import ProgressStore
from outreach_sync.services.reconciliation_service import Reconciler
from outreach_sync.services.recovery_service import SyncRecoveryService
from outreach_sync.services.sync_orchestrator import (
    SyncConflictError, SyncRequest, SyncSetupError, get_orchestrator,
)
from outreach_sync.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()


# Job Functions

async def run_continuation(request: ContinuationRequest):
    """Run one queued continuation batch"""
    await get_orchestrator().run(SyncRequest(
        data_source_id=request.data_source_id,
        client_id=request.client_id,
        engagement_id=request.engagement_id,
        batch_number=request.batch_number,
        current_phase=request.phase,
        lease_token=request.lease_token,
        internal_continuation=True,
    ))


async def process_due_continuations():
    """Drain due continuations (every continuation_poll_seconds)"""
    try:
        processed = await get_orchestrator().continuations.drain(run_continuation)
        if processed:
            log.info(f"Processed {processed} queued continuations")
    except Exception as e:
        log.error(f"Continuation worker error: {str(e)}")


async def recover_stale_syncs():
    """Close timed-out runs and resume stalled partials"""
    db = SessionLocal()
    try:
        result = await SyncRecoveryService(db, get_orchestrator().continuations).recover()
        if result["stale_runs_reset"] or result["partials_resumed"] or result["stuck_continuations_failed"]:
            log.info(f"Sync recovery: {result}")
    except Exception as e:
        log.error(f"Sync recovery error: {str(e)}")
    finally:
        db.close()


async def run_reconciliation():
    """Nightly reconciliation and full metrics recompute"""
    db = SessionLocal()
    try:
        result = Reconciler(db).run()
        log.info(f"Reconciliation completed: {result['issues_found']} issues, {result['recalculated']} campaigns recalculated")
    except Exception as e:
        log.error(f"Reconciliation error: {str(e)}")
    finally:
        db.close()


async def run_scheduled_sync(data_source_id: int, client_id: str, engagement_id: str):
    """Start a fresh run for one data source"""
    try:
        outcome = await get_orchestrator().run(SyncRequest(
            data_source_id=data_source_id,
            client_id=client_id,
            engagement_id=engagement_id,
        ))
        log.info(f"Scheduled sync for data source {data_source_id}: {outcome.message}")
    except (SyncSetupError, SyncConflictError) as e:
        log.warning(f"Scheduled sync for data source {data_source_id} skipped: {str(e)}")
    except Exception as e:
        log.error(f"Scheduled sync for data source {data_source_id} error: {str(e)}")


async def run_scheduled_syncs():
    """Enqueue a one-off sync job for every active data source that is not leased"""
    db = SessionLocal()
    try:
        store = ProgressStore(db)
        data_sources = db.query(DataSource).filter(DataSource.is_active.is_(True)).all()
        idle = [
            (ds.id, ds.client_id, ds.engagement_id)
            for ds in data_sources
            if not store.lease_is_held(ds)
        ]
    except Exception as e:
        log.error(f"Scheduled sync lookup error: {str(e)}")
        return
    finally:
        db.close()

    for data_source_id, client_id, engagement_id in idle:
        scheduler.add_job(
            run_scheduled_sync,
            args=[data_source_id, client_id, engagement_id],
            id=f'scheduled_sync_{data_source_id}',
            name=f'Scheduled Sync (data source {data_source_id})',
            replace_existing=True,
            max_instances=1
        )
    if idle:
        log.info(f"Enqueued scheduled syncs for {len(idle)} data sources")


# Schedule Configuration

def setup_scheduler():
    """
    Configure the scheduler.

    - Continuations:  every continuation_poll_seconds (queue mode)
    - Recovery:       every recovery_interval_minutes
    - Reconciliation: reconcile_schedule (cron, nightly by default)
    - Scheduled syncs: scheduled_sync_schedule, when enabled
    """
    if settings.continuation_mode == "queue":
        scheduler.add_job(
            process_due_continuations,
            trigger=IntervalTrigger(seconds=settings.continuation_poll_seconds),
            id='process_due_continuations',
            name='Queued Continuation Worker',
            replace_existing=True,
            max_instances=1
        )

    scheduler.add_job(
        recover_stale_syncs,
        trigger=IntervalTrigger(minutes=settings.recovery_interval_minutes),
        id='sync_recovery',
        name='Stale Sync Recovery',
        replace_existing=True,
        max_instances=1
    )

    scheduler.add_job(
        run_reconciliation,
        trigger=CronTrigger.from_crontab(settings.reconcile_schedule),
        id='sync_reconciliation',
        name='Nightly Sync Reconciliation',
        replace_existing=True,
        max_instances=1
    )

    if settings.enable_scheduled_syncs:
        scheduler.add_job(
            run_scheduled_syncs,
            trigger=CronTrigger.from_crontab(settings.scheduled_sync_schedule),
            id='scheduled_syncs',
            name='Scheduled Data Source Syncs',
            replace_existing=True,
            max_instances=1
        )

    log.info(f"Scheduler configured (continuation mode: {settings.continuation_mode})")


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
    log.info("Scheduler stopped")

