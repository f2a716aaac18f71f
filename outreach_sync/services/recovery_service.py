"""
Sync Recovery Service

Finds runs whose process died without a clean handoff and puts them back
on track:

1. `running` SyncProgress rows with no heartbeat for `stale_sync_minutes`
   and an expired lease are closed as timed out.
2. `partial` data sources nobody is continuing get a fresh continuation
   so they resume from their checkpoint.
3. Continuation rows stuck in `running` are marked failed.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from outreach_sync.config import Settings, get_settings
from outreach_sync.models.data_source import DataSource, SyncContinuation, SyncProgress
from outreach_sync.services.checkpoint import load_checkpoint
from outreach_sync.services.continuation import ContinuationRequest, ContinuationScheduler
from outreach_sync.services.progress_store import ProgressStore, new_token
from outreach_sync.utils.helpers import utcnow
from outreach_sync.utils.logger import log

STALE_RUN_MESSAGE = "Sync timed out - no heartbeat"


class SyncRecoveryService:

    def __init__(
        self,
        db: Session,
        continuations: ContinuationScheduler,
        settings: Optional[Settings] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.continuations = continuations
        self.settings = settings or get_settings()
        self.now = now

    async def recover(self) -> Dict:
        stale_runs = self.reset_stale_runs()
        stuck = self.fail_stuck_continuations()
        resumed = await self.resume_stale_partials()
        return {
            "timestamp": self.now().isoformat(),
            "stale_runs_reset": stale_runs,
            "stuck_continuations_failed": stuck,
            "partials_resumed": resumed,
        }

    def _lease_expired(self, now: datetime):
        return or_(DataSource.claimed_until.is_(None), DataSource.claimed_until < now)

    def reset_stale_runs(self) -> List[int]:
        """Close running rows whose process stopped heartbeating"""
        now = self.now()
        cutoff = now - timedelta(minutes=self.settings.stale_sync_minutes)

        stale = (
            self.db.query(SyncProgress, DataSource)
            .join(DataSource, DataSource.id == SyncProgress.data_source_id)
            .filter(
                SyncProgress.status == "running",
                SyncProgress.updated_at < cutoff,
                or_(DataSource.heartbeat_at.is_(None), DataSource.heartbeat_at < cutoff),
                self._lease_expired(now),
            )
            .all()
        )

        reset = []
        for progress, data_source in stale:
            progress.status = "error"
            progress.errors = (progress.errors or []) + [STALE_RUN_MESSAGE]
            progress.completed_at = now

            if data_source.last_sync_status == "syncing":
                data_source.last_sync_status = "partial" if data_source.checkpoint else "error"
                data_source.last_sync_error = STALE_RUN_MESSAGE
            reset.append(data_source.id)
            log.warning(f"Sync run {progress.run_id} for data source {data_source.id} timed out without a heartbeat")

        self.db.commit()
        return reset

    def fail_stuck_continuations(self) -> int:
        cutoff = self.now() - timedelta(minutes=self.settings.stale_sync_minutes)
        count = self.db.query(SyncContinuation).filter(
            SyncContinuation.status == "running",
            SyncContinuation.updated_at < cutoff,
        ).update(
            {"status": "failed", "last_error": "Worker stopped before finishing", "updated_at": self.now()},
            synchronize_session=False,
        )
        self.db.commit()
        if count:
            log.warning(f"Marked {count} stuck continuations as failed")
        return count

    async def resume_stale_partials(self) -> List[int]:
        """Enqueue a continuation for partial sources that nothing is advancing"""
        now = self.now()
        cutoff = now - timedelta(minutes=self.settings.stale_partial_minutes)
        pending = select(SyncContinuation.data_source_id).where(
            SyncContinuation.status.in_(("pending", "running"))
        )

        candidates = self.db.query(DataSource).filter(
            DataSource.is_active.is_(True),
            DataSource.last_sync_status == "partial",
            self._lease_expired(now),
            or_(DataSource.heartbeat_at.is_(None), DataSource.heartbeat_at < cutoff),
            DataSource.id.notin_(pending),
        ).all()

        store = ProgressStore(self.db, now=self.now)
        resumed = []
        targets = [
            (ds.id, ds.client_id, ds.engagement_id, load_checkpoint(ds.checkpoint))
            for ds in candidates
        ]
        for data_source_id, client_id, engagement_id, checkpoint in targets:
            if checkpoint is None:
                log.warning(f"Data source {data_source_id} is partial without a usable checkpoint; skipping")
                continue

            token = new_token()
            if not store.claim_lease(data_source_id, token, self.settings.continuation_lease_seconds):
                continue

            scheduled = await self.continuations.schedule_next(ContinuationRequest(
                data_source_id=data_source_id,
                client_id=client_id,
                engagement_id=engagement_id,
                run_id=checkpoint.run_id,
                batch_number=checkpoint.batch_number + 1,
                phase=checkpoint.phase.value,
                lease_token=token,
            ))
            if scheduled:
                resumed.append(data_source_id)
                log.info(f"Resuming stale partial sync for data source {data_source_id} at batch {checkpoint.batch_number + 1}")
        return resumed
