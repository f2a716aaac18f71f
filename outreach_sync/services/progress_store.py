"""
Progress Store

Durable run state: the SyncProgress row, the checkpoint on the DataSource,
and the DataSource lease. Every write commits so a killed process loses
at most the work since the last heartbeat.
"""
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from outreach_sync.models.data_source import DataSource, SyncProgress
from outreach_sync.services.checkpoint import SyncCheckpoint, SyncPhase
from outreach_sync.utils.helpers import utcnow
from outreach_sync.utils.logger import log

COUNTER_KEYS = (
    "accounts_synced",
    "stats_snapshots",
    "campaigns_synced",
    "variants_synced",
    "contacts_synced",
    "activities_synced",
    "threads_synced",
)

MAX_STORED_ERRORS = 100


class LeaseLost(Exception):
    """Another trigger took over the data source lease mid-batch"""


def new_token() -> str:
    return uuid.uuid4().hex


@dataclass
class SyncRun:
    """In-memory view of the run a batch is advancing"""
    data_source_id: int
    engagement_id: str
    client_id: str
    source_type: str
    lease_token: str
    progress_id: int
    checkpoint: SyncCheckpoint
    counters: Dict[str, int] = field(default_factory=lambda: {key: 0 for key in COUNTER_KEYS})
    errors: List[str] = field(default_factory=list)
    units_this_batch: int = 0

    @property
    def run_id(self) -> str:
        return self.checkpoint.run_id

    @property
    def batch_number(self) -> int:
        return self.checkpoint.batch_number

    def bump(self, key: str, amount: int = 1):
        self.counters[key] = self.counters.get(key, 0) + amount

    def record_error(self, message: str):
        log.error(f"[data_source={self.data_source_id} run={self.run_id}] {message}")
        self.errors.append(message)

    def progress_payload(self) -> dict:
        return {**self.counters, "errors": len(self.errors)}


class ProgressStore:
    """Reads and writes sync run state for one session"""

    def __init__(self, db: Session, now: Callable = utcnow):
        self.db = db
        self.now = now

    def get_data_source(self, data_source_id: int) -> Optional[DataSource]:
        return self.db.query(DataSource).filter(DataSource.id == data_source_id).first()

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    def claim_lease(self, data_source_id: int, token: str, seconds: int) -> bool:
        """
        Compare-and-swap the lease.

        Succeeds when the lease is free, expired, or already ours.
        """
        now = self.now()
        result = self.db.execute(
            update(DataSource)
            .where(DataSource.id == data_source_id)
            .where(or_(
                DataSource.claimed_until.is_(None),
                DataSource.claimed_until < now,
                DataSource.claim_token == token,
            ))
            .values(claimed_until=now + timedelta(seconds=seconds), claim_token=token)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def release_lease(self, data_source_id: int, token: str) -> bool:
        result = self.db.execute(
            update(DataSource)
            .where(DataSource.id == data_source_id, DataSource.claim_token == token)
            .values(claimed_until=None, claim_token=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def lease_is_held(self, data_source: DataSource) -> bool:
        return bool(data_source.claimed_until and data_source.claimed_until >= self.now())

    def holds_lease(self, run: SyncRun) -> bool:
        token = self.db.query(DataSource.claim_token).filter(DataSource.id == run.data_source_id).scalar()
        self.db.commit()
        return token == run.lease_token

    def verify_lease(self, run: SyncRun, seconds: Optional[int] = None):
        """
        Raise LeaseLost unless the run still owns the lease.

        With `seconds` the lease is extended in the same compare-and-swap.
        """
        if seconds:
            held = self.claim_lease(run.data_source_id, run.lease_token, seconds)
        else:
            held = self.holds_lease(run)
        if not held:
            raise LeaseLost(
                f"Lease on data source {run.data_source_id} was taken over; "
                f"batch {run.batch_number} of run {run.run_id} stopped"
            )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start_run(self, data_source: DataSource, lease_token: str) -> SyncRun:
        """Create the SyncProgress row and a fresh checkpoint for batch 1"""
        now = self.now()

        # Anything still "running" lost its lease; only one run may be live
        superseded = self.db.query(SyncProgress).filter(
            SyncProgress.data_source_id == data_source.id,
            SyncProgress.status == "running",
        ).all()
        for stale in superseded:
            stale.status = "error"
            stale.errors = (stale.errors or []) + ["Superseded by a new run"]
            stale.completed_at = now

        checkpoint = SyncCheckpoint(run_id=new_token(), batch_number=1, heartbeat_at=now)
        progress = SyncProgress(
            data_source_id=data_source.id,
            run_id=checkpoint.run_id,
            status="running",
            current_phase=checkpoint.phase.value,
            batch_number=1,
            counters={key: 0 for key in COUNTER_KEYS},
            errors=[],
            started_at=now,
        )
        self.db.add(progress)

        data_source.last_sync_status = "syncing"
        data_source.last_sync_error = None
        data_source.checkpoint = checkpoint.to_json()
        data_source.heartbeat_at = now
        data_source.total_syncs = (data_source.total_syncs or 0) + 1
        self.db.commit()

        log.info(f"Started sync run {checkpoint.run_id} for data source {data_source.id} ({data_source.source_type})")
        return self._to_run(data_source, progress, checkpoint, lease_token)

    def resume_run(self, data_source: DataSource, checkpoint: SyncCheckpoint, lease_token: str, batch_number: int) -> SyncRun:
        """Continue the checkpointed run as a new batch"""
        now = self.now()
        progress = self.db.query(SyncProgress).filter(SyncProgress.run_id == checkpoint.run_id).first()
        if progress is None:
            progress = SyncProgress(
                data_source_id=data_source.id,
                run_id=checkpoint.run_id,
                counters={key: 0 for key in COUNTER_KEYS},
                errors=[],
                started_at=now,
            )
            self.db.add(progress)

        checkpoint.batch_number = batch_number
        checkpoint.heartbeat_at = now
        progress.status = "running"
        progress.completed_at = None
        progress.batch_number = batch_number
        progress.current_phase = checkpoint.phase.value

        data_source.last_sync_status = "syncing"
        data_source.checkpoint = checkpoint.to_json()
        data_source.heartbeat_at = now
        self.db.commit()

        log.info(
            f"Resuming run {checkpoint.run_id} for data source {data_source.id}: "
            f"batch {batch_number}, phase {checkpoint.phase.value}, "
            f"cursor {checkpoint.cursor_index}/{checkpoint.total_units}"
        )
        return self._to_run(data_source, progress, checkpoint, lease_token)

    def heartbeat(self, run: SyncRun, current_unit: Optional[str] = None, lease_seconds: Optional[int] = None):
        """Persist cursor, counters and timestamp; optionally extend the lease"""
        self.verify_lease(run, lease_seconds)
        now = self.now()
        run.checkpoint.heartbeat_at = now

        data_source = self.get_data_source(run.data_source_id)
        data_source.checkpoint = run.checkpoint.to_json()
        data_source.heartbeat_at = now

        progress = self._progress(run)
        progress.current_phase = run.checkpoint.phase.value
        progress.batch_number = run.batch_number
        progress.total_units = run.checkpoint.total_units
        progress.processed_units = run.checkpoint.cursor_index
        if current_unit is not None:
            progress.current_unit = current_unit
        progress.counters = dict(run.counters)
        progress.errors = run.errors[-MAX_STORED_ERRORS:]
        progress.updated_at = now
        self.db.commit()

    def mark_partial(self, run: SyncRun, message: Optional[str] = None):
        """Persist the cursor and flag the source as partially synced"""
        self.heartbeat(run)
        data_source = self.get_data_source(run.data_source_id)
        data_source.last_sync_status = "partial"
        data_source.last_sync_error = message
        self.db.commit()

    def complete_run(self, run: SyncRun):
        self.verify_lease(run)
        now = self.now()
        run.checkpoint.advance_to(SyncPhase.COMPLETE)

        progress = self._progress(run)
        progress.status = "completed"
        progress.current_phase = SyncPhase.COMPLETE.value
        progress.processed_units = run.checkpoint.total_units
        progress.total_units = run.checkpoint.total_units
        progress.current_unit = None
        progress.counters = dict(run.counters)
        progress.errors = run.errors[-MAX_STORED_ERRORS:]
        progress.completed_at = now

        data_source = self.get_data_source(run.data_source_id)
        data_source.last_sync_status = "success"
        data_source.last_sync_at = now
        data_source.last_sync_error = f"{len(run.errors)} unit errors" if run.errors else None
        data_source.last_sync_records_processed = run.counters.get("activities_synced", 0)
        data_source.checkpoint = None
        data_source.heartbeat_at = now
        self.db.commit()

        self.release_lease(run.data_source_id, run.lease_token)
        log.info(f"Sync run {run.run_id} completed for data source {run.data_source_id}: {run.progress_payload()}")

    def fail_run(self, run: SyncRun, message: str):
        """Terminal failure; keep the checkpoint so a retry can resume"""
        self.db.rollback()
        if not self.holds_lease(run):
            log.warning(f"Sync run {run.run_id} failed after losing its lease; leaving data source {run.data_source_id} untouched: {message}")
            return
        now = self.now()
        run.errors.append(message)

        progress = self._progress(run)
        if progress is not None:
            progress.status = "error"
            progress.counters = dict(run.counters)
            progress.errors = run.errors[-MAX_STORED_ERRORS:]
            progress.completed_at = now

        data_source = self.get_data_source(run.data_source_id)
        if data_source is not None:
            data_source.last_sync_status = "error"
            data_source.last_sync_error = message[:500]
            data_source.failed_syncs = (data_source.failed_syncs or 0) + 1
        self.db.commit()

        self.release_lease(run.data_source_id, run.lease_token)
        log.error(f"Sync run {run.run_id} failed for data source {run.data_source_id}: {message}")

    def latest_progress(self, data_source_id: int) -> Optional[SyncProgress]:
        return (
            self.db.query(SyncProgress)
            .filter(SyncProgress.data_source_id == data_source_id)
            .order_by(SyncProgress.started_at.desc(), SyncProgress.id.desc())
            .first()
        )

    def _progress(self, run: SyncRun) -> Optional[SyncProgress]:
        return self.db.query(SyncProgress).filter(SyncProgress.id == run.progress_id).first()

    def _to_run(self, data_source: DataSource, progress: SyncProgress, checkpoint: SyncCheckpoint, lease_token: str) -> SyncRun:
        counters = {key: 0 for key in COUNTER_KEYS}
        counters.update(progress.counters or {})
        return SyncRun(
            data_source_id=data_source.id,
            engagement_id=data_source.engagement_id,
            client_id=data_source.client_id,
            source_type=data_source.source_type,
            lease_token=lease_token,
            progress_id=progress.id,
            checkpoint=checkpoint,
            counters=counters,
            errors=list(progress.errors or []),
        )
