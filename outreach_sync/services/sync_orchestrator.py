"""
Sync Orchestrator

Drives one batch of a sync run through the ordered phases
accounts -> global_stats -> sequences. Within sequences the cursor indexes
a campaign list cached in the checkpoint. A wall-clock budget is checked
before each unit of work; when it runs out the cursor is persisted and the
next batch is handed to the continuation scheduler.

Every write is an idempotent upsert and every aggregate is recomputed, so
a batch that dies anywhere can simply be re-run.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from outreach_sync.config import Settings, get_settings
from outreach_sync.connectors import SUPPORTED_SOURCE_TYPES, build_adapter
from outreach_sync.connectors.base import PlatformAdapter, PlatformCampaign
from outreach_sync.models.base import SessionLocal
from outreach_sync.models.data_source import DataSource
from outreach_sync.models.metrics import DailyMetric, EnrollmentSnapshot, PlatformStatsSnapshot
from outreach_sync.models.outreach import (
    Campaign, CampaignVariant, EmailAccount, EmailActivity, MessageThread, SequenceStep,
)
from outreach_sync.services.activity_builder import Touch, build_touches
from outreach_sync.services.aggregator import MetricsAggregator
from outreach_sync.services.checkpoint import CampaignRef, SyncPhase, load_checkpoint
from outreach_sync.services.continuation import ContinuationRequest, ContinuationScheduler
from outreach_sync.services.progress_store import LeaseLost, ProgressStore, SyncRun, new_token
from outreach_sync.services.upsert_service import EntityUpserter
from outreach_sync.utils.helpers import utcnow
from outreach_sync.utils.logger import log


class SyncSetupError(Exception):
    """Fatal error detected before any work starts"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class SyncConflictError(Exception):
    """Another run holds the data source lease"""


class BudgetExhausted(Exception):
    """Time budget ran out inside a unit of work"""


@dataclass
class SyncRequest:
    data_source_id: int
    client_id: Optional[str] = None
    engagement_id: Optional[str] = None
    reset: bool = False
    batch_number: Optional[int] = None
    auto_continue: Optional[bool] = None
    internal_continuation: bool = False
    current_phase: Optional[str] = None
    lease_token: Optional[str] = None


@dataclass
class SyncOutcome:
    complete: bool
    message: str
    progress: Dict[str, int] = field(default_factory=dict)
    current: int = 0
    total: int = 0
    phase: Optional[str] = None
    batch_number: int = 1
    run_id: Optional[str] = None

    def to_response(self) -> dict:
        if self.complete:
            return {
                "success": True,
                "complete": True,
                "progress": self.progress,
                "message": self.message,
            }
        return {
            "success": True,
            "complete": False,
            "progress": self.progress,
            "current": self.current,
            "total": self.total,
            "phase": self.phase,
            "batch_number": self.batch_number,
            "message": self.message,
        }


def reset_data_source(db: Session, data_source_id: int) -> Dict[str, int]:
    """
    Delete every synced row scoped to a data source, leaves first:
    metrics -> variants -> sequences -> activities -> threads -> campaigns -> accounts.

    Contacts and companies belong to the engagement and are kept.
    """
    campaign_ids = select(Campaign.id).where(Campaign.data_source_id == data_source_id)
    deleted: Dict[str, int] = {}

    for model in (DailyMetric, EnrollmentSnapshot):
        deleted[model.__tablename__] = db.query(model).filter(
            model.campaign_id.in_(campaign_ids)
        ).delete(synchronize_session=False)
    deleted[PlatformStatsSnapshot.__tablename__] = db.query(PlatformStatsSnapshot).filter(
        PlatformStatsSnapshot.data_source_id == data_source_id
    ).delete(synchronize_session=False)

    for model in (CampaignVariant, SequenceStep, EmailActivity, MessageThread):
        deleted[model.__tablename__] = db.query(model).filter(
            model.campaign_id.in_(campaign_ids)
        ).delete(synchronize_session=False)

    deleted[Campaign.__tablename__] = db.query(Campaign).filter(
        Campaign.data_source_id == data_source_id
    ).delete(synchronize_session=False)
    deleted[EmailAccount.__tablename__] = db.query(EmailAccount).filter(
        EmailAccount.data_source_id == data_source_id
    ).delete(synchronize_session=False)

    db.query(DataSource).filter(DataSource.id == data_source_id).update(
        {"checkpoint": None, "heartbeat_at": None}, synchronize_session=False
    )
    db.commit()
    log.info(f"Reset data source {data_source_id}: {deleted}")
    return deleted


class SyncOrchestrator:
    """
    Runs sync batches.

    clock/now/sleep and the adapter factory are injectable so batches can
    be driven deterministically.
    """

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        settings: Optional[Settings] = None,
        adapter_factory: Optional[Callable[[DataSource], PlatformAdapter]] = None,
        continuations: Optional[ContinuationScheduler] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock
        self.now = now
        self.sleep = sleep
        self.adapter_factory = adapter_factory or self._default_adapter
        self.continuations = continuations or ContinuationScheduler(
            session_factory=session_factory, settings=self.settings, sleep=sleep, now=now
        )

    def _default_adapter(self, data_source: DataSource) -> PlatformAdapter:
        return build_adapter(data_source.source_type, data_source.api_key, self.settings, sleep=self.sleep)

    async def run(self, request: SyncRequest) -> SyncOutcome:
        """Run one batch; returns a partial or complete outcome"""
        started = self.clock()
        db = self.session_factory()
        try:
            return await self._run_batch(db, request, started)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def _run_batch(self, db: Session, request: SyncRequest, started: float) -> SyncOutcome:
        store = ProgressStore(db, now=self.now)
        data_source = store.get_data_source(request.data_source_id)

        if data_source is None:
            raise SyncSetupError(f"Data source {request.data_source_id} not found", status_code=404)
        if request.engagement_id is not None and str(data_source.engagement_id) != str(request.engagement_id):
            raise SyncSetupError("Data source does not belong to this engagement")
        if request.client_id is not None and str(data_source.client_id) != str(request.client_id):
            raise SyncSetupError("Data source does not belong to this client")
        if data_source.source_type not in SUPPORTED_SOURCE_TYPES:
            raise SyncSetupError(f"Unsupported source type: {data_source.source_type}")
        if not data_source.api_key:
            raise SyncSetupError(f"No API key configured for data source {data_source.id}")

        if request.internal_continuation:
            if not request.lease_token:
                raise SyncSetupError("Continuation is missing its lease token")
            token = request.lease_token
        else:
            token = new_token()

        if not store.claim_lease(data_source.id, token, self.settings.sync_lease_seconds):
            raise SyncConflictError(f"A sync is already running for data source {data_source.id}")

        try:
            if not request.internal_continuation:
                # A fresh trigger supersedes any queued batch of an older chain
                self.continuations.cancel_pending(request.data_source_id, reason="Superseded by a new trigger")

            checkpoint = None if request.reset else load_checkpoint(data_source.checkpoint)
            if request.internal_continuation and checkpoint is None:
                raise SyncSetupError("No checkpoint to continue from")

            if checkpoint and request.current_phase and request.current_phase != checkpoint.phase.value:
                log.warning(
                    f"Continuation for data source {data_source.id} expected phase {request.current_phase}, "
                    f"checkpoint is at {checkpoint.phase.value}; using checkpoint"
                )

            batch_number = request.batch_number or (checkpoint.batch_number + 1 if checkpoint else 1)
            if batch_number > self.settings.sync_max_batches:
                message = f"Max batch limit reached ({self.settings.sync_max_batches})"
                if checkpoint:
                    run = store.resume_run(data_source, checkpoint, token, batch_number)
                    store.fail_run(run, message)
                raise SyncSetupError(message)

            if request.reset:
                reset_data_source(db, data_source.id)

            if checkpoint:
                run = store.resume_run(data_source, checkpoint, token, batch_number)
            else:
                run = store.start_run(data_source, token)
        except Exception:
            db.rollback()
            store.release_lease(data_source.id, token)
            raise

        adapter = self.adapter_factory(data_source)
        try:
            return await self._execute(db, store, adapter, run, request, started)
        except LeaseLost as e:
            db.rollback()
            log.warning(str(e))
            raise SyncConflictError(str(e)) from e
        except Exception as e:
            store.fail_run(run, f"{type(e).__name__}: {str(e)}")
            raise
        finally:
            await adapter.aclose()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _budget_exhausted(self, started: float) -> bool:
        return self.clock() - started >= self.settings.sync_time_budget_seconds

    async def _execute(
        self,
        db: Session,
        store: ProgressStore,
        adapter: PlatformAdapter,
        run: SyncRun,
        request: SyncRequest,
        started: float,
    ) -> SyncOutcome:
        checkpoint = run.checkpoint
        upserter = EntityUpserter(db)
        aggregator = MetricsAggregator(db, today=lambda: self.now().date())
        lease_seconds = self.settings.sync_lease_seconds

        if checkpoint.phase == SyncPhase.ACCOUNTS:
            if self._budget_exhausted(started):
                return await self._handoff(store, run, request)
            await self._sync_accounts(db, upserter, adapter, run)
            checkpoint.advance_to(SyncPhase.GLOBAL_STATS)
            store.heartbeat(run, lease_seconds=lease_seconds)

        if checkpoint.phase == SyncPhase.GLOBAL_STATS:
            if self._budget_exhausted(started):
                return await self._handoff(store, run, request)
            await self._sync_global_stats(db, upserter, adapter, run)
            checkpoint.advance_to(SyncPhase.SEQUENCES)
            store.heartbeat(run, lease_seconds=lease_seconds)

        if checkpoint.phase == SyncPhase.SEQUENCES:
            if checkpoint.cached_campaigns is None:
                listed = await self._list_campaigns(store, adapter, run, started)
                if not listed:
                    return await self._handoff(store, run, request)

            while checkpoint.cursor_index < len(checkpoint.cached_campaigns):
                if self._budget_exhausted(started):
                    return await self._handoff(store, run, request)

                store.verify_lease(run)
                ref = checkpoint.cached_campaigns[checkpoint.cursor_index]
                counters, error_count = dict(run.counters), len(run.errors)
                log.info(
                    f"[{checkpoint.cursor_index + 1}/{checkpoint.total_units}] "
                    f"Processing campaign {ref.name} ({ref.status})"
                )
                try:
                    # The first campaign of a batch always finishes so a slow one still advances
                    await self._sync_campaign(
                        db, upserter, aggregator, adapter, run, ref,
                        started if run.units_this_batch > 0 else None,
                    )
                except BudgetExhausted:
                    db.rollback()
                    # The campaign is redone next batch and counted there
                    run.counters = counters
                    del run.errors[error_count:]
                    log.info(f"Time budget ran out inside campaign {ref.name}; it will be redone next batch")
                    return await self._handoff(store, run, request)

                checkpoint.cursor_index += 1
                run.units_this_batch += 1
                if run.units_this_batch % self.settings.sync_checkpoint_interval == 0:
                    store.heartbeat(run, current_unit=ref.name, lease_seconds=lease_seconds)

            checkpoint.advance_to(SyncPhase.COMPLETE)

        # Final pass over the whole data source, then close the run
        aggregator.recompute_data_source(run.data_source_id)
        store.complete_run(run)
        return SyncOutcome(
            complete=True,
            message=(
                f"Sync complete: {run.counters.get('campaigns_synced', 0)} campaigns, "
                f"{run.counters.get('activities_synced', 0)} activities"
                + (f", {len(run.errors)} errors" if run.errors else "")
            ),
            progress=run.progress_payload(),
            current=checkpoint.total_units,
            total=checkpoint.total_units,
            phase=SyncPhase.COMPLETE.value,
            batch_number=run.batch_number,
            run_id=run.run_id,
        )

    async def _sync_accounts(self, db: Session, upserter: EntityUpserter, adapter: PlatformAdapter, run: SyncRun):
        try:
            accounts = await adapter.list_accounts()
        except Exception as e:
            run.record_error(f"Email accounts: {str(e)}")
            return

        for account in accounts:
            try:
                upserter.upsert_account(run.data_source_id, account)
                db.commit()
                run.bump("accounts_synced")
            except Exception as e:
                db.rollback()
                run.record_error(f"Email account {account.email_address or account.external_id}: {str(e)}")
        log.info(f"Synced {len(accounts)} email accounts for data source {run.data_source_id}")

    async def _sync_global_stats(self, db: Session, upserter: EntityUpserter, adapter: PlatformAdapter, run: SyncRun):
        try:
            stats = await adapter.get_global_stats()
            if stats is None:
                log.info(f"No global stats available for data source {run.data_source_id}")
                return
            upserter.upsert_stats_snapshot(run.data_source_id, "global", "all", stats)
            db.commit()
            run.bump("stats_snapshots")
        except Exception as e:
            db.rollback()
            run.record_error(f"Global stats: {str(e)}")

    async def _list_campaigns(self, store: ProgressStore, adapter: PlatformAdapter, run: SyncRun, started: float) -> bool:
        """
        Page through the campaign list once per run and cache it.

        Returns False when the budget ran out between pages; pages fetched
        so far stay buffered in the checkpoint.
        """
        checkpoint = run.checkpoint
        offset: Optional[int] = checkpoint.listing_offset

        while offset is not None:
            if self._budget_exhausted(started):
                return False
            campaigns, offset = await adapter.list_campaigns_page(offset)
            checkpoint.listing_buffer.extend(
                CampaignRef(external_id=c.external_id, name=c.name, status=c.status, created_at=c.created_at)
                for c in campaigns
            )
            checkpoint.listing_offset = offset or 0
            store.heartbeat(run)

        checkpoint.cached_campaigns = checkpoint.listing_buffer
        checkpoint.listing_buffer = []
        checkpoint.listing_offset = 0
        checkpoint.cursor_index = 0
        checkpoint.total_units = len(checkpoint.cached_campaigns)
        store.heartbeat(run, current_unit=None, lease_seconds=self.settings.sync_lease_seconds)
        log.info(f"Cached {checkpoint.total_units} campaigns for data source {run.data_source_id}")
        return True

    async def _sync_campaign(
        self,
        db: Session,
        upserter: EntityUpserter,
        aggregator: MetricsAggregator,
        adapter: PlatformAdapter,
        run: SyncRun,
        ref: CampaignRef,
        started: Optional[float],
    ):
        """
        Metrics, variants, contacts and activities for one campaign.

        Raises BudgetExhausted between contact pages when `started` is set.
        """
        campaign = PlatformCampaign(
            external_id=ref.external_id, name=ref.name, status=ref.status, created_at=ref.created_at
        )

        try:
            campaign_id = upserter.upsert_campaign(run.engagement_id, run.data_source_id, campaign)
            db.commit()
        except Exception as e:
            db.rollback()
            run.record_error(f"Campaign {ref.name}: {str(e)}")
            return
        run.bump("campaigns_synced")

        try:
            stats = await adapter.get_campaign_stats(campaign)
            if stats is not None:
                upserter.upsert_stats_snapshot(run.data_source_id, "campaign", campaign.external_id, stats)
                db.commit()
                run.bump("stats_snapshots")
        except Exception as e:
            db.rollback()
            run.record_error(f"Campaign {ref.name} stats: {str(e)}")

        try:
            variants = await adapter.list_variants(campaign)
            for variant in variants:
                upserter.upsert_variant(campaign_id, variant)
            db.commit()
            run.bump("variants_synced", len(variants))
        except Exception as e:
            db.rollback()
            run.record_error(f"Campaign {ref.name} variants: {str(e)}")

        variant_map = upserter.variant_ids_by_step(campaign_id)

        try:
            async for page in adapter.iter_contacts(campaign):
                for contact in page:
                    await self._sync_contact(db, upserter, adapter, run, campaign, campaign_id, contact, variant_map)
                db.commit()
                if started is not None and self._budget_exhausted(started):
                    raise BudgetExhausted(ref.name)
        except BudgetExhausted:
            raise
        except Exception as e:
            db.rollback()
            run.record_error(f"Campaign {ref.name} contacts: {str(e)}")

        aggregator.recompute(campaign_id)
        db.query(Campaign).filter(Campaign.id == campaign_id).update(
            {"last_synced_at": self.now()}, synchronize_session=False
        )
        db.commit()

    async def _sync_contact(self, db, upserter, adapter, run, campaign, campaign_id, contact, variant_map):
        try:
            events = await adapter.list_contact_events(campaign, contact)
        except Exception as e:
            run.record_error(f"Contact {contact.email} events: {str(e)}")
            events = None

        try:
            with db.begin_nested():
                contact_id = upserter.upsert_contact(run.engagement_id, contact)
                if contact_id is None:
                    return
                run.bump("contacts_synced")
                if not events:
                    return
                for touch in build_touches(events).values():
                    upserter.upsert_activity(campaign_id, contact_id, touch, self._variant_for(variant_map, touch))
                    run.bump("activities_synced")
                    if upserter.upsert_thread(campaign_id, contact_id, touch):
                        run.bump("threads_synced")
        except Exception as e:
            run.record_error(f"Contact {contact.email}: {str(e)}")

    @staticmethod
    def _variant_for(variant_map: Dict[int, Dict[Optional[str], int]], touch: Touch) -> Optional[int]:
        by_subject = variant_map.get(touch.step_number)
        if not by_subject:
            return None
        if touch.subject:
            match = by_subject.get(touch.subject.strip().lower())
            if match:
                return match
        return by_subject.get(None)

    # ------------------------------------------------------------------
    # Handoff
    # ------------------------------------------------------------------

    async def _handoff(self, store: ProgressStore, run: SyncRun, request: SyncRequest) -> SyncOutcome:
        """Persist the cursor and schedule the next batch"""
        checkpoint = run.checkpoint
        if request.auto_continue is not False:
            # Hold the lease for the continuation; only its token can resume
            store.verify_lease(run, self.settings.continuation_lease_seconds)
        store.mark_partial(run)
        next_batch = run.batch_number + 1
        where = (
            f"{checkpoint.cursor_index}/{checkpoint.total_units} campaigns"
            if checkpoint.cached_campaigns is not None
            else f"phase {checkpoint.phase.value}"
        )

        if request.auto_continue is False:
            store.release_lease(run.data_source_id, run.lease_token)
            message = f"Time budget reached at {where}. Run again to continue."
        else:
            scheduled = await self.continuations.schedule_next(ContinuationRequest(
                data_source_id=run.data_source_id,
                client_id=run.client_id,
                engagement_id=run.engagement_id,
                run_id=run.run_id,
                batch_number=next_batch,
                phase=checkpoint.phase.value,
                lease_token=run.lease_token,
            ))
            if scheduled:
                message = f"Time budget reached at {where}. Auto-continuing with batch {next_batch}..."
            else:
                message = f"Time budget reached at {where}. Continuation could not be scheduled; run again to continue."

        log.info(f"Data source {run.data_source_id} batch {run.batch_number} partial: {message}")
        return SyncOutcome(
            complete=False,
            message=message,
            progress=run.progress_payload(),
            current=checkpoint.cursor_index,
            total=checkpoint.total_units,
            phase=checkpoint.phase.value,
            batch_number=run.batch_number,
            run_id=run.run_id,
        )


# Lazy-init so importing a router or the scheduler does not touch settings
_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator shared by the API and the scheduler"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator()
    return _orchestrator
