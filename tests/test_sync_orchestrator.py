"""
Sync orchestrator tests.

Guards against:
  1. Re-running a sync duplicating activities or inflating campaign totals
  2. A time-boxed batch losing or double counting campaigns across resumes
  3. Daily metric sums drifting from campaign totals after a chain of batches
  4. Reset leaving rows from campaigns the platform no longer returns
  5. Two triggers running the same data source concurrently
  6. Runaway continuation chains (max batch limit)
  7. One broken contact aborting the whole run
  8. A batch that lost its lease still writing the checkpoint or closing the run
"""
import asyncio

import pytest
from sqlalchemy import func

from outreach_sync.connectors.http_client import PlatformAPIError
from outreach_sync.models.data_source import DataSource, SyncContinuation, SyncProgress
from outreach_sync.models.metrics import DailyMetric, PlatformStatsSnapshot
from outreach_sync.models.outreach import (
    Campaign, Contact, EmailAccount, EmailActivity, MessageThread,
)
from outreach_sync.services.progress_store import ProgressStore
from outreach_sync.services.sync_orchestrator import (
    SyncConflictError, SyncRequest, SyncSetupError,
)


def _run(coro):
    """Run an async coroutine in a sync test."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _continuation_runner(orchestrator, outcomes):
    async def runner(request):
        outcome = await orchestrator.run(SyncRequest(
            data_source_id=request.data_source_id,
            client_id=request.client_id,
            engagement_id=request.engagement_id,
            batch_number=request.batch_number,
            current_phase=request.phase,
            lease_token=request.lease_token,
            internal_continuation=True,
            auto_continue=True,
        ))
        outcomes.append(outcome)
        return outcome
    return runner


def _drain_all(orchestrator, outcomes, limit=20):
    """Process queued continuations until the chain stops"""
    runner = _continuation_runner(orchestrator, outcomes)
    for _ in range(limit):
        if _run(orchestrator.continuations.drain(runner)) == 0:
            return
    raise AssertionError("continuation chain did not settle")


def _data_source(session_factory, data_source_id) -> DataSource:
    with session_factory() as db:
        ds = db.query(DataSource).filter(DataSource.id == data_source_id).one()
        db.expunge(ds)
        return ds


# ---------------------------------------------------------------------------
# Single batch
# ---------------------------------------------------------------------------

def test_full_sync_in_one_batch(session_factory, data_source, make_orchestrator):
    orchestrator = make_orchestrator()

    outcome = _run(orchestrator.run(SyncRequest(data_source_id=data_source, engagement_id="eng-1")))

    assert outcome.complete is True
    body = outcome.to_response()
    assert body["success"] is True and body["complete"] is True
    assert "Sync complete: 3 campaigns, 60 activities" in body["message"]
    assert outcome.progress["accounts_synced"] == 2
    assert outcome.progress["contacts_synced"] == 30
    assert outcome.progress["activities_synced"] == 60
    assert outcome.progress["threads_synced"] == 9
    assert orchestrator.adapters[0].closed is True

    with session_factory() as db:
        assert db.query(EmailAccount).count() == 2
        assert db.query(Campaign).count() == 3
        assert db.query(Contact).count() == 30
        assert db.query(EmailActivity).count() == 60
        assert db.query(MessageThread).count() == 9
        assert db.query(PlatformStatsSnapshot).filter(PlatformStatsSnapshot.scope == "global").count() == 1

        for campaign in db.query(Campaign).all():
            assert campaign.total_sent == 20
            assert campaign.total_opened == 5
            assert campaign.total_replied == 3
            assert campaign.positive_replies == 3
            assert campaign.reply_rate == 0.15
            assert campaign.positive_reply_rate == 1.0
            assert campaign.last_synced_at is not None

        progress = db.query(SyncProgress).one()
        assert progress.status == "completed"
        assert progress.current_phase == "complete"
        assert progress.processed_units == progress.total_units == 3

    ds = _data_source(session_factory, data_source)
    assert ds.last_sync_status == "success"
    assert ds.last_sync_error is None
    assert ds.checkpoint is None
    assert ds.claim_token is None
    assert ds.last_sync_records_processed == 60


def test_rerun_is_idempotent(session_factory, data_source, make_orchestrator):
    orchestrator = make_orchestrator()
    _run(orchestrator.run(SyncRequest(data_source_id=data_source)))
    outcome = _run(orchestrator.run(SyncRequest(data_source_id=data_source)))

    assert outcome.complete is True
    with session_factory() as db:
        assert db.query(Campaign).count() == 3
        assert db.query(Contact).count() == 30
        assert db.query(EmailActivity).count() == 60
        assert db.query(MessageThread).count() == 9
        assert db.query(SyncProgress).filter(SyncProgress.status == "completed").count() == 2
        for campaign in db.query(Campaign).all():
            assert campaign.total_sent == 20
            assert campaign.total_replied == 3

    assert _data_source(session_factory, data_source).total_syncs == 2


# ---------------------------------------------------------------------------
# Time budget and continuations
# ---------------------------------------------------------------------------

def test_budget_chain_resumes_without_loss(session_factory, data_source, make_orchestrator, make_settings):
    """
    Setup takes 3 fake seconds and each campaign 15, so a 25s budget cuts
    batch 1 inside campaign 2 and batch 2 inside campaign 3.
    """
    orchestrator = make_orchestrator(settings=make_settings(sync_time_budget_seconds=25))

    first = _run(orchestrator.run(SyncRequest(data_source_id=data_source, engagement_id="eng-1")))

    assert first.complete is False
    assert first.batch_number == 1
    assert first.phase == "sequences"
    assert (first.current, first.total) == (1, 3)
    assert "Auto-continuing with batch 2" in first.message
    body = first.to_response()
    assert body["complete"] is False and body["batch_number"] == 1

    ds = _data_source(session_factory, data_source)
    assert ds.last_sync_status == "partial"
    assert ds.checkpoint["cursor_index"] == 1
    assert ds.claim_token is not None

    with session_factory() as db:
        pending = db.query(SyncContinuation).filter(SyncContinuation.status == "pending").one()
        assert pending.batch_number == 2
        assert pending.lease_token == ds.claim_token

    outcomes = []
    _drain_all(orchestrator, outcomes)

    assert [o.batch_number for o in outcomes] == [2, 3]
    assert [o.complete for o in outcomes] == [False, True]
    assert (outcomes[0].current, outcomes[0].total) == (2, 3)
    assert len({first.run_id, *(o.run_id for o in outcomes)}) == 1

    with session_factory() as db:
        assert db.query(Campaign).count() == 3
        assert db.query(EmailActivity).count() == 60
        for campaign in db.query(Campaign).all():
            assert campaign.total_sent == 20
            daily_sent, daily_replied = db.query(
                func.sum(DailyMetric.emails_sent), func.sum(DailyMetric.emails_replied)
            ).filter(DailyMetric.campaign_id == campaign.id).one()
            assert daily_sent == campaign.total_sent
            assert daily_replied == campaign.total_replied

        progress = db.query(SyncProgress).one()
        assert progress.status == "completed"
        assert progress.batch_number == 3
        # Campaigns cut by the budget are counted once, in the batch that finishes them
        assert progress.counters["campaigns_synced"] == 3
        assert progress.counters["contacts_synced"] == 30
        assert progress.counters["activities_synced"] == 60
        assert progress.counters["threads_synced"] == 9
        assert progress.counters["accounts_synced"] == 2
        statuses = [c.status for c in db.query(SyncContinuation).order_by(SyncContinuation.id).all()]
        assert statuses == ["done", "done"]

    ds = _data_source(session_factory, data_source)
    assert ds.last_sync_status == "success"
    assert ds.claim_token is None
    assert ds.last_sync_records_processed == 60
    assert outcomes[-1].message.startswith("Sync complete: 3 campaigns, 60 activities")


def test_first_campaign_of_a_batch_always_finishes(session_factory, data_source, make_orchestrator, make_settings):
    # Budget shorter than a single campaign still advances one campaign per batch
    orchestrator = make_orchestrator(settings=make_settings(sync_time_budget_seconds=4))

    first = _run(orchestrator.run(SyncRequest(data_source_id=data_source)))
    outcomes = []
    _drain_all(orchestrator, outcomes)

    assert first.complete is False
    assert outcomes[-1].complete is True
    with session_factory() as db:
        assert db.query(EmailActivity).count() == 60


def test_auto_continue_false_stops_after_one_batch(session_factory, data_source, make_orchestrator, make_settings):
    orchestrator = make_orchestrator(settings=make_settings(sync_time_budget_seconds=25))

    outcome = _run(orchestrator.run(SyncRequest(data_source_id=data_source, auto_continue=False)))

    assert outcome.complete is False
    assert outcome.message.endswith("Run again to continue.")
    with session_factory() as db:
        assert db.query(SyncContinuation).count() == 0
    ds = _data_source(session_factory, data_source)
    assert ds.last_sync_status == "partial"
    assert ds.claim_token is None

    # A manual re-run picks the checkpoint up as the next batch of the same run
    second = _run(orchestrator.run(SyncRequest(data_source_id=data_source, auto_continue=False)))
    assert second.batch_number == 2
    assert second.run_id == outcome.run_id


def test_external_trigger_supersedes_queued_continuation(session_factory, data_source, make_orchestrator, make_settings, clock):
    orchestrator = make_orchestrator(settings=make_settings(sync_time_budget_seconds=25))
    _run(orchestrator.run(SyncRequest(data_source_id=data_source)))

    # The queued continuation holds the lease until it expires
    with pytest.raises(SyncConflictError):
        _run(orchestrator.run(SyncRequest(data_source_id=data_source)))

    clock.advance(orchestrator.settings.continuation_lease_seconds + 1)
    _run(orchestrator.run(SyncRequest(data_source_id=data_source, auto_continue=False)))

    with session_factory() as db:
        first = db.query(SyncContinuation).order_by(SyncContinuation.id).first()
        assert first.status == "cancelled"


def test_max_batch_limit_fails_the_run(session_factory, data_source, make_orchestrator, make_settings):
    orchestrator = make_orchestrator(settings=make_settings(sync_time_budget_seconds=25, sync_max_batches=1))
    _run(orchestrator.run(SyncRequest(data_source_id=data_source)))

    _drain_all(orchestrator, [])

    ds = _data_source(session_factory, data_source)
    assert ds.last_sync_status == "error"
    assert ds.last_sync_error == "Max batch limit reached (1)"
    assert ds.claim_token is None
    with session_factory() as db:
        assert db.query(SyncProgress).one().status == "error"
        continuation = db.query(SyncContinuation).one()
        assert continuation.status == "failed"
        assert "Max batch limit reached" in continuation.last_error


def test_max_batch_limit_direct_request(data_source, make_orchestrator, make_settings):
    orchestrator = make_orchestrator(settings=make_settings(sync_max_batches=2))

    with pytest.raises(SyncSetupError) as exc:
        _run(orchestrator.run(SyncRequest(data_source_id=data_source, batch_number=3)))

    assert exc.value.status_code == 400
    assert str(exc.value) == "Max batch limit reached (2)"


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------

def test_reset_removes_rows_the_platform_no_longer_returns(
    session_factory, data_source, make_orchestrator, platform_factory
):
    _run(make_orchestrator().run(SyncRequest(data_source_id=data_source)))

    smaller = platform_factory(campaign_count=1)
    outcome = _run(make_orchestrator(source=smaller).run(SyncRequest(data_source_id=data_source, reset=True)))

    assert outcome.complete is True
    with session_factory() as db:
        campaigns = db.query(Campaign).all()
        assert [c.external_id for c in campaigns] == ["c1"]
        assert db.query(EmailActivity).count() == 20
        assert db.query(MessageThread).count() == 3
        assert {m.campaign_id for m in db.query(DailyMetric).all()} == {campaigns[0].id}
        # Contacts belong to the engagement and survive a reset
        assert db.query(Contact).count() == 30


def test_reset_starts_a_new_run_over_a_checkpoint(session_factory, data_source, make_orchestrator, make_settings):
    orchestrator = make_orchestrator(settings=make_settings(sync_time_budget_seconds=25))
    first = _run(orchestrator.run(SyncRequest(data_source_id=data_source, auto_continue=False)))

    outcome = _run(make_orchestrator().run(SyncRequest(data_source_id=data_source, reset=True)))

    assert outcome.complete is True
    assert outcome.batch_number == 1
    assert outcome.run_id != first.run_id
    with session_factory() as db:
        # Run history survives a reset; the old run is closed, not deleted
        statuses = {p.run_id: p.status for p in db.query(SyncProgress).all()}
        assert statuses == {first.run_id: "error", outcome.run_id: "completed"}


# ---------------------------------------------------------------------------
# Setup errors and the lease
# ---------------------------------------------------------------------------

def test_unknown_data_source_is_404(make_orchestrator):
    with pytest.raises(SyncSetupError) as exc:
        _run(make_orchestrator().run(SyncRequest(data_source_id=999)))
    assert exc.value.status_code == 404


def test_engagement_mismatch_is_rejected(data_source, make_orchestrator):
    with pytest.raises(SyncSetupError) as exc:
        _run(make_orchestrator().run(SyncRequest(data_source_id=data_source, engagement_id="other")))
    assert exc.value.status_code == 400


def test_missing_api_key_is_rejected(session_factory, data_source, make_orchestrator):
    with session_factory() as db:
        db.query(DataSource).filter(DataSource.id == data_source).update({"api_key": None})
        db.commit()

    with pytest.raises(SyncSetupError, match="No API key"):
        _run(make_orchestrator().run(SyncRequest(data_source_id=data_source)))


def test_continuation_without_checkpoint_releases_lease(session_factory, data_source, make_orchestrator):
    with pytest.raises(SyncSetupError, match="No checkpoint"):
        _run(make_orchestrator().run(SyncRequest(
            data_source_id=data_source, internal_continuation=True, lease_token="tok-1",
        )))

    assert _data_source(session_factory, data_source).claim_token is None


def test_held_lease_rejects_second_trigger(session_factory, data_source, make_orchestrator, clock):
    with session_factory() as db:
        assert ProgressStore(db, now=clock.now).claim_lease(data_source, "someone-else", 300) is True

    with pytest.raises(SyncConflictError):
        _run(make_orchestrator().run(SyncRequest(data_source_id=data_source)))

    ds = _data_source(session_factory, data_source)
    assert ds.claim_token == "someone-else"
    assert ds.last_sync_status == "idle"


def test_batch_stops_when_its_lease_is_taken_over(session_factory, data_source, make_orchestrator, platform, clock):
    """
    Each call costs 15s, so the 120s lease expires while the first campaign
    pages its contacts; another trigger claims it on the second page.
    """
    taken = {}

    def take_over():
        with session_factory() as db:
            taken["claimed"] = ProgressStore(db, now=clock.now).claim_lease(data_source, "other-trigger", 120)

    platform.hooks["contacts:c1:5"] = take_over
    orchestrator = make_orchestrator(call_cost=15)

    with pytest.raises(SyncConflictError, match="taken over"):
        _run(orchestrator.run(SyncRequest(data_source_id=data_source)))

    assert taken == {"claimed": True}
    assert orchestrator.adapters[0].closed is True

    ds = _data_source(session_factory, data_source)
    assert ds.claim_token == "other-trigger"
    assert ds.last_sync_status == "syncing"
    assert (ds.failed_syncs or 0) == 0
    assert ds.checkpoint["cursor_index"] == 0

    with session_factory() as db:
        assert [c.external_id for c in db.query(Campaign).all()] == ["c1"]
        assert db.query(SyncProgress).one().status == "running"


def test_handoff_without_the_lease_queues_nothing(session_factory, data_source, make_orchestrator, make_settings, platform, clock):
    def take_over():
        with session_factory() as db:
            db.query(DataSource).filter(DataSource.id == data_source).update({"claimed_until": None})
            db.commit()
            assert ProgressStore(db, now=clock.now).claim_lease(data_source, "other-trigger", 300)

    platform.hooks["stats:c2"] = take_over
    orchestrator = make_orchestrator(settings=make_settings(sync_time_budget_seconds=25))

    with pytest.raises(SyncConflictError):
        _run(orchestrator.run(SyncRequest(data_source_id=data_source)))

    with session_factory() as db:
        assert db.query(SyncContinuation).count() == 0
    ds = _data_source(session_factory, data_source)
    assert ds.claim_token == "other-trigger"
    assert ds.last_sync_status == "syncing"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

def test_contact_failure_is_recorded_and_run_completes(session_factory, data_source, make_orchestrator, platform):
    platform.failures["events:c1:c1-lead3"] = PlatformAPIError("boom", status_code=500)

    outcome = _run(make_orchestrator().run(SyncRequest(data_source_id=data_source)))

    assert outcome.complete is True
    assert outcome.progress["errors"] == 1
    assert outcome.message.endswith("1 errors")

    with session_factory() as db:
        # The contact is still stored, only its activities are missing
        assert db.query(Contact).count() == 30
        assert db.query(EmailActivity).count() == 58
        progress = db.query(SyncProgress).one()
        assert progress.errors == ["Contact lead3.c1@company3.com events: boom"]

    assert _data_source(session_factory, data_source).last_sync_error == "1 unit errors"


def test_listing_failure_fails_the_run(session_factory, data_source, make_orchestrator, platform):
    platform.failures["campaigns:0"] = PlatformAPIError("listing down", status_code=503)
    orchestrator = make_orchestrator()

    with pytest.raises(PlatformAPIError):
        _run(orchestrator.run(SyncRequest(data_source_id=data_source)))

    assert orchestrator.adapters[0].closed is True
    ds = _data_source(session_factory, data_source)
    assert ds.last_sync_status == "error"
    assert "listing down" in ds.last_sync_error
    assert ds.claim_token is None
    assert ds.failed_syncs == 1
    # Accounts were synced before the failure and the checkpoint survives for a retry
    assert ds.checkpoint["phase"] == "sequences"
    with session_factory() as db:
        assert db.query(SyncProgress).one().status == "error"
