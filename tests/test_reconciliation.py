"""
Reconciliation tests.

Guards against:
  1. Campaign totals silently disagreeing with the activity ledger
  2. Replies stored without a category
  3. Active campaigns that stopped syncing going unnoticed
  4. Daily rollups drifting from campaign totals
  5. Two running sync runs for one data source
"""
import asyncio
from datetime import timedelta

import pytest

from outreach_sync.models.data_source import SyncProgress
from outreach_sync.models.outreach import Campaign, EmailActivity
from outreach_sync.services.reconciliation_service import Reconciler
from outreach_sync.services.sync_orchestrator import SyncRequest


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


@pytest.fixture
def synced(data_source, make_orchestrator, platform_factory):
    """Two campaigns of four contacts, fully synced"""
    orchestrator = make_orchestrator(source=platform_factory(campaign_count=2, contacts_per_campaign=4))
    outcome = _run(orchestrator.run(SyncRequest(data_source_id=data_source)))
    assert outcome.complete is True
    return orchestrator


def _reconcile(session_factory, orchestrator):
    with session_factory() as db:
        return Reconciler(db, settings=orchestrator.settings, now=orchestrator.now).run()


def test_clean_sync_has_no_issues(session_factory, synced):
    result = _reconcile(session_factory, synced)

    assert result["issues_found"] == 0
    assert result["issues"] == []
    assert result["recalculated"] == 2
    assert result["timestamp"]


def test_tampered_totals_are_reported_and_repaired(session_factory, synced):
    with session_factory() as db:
        campaign = db.query(Campaign).filter(Campaign.external_id == "c1").one()
        campaign.total_sent = 999
        db.commit()
        campaign_id = campaign.id

    result = _reconcile(session_factory, synced)

    assert any("total_sent=999 but activities show 8" in issue for issue in result["issues"])
    assert any("daily sent sum 8 drifts from total_sent 999" in issue for issue in result["issues"])
    with session_factory() as db:
        assert db.query(Campaign).filter(Campaign.id == campaign_id).one().total_sent == 8

    assert _reconcile(session_factory, synced)["issues_found"] == 0


def test_uncategorized_reply_is_reported(session_factory, synced):
    with session_factory() as db:
        reply = db.query(EmailActivity).filter(EmailActivity.replied.is_(True)).first()
        reply.reply_category = None
        db.commit()
        campaign_id = reply.campaign_id

    issues = _reconcile(session_factory, synced)["issues"]

    assert f"Campaign {campaign_id}: 1 replied activities without a reply category" in issues


def test_stale_and_never_synced_campaigns(session_factory, synced, clock, data_source):
    with session_factory() as db:
        db.add(Campaign(engagement_id="eng-1", data_source_id=data_source, external_id="c9", name="Ghost", status="active"))
        db.add(Campaign(engagement_id="eng-1", data_source_id=data_source, external_id="c10", name="Old", status="paused"))
        db.commit()

    clock.advance(timedelta(hours=49).total_seconds())
    issues = _reconcile(session_factory, synced)["issues"]

    assert any("(Ghost) is active but has never been synced" in issue for issue in issues)
    assert sum("last synced 49h ago (threshold 48h)" in issue for issue in issues) == 2
    assert not any("(Old)" in issue for issue in issues)


def test_daily_drift_within_tolerance_is_ignored(session_factory, synced):
    with session_factory() as db:
        # Replies tolerate a small absolute drift
        campaign = db.query(Campaign).filter(Campaign.external_id == "c1").one()
        campaign.total_replied = (campaign.total_replied or 0) + 3
        db.commit()

    issues = _reconcile(session_factory, synced)["issues"]

    assert not any("daily replied sum" in issue for issue in issues)
    assert any("total_replied=" in issue for issue in issues)


def test_concurrent_running_runs_are_reported(session_factory, synced, data_source, clock):
    with session_factory() as db:
        for run_id in ("r1", "r2"):
            db.add(SyncProgress(data_source_id=data_source, run_id=run_id, status="running", started_at=clock.now()))
        db.commit()

    issues = _reconcile(session_factory, synced)["issues"]

    assert f"Data source {data_source} has 2 running sync runs" in issues


def test_failing_check_is_reported_not_raised(session_factory, synced, monkeypatch):
    def broken(self):
        raise RuntimeError("query exploded")

    monkeypatch.setattr(Reconciler, "check_stale_campaigns", broken)

    result = _reconcile(session_factory, synced)

    assert result["issues"] == ["Check stale_campaigns failed: query exploded"]
    assert result["recalculated"] == 2
