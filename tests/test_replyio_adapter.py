"""
Reply.io adapter tests.

Guards against:
  1. Statistics calls paced at the stricter list-endpoint delay (or vice versa)
  2. top/skip pagination stopping early or looping
  3. Multi-template steps losing their A/B labels
  4. Sequences without statistics reporting nothing at all
"""
import asyncio

import httpx

from outreach_sync.connectors import build_adapter
from outreach_sync.connectors.base import PlatformCampaign, PlatformContact
from outreach_sync.connectors.replyio import map_sequence_status


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


SEQUENCES = [{"id": i, "name": f"Seq {i}", "status": s} for i, s in enumerate(["Active", "Paused", "Stopped", "New", "Archived"], start=1)]


def _handler(requests):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path.replace("/v3", "", 1)
        params = request.url.params
        assert request.headers["x-api-key"] == "rk-1"

        if path == "/sequences":
            skip, top = int(params["skip"]), int(params["top"])
            return httpx.Response(200, json={"sequences": SEQUENCES[skip:skip + top]})
        if path == "/statistics/sequences/1":
            return httpx.Response(200, json={"deliveredContacts": 40, "repliedContacts": 4, "interestedContacts": 2})
        if path == "/statistics/sequences/2":
            return httpx.Response(404)
        if path == "/sequences/2":
            return httpx.Response(200, json={"id": 2, "peopleCount": 12, "repliedCount": 1})
        if path == "/sequences/1/steps":
            return httpx.Response(200, json={"steps": [
                {"id": 70, "number": 1, "delayInDays": 0, "templates": [
                    {"id": 701, "subject": "Idea for {{company}}", "body": "Hi"},
                    {"id": 702, "subject": "Quick one", "body": "Hello"},
                ]},
                {"id": 71, "number": 2, "delayInDays": 3, "subject": "Bump", "body": "Following up"},
            ]})
        if path.endswith("/activities"):
            return httpx.Response(200, json={"items": [
                {"id": 1, "type": "email_sent", "stepNumber": 1, "date": "2026-02-02T09:00:00Z", "subject": "Quick one"},
                {"id": 2, "type": "email_replied", "stepNumber": 1, "date": "2026-02-02T13:00:00+01:00", "body": "Tell me more"},
                {"id": 3, "type": "note_added"},
            ]})
        return httpx.Response(404)
    return handler


def _adapter(make_settings, clock, requests, page_size=2):
    settings = make_settings(
        contacts_page_size=page_size, replyio_list_delay_seconds=2.0, replyio_stats_delay_seconds=1.0,
    )
    return build_adapter(
        "replyio", "rk-1", settings, transport=httpx.MockTransport(_handler(requests)), sleep=clock.sleep
    )


def test_status_mapping():
    assert map_sequence_status("Active") == "active"
    assert map_sequence_status("Stopped") == "completed"
    assert map_sequence_status("New") == "draft"
    assert map_sequence_status(None) == "draft"
    assert map_sequence_status("Finished") == "finished"


def test_campaign_listing_pages_with_top_and_skip(make_settings, clock):
    requests = []
    adapter = _adapter(make_settings, clock, requests)

    async def go():
        pages, offset = [], 0
        try:
            while offset is not None:
                page, offset = await adapter.list_campaigns_page(offset)
                pages.append(page)
        finally:
            await adapter.aclose()
        return pages

    pages = _run(go())

    assert [len(p) for p in pages] == [2, 2, 1]
    assert [c.status for page in pages for c in page] == ["active", "paused", "completed", "draft", "archived"]
    assert [r.url.params["skip"] for r in requests] == ["0", "2", "4"]
    assert clock.sleeps == [2.0, 2.0, 2.0]


def test_stats_use_stats_delay_and_fall_back_to_details(make_settings, clock):
    requests = []
    adapter = _adapter(make_settings, clock, requests)

    async def go():
        try:
            return (
                await adapter.get_campaign_stats(PlatformCampaign("1", "Seq 1")),
                await adapter.get_campaign_stats(PlatformCampaign("2", "Seq 2")),
            )
        finally:
            await adapter.aclose()

    with_stats, from_details = _run(go())

    assert (with_stats.sent, with_stats.replied, with_stats.positive_replies) == (40, 4, 2)
    assert (from_details.sent, from_details.replied) == (12, 1)
    assert clock.sleeps == [1.0, 1.0, 1.0]


def test_multi_template_steps_get_labels(make_settings, clock):
    adapter = _adapter(make_settings, clock, [])

    async def go():
        try:
            return await adapter.list_variants(PlatformCampaign("1", "Seq 1"))
        finally:
            await adapter.aclose()

    variants = _run(go())

    assert [(v.external_id, v.step_number, v.variant_label) for v in variants] == [
        ("701", 1, "A"), ("702", 1, "B"), ("71", 2, None),
    ]
    assert variants[2].subject == "Bump"
    assert variants[2].delay_days == 3


def test_activities_map_to_events(make_settings, clock):
    adapter = _adapter(make_settings, clock, [])

    async def go():
        try:
            return await adapter.list_contact_events(
                PlatformCampaign("1", "Seq 1"), PlatformContact(external_id="p1", email="p1@acme.com")
            )
        finally:
            await adapter.aclose()

    events = _run(go())

    assert [e.event_type for e in events] == ["sent", "replied"]
    # Offsets are normalized to naive UTC
    assert events[1].occurred_at.isoformat() == "2026-02-02T12:00:00"
    assert events[1].body == "Tell me more"
