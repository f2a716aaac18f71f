"""
PhoneBurner adapter tests.

Guards against:
  1. Contact pages stopping before total_pages or requesting past it
  2. Call activities on later pages being dropped
  3. Non-call activities (notes, emails) becoming touches
  4. Connected calls not registering as a conversation with their disposition
"""
import asyncio

import httpx

from outreach_sync.connectors import build_adapter
from outreach_sync.connectors.base import PlatformCampaign, PlatformContact
from outreach_sync.connectors.phoneburner import CALL_HISTORY_ID, extract_activities, is_call
from outreach_sync.services.activity_builder import build_touches


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


CONTACTS = [
    {"contact_user_id": "101", "first_name": "Ana", "email": "ana@acme.com", "company": "Acme"},
    {"contact_user_id": "102", "first_name": "Bo", "phone": "555-0100"},
    {"contact_user_id": "103", "first_name": "Cy", "email": "cy@globex.com"},
]

ACTIVITY_PAGES = {
    "1": {"contact_activities": {"total_pages": 2, "contact_activities": [
        {"user_activity_id": "a2", "activity_id": "41", "activity": "Called a Prospect",
         "date": "2026-03-02 15:00:00", "duration": 240, "disposition": "Appointment Set", "notes": "Demo Tuesday"},
        {"user_activity_id": "a3", "activity_id": "7", "activity": "Note added", "date": "2026-03-02 15:05:00"},
    ]}},
    "2": {"contact_activities": {"total_pages": 2, "contact_activity": {
        "user_activity_id": "a1", "activity": "Left voicemail on call", "date": "2026-03-01 10:00:00", "duration": 0,
    }}},
}


def _handler(requests):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path.replace("/rest/1", "", 1)
        params = request.url.params
        assert request.headers["authorization"] == "Bearer pb-1"

        if path == "/contacts":
            page, size = int(params["page"]), int(params["page_size"])
            start = (page - 1) * size
            total_pages = -(-len(CONTACTS) // size)
            return httpx.Response(200, json={"contacts": {
                "page": page, "total_pages": total_pages, "contacts": CONTACTS[start:start + size],
            }})
        if path == "/contacts/101/activities":
            return httpx.Response(200, json=ACTIVITY_PAGES[params["page"]])
        if path == "/dialsession/usage":
            return httpx.Response(200, json={"usage": {
                "9001": {"calls": 40, "connected": 12, "sessions": 3},
                "9002": {"calls": 10, "connected": 2, "sessions": 1},
            }})
        if path == "/members":
            return httpx.Response(200, json={"members": {"members": [[
                {"user_id": 9001, "first_name": "Sam", "last_name": "Caller", "email_address": "Sam@Dialer.io"},
            ]]}})
        return httpx.Response(404)
    return handler


def _adapter(make_settings, clock, requests, page_size=2):
    settings = make_settings(contacts_page_size=page_size, phoneburner_delay_seconds=0.5)
    return build_adapter(
        "phoneburner", "pb-1", settings, transport=httpx.MockTransport(_handler(requests)), sleep=clock.sleep
    )


CAMPAIGN = PlatformCampaign(CALL_HISTORY_ID, "PhoneBurner call history")


def test_call_detection():
    assert is_call({"activity_id": "42", "activity": "Received Call"})
    assert is_call({"activity": "Email sent", "disposition": "No Answer"})
    assert not is_call({"activity_id": "7", "activity": "Note added"})


def test_activity_shapes():
    assert extract_activities({"contact_activities": [{"a": 1}]}) == [{"a": 1}]
    assert extract_activities({"contact_activities": {"activities": [{"a": 2}]}}) == [{"a": 2}]
    assert extract_activities({"activities": [{"a": 3}]}) == [{"a": 3}]
    assert extract_activities({"contact_activities": {"total_pages": 0}}) == []
    assert extract_activities(None) == []


def test_one_call_history_campaign(make_settings, clock):
    adapter = _adapter(make_settings, clock, [])

    async def go():
        try:
            return await adapter.list_campaigns_page(0), await adapter.list_variants(CAMPAIGN)
        finally:
            await adapter.aclose()

    (campaigns, next_offset), variants = _run(go())

    assert [c.external_id for c in campaigns] == [CALL_HISTORY_ID]
    assert next_offset is None
    assert variants == []


def test_contacts_page_until_total_pages(make_settings, clock):
    requests = []
    adapter = _adapter(make_settings, clock, requests)

    async def go():
        pages = []
        try:
            async for page in adapter.iter_contacts(CAMPAIGN):
                pages.append(page)
        finally:
            await adapter.aclose()
        return pages

    pages = _run(go())

    # Contacts without an email are skipped
    assert [[c.external_id for c in page] for page in pages] == [["101"], ["103"]]
    assert pages[0][0].company_name == "Acme"
    assert [r.url.params["page"] for r in requests] == ["1", "2"]
    assert clock.sleeps == [0.5, 0.5]


def test_calls_become_numbered_touches(make_settings, clock):
    requests = []
    adapter = _adapter(make_settings, clock, requests)

    async def go():
        try:
            return await adapter.list_contact_events(CAMPAIGN, PlatformContact(external_id="101", email="ana@acme.com"))
        finally:
            await adapter.aclose()

    events = _run(go())

    assert [r.url.params["page"] for r in requests] == ["1", "2"]
    assert requests[0].url.params["days"] == "180"
    # Calls are numbered in date order across pages; the note is dropped
    assert [(e.event_type, e.step_number) for e in events] == [("sent", 1), ("sent", 2), ("replied", 2)]
    assert events[0].subject == "Left voicemail on call"
    assert events[1].message_id == "101_a2"

    touches = build_touches(events)
    assert not touches[1].replied
    assert touches[2].replied
    assert touches[2].reply_text == "Demo Tuesday"
    assert touches[2].reply_category == "meeting_request"


def test_usage_totals_and_members(make_settings, clock):
    requests = []
    adapter = _adapter(make_settings, clock, requests)

    async def go():
        try:
            return await adapter.get_campaign_stats(CAMPAIGN), await adapter.list_accounts()
        finally:
            await adapter.aclose()

    stats, accounts = _run(go())

    assert (stats.sent, stats.replied) == (50, 14)
    assert stats.raw == {"members": 2}
    assert set(requests[0].url.params) == {"date_start", "date_end"}
    assert [(a.external_id, a.email_address, a.sender_name) for a in accounts] == [("9001", "sam@dialer.io", "Sam Caller")]
