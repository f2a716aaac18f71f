"""
Shared fixtures.

Each test gets its own file-backed SQLite database (separate connections
per session, like production), a fake clock whose sleep only advances
time, and an in-memory outreach platform.
"""
import os

os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SERVICE_ROLE_KEY", "test-service-key")
os.environ.setdefault("API_TOKENS", '{"user-token": "user-1"}')

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import outreach_sync.models  # noqa: F401  (register all tables)
from outreach_sync.config import Settings
from outreach_sync.connectors.base import (
    PlatformAccount, PlatformAdapter, PlatformCampaign, PlatformContact,
    PlatformEvent, PlatformStats, PlatformVariant,
)
from outreach_sync.models.base import Base, enable_sqlite_savepoints
from outreach_sync.models.data_source import DataSource
from outreach_sync.services.continuation import ContinuationScheduler
from outreach_sync.services.sync_orchestrator import SyncOrchestrator

START = datetime(2026, 3, 2, 12, 0, 0)


class FakeClock:
    """Monotonic seconds and wall time that only move when slept or advanced"""

    def __init__(self, start: datetime = START):
        self.start = start
        self.elapsed = 0.0
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.elapsed

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.elapsed += seconds

    def advance(self, seconds: float):
        self.elapsed += seconds


class FakePlatform:
    """
    Platform data served by FakeAdapter. `failures` maps a call name to an
    exception; `hooks` maps a call name to a callback run after the call.
    """

    def __init__(self):
        self.accounts: List[PlatformAccount] = []
        self.global_stats: Optional[PlatformStats] = None
        self.campaigns: List[PlatformCampaign] = []
        self.variants: Dict[str, List[PlatformVariant]] = {}
        self.contacts: Dict[str, List[PlatformContact]] = {}
        self.events: Dict[Tuple[str, str], List[PlatformEvent]] = {}
        self.failures: Dict[str, Exception] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}


def build_platform(campaign_count: int = 3, steps: int = 2, contacts_per_campaign: int = 10, reply_every: int = 4) -> FakePlatform:
    """
    Every contact is sent every step, one day apart per step. Even contacts
    open step 1; every `reply_every`-th contact replies to the last step.
    """
    platform = FakePlatform()
    platform.accounts = [
        PlatformAccount(external_id="acc-1", email_address="sdr@sender.io", sender_name="Sam", daily_limit=50),
        PlatformAccount(external_id="acc-2", email_address="ae@sender.io", sender_name="Alex", daily_limit=40),
    ]
    platform.global_stats = PlatformStats(sent=999, opened=500, replied=40, raw={"source": "fake"})

    base = datetime(2026, 2, 1, 9, 0, 0)
    for c in range(1, campaign_count + 1):
        cid = f"c{c}"
        platform.campaigns.append(PlatformCampaign(external_id=cid, name=f"Campaign {c}", status="active"))
        platform.variants[cid] = [
            PlatformVariant(
                external_id=f"{cid}-s{step}",
                step_number=step,
                subject=f"Step {step} for {cid}",
                body="Hi there, quick question about your outbound.",
                delay_days=step - 1,
            )
            for step in range(1, steps + 1)
        ]
        contacts = []
        for j in range(contacts_per_campaign):
            contact = PlatformContact(
                external_id=f"{cid}-lead{j}",
                email=f"lead{j}.{cid}@company{j}.com",
                first_name=f"Lead{j}",
                company_name=f"Company {j}",
            )
            contacts.append(contact)
            events = []
            for step in range(1, steps + 1):
                sent_at = base + timedelta(days=step - 1)
                events.append(PlatformEvent("sent", step_number=step, occurred_at=sent_at, subject=f"Step {step} for {cid}"))
                if step == 1 and j % 2 == 0:
                    events.append(PlatformEvent("opened", step_number=step, occurred_at=sent_at + timedelta(hours=2)))
            if j % reply_every == 0:
                events.append(PlatformEvent(
                    "replied",
                    step_number=steps,
                    occurred_at=base + timedelta(days=steps - 1, hours=5),
                    body="Sounds great, let's schedule a call next week.",
                ))
            platform.events[(cid, contact.external_id)] = events
        platform.contacts[cid] = contacts
    return platform


class FakeAdapter(PlatformAdapter):
    """Serves a FakePlatform; every call costs `call_cost` fake seconds"""

    source_type = "fake"

    def __init__(self, platform: FakePlatform, clock: FakeClock, page_size: int = 5, call_cost: float = 1.0):
        super().__init__(client=None, page_size=page_size)
        self.platform = platform
        self.clock = clock
        self.call_cost = call_cost
        self.calls: List[str] = []
        self.closed = False

    async def _call(self, name: str):
        self.calls.append(name)
        await self.clock.sleep(self.call_cost)
        hook = self.platform.hooks.get(name)
        if hook is not None:
            hook()
        failure = self.platform.failures.get(name)
        if failure is not None:
            raise failure

    async def list_accounts(self):
        await self._call("accounts")
        return list(self.platform.accounts)

    async def get_global_stats(self):
        await self._call("global_stats")
        return self.platform.global_stats

    async def list_campaigns_page(self, offset: int):
        await self._call(f"campaigns:{offset}")
        items = self.platform.campaigns[offset:offset + self.page_size]
        return list(items), self._next_offset(offset, items)

    async def get_campaign_stats(self, campaign):
        await self._call(f"stats:{campaign.external_id}")
        return PlatformStats(sent=len(self.platform.contacts.get(campaign.external_id, [])))

    async def list_variants(self, campaign):
        await self._call(f"variants:{campaign.external_id}")
        return list(self.platform.variants.get(campaign.external_id, []))

    async def list_contacts_page(self, campaign, offset: int):
        await self._call(f"contacts:{campaign.external_id}:{offset}")
        items = self.platform.contacts.get(campaign.external_id, [])[offset:offset + self.page_size]
        return list(items), self._next_offset(offset, items)

    async def list_contact_events(self, campaign, contact):
        await self._call(f"events:{campaign.external_id}:{contact.external_id}")
        return list(self.platform.events.get((campaign.external_id, contact.external_id), []))

    async def aclose(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'outreach_sync_test.db'}",
        connect_args={"check_same_thread": False, "timeout": 1},
        poolclass=NullPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings():
    def factory(**overrides) -> Settings:
        values = dict(
            log_dir="",
            sync_time_budget_seconds=10_000.0,
            sync_checkpoint_interval=2,
            sync_max_batches=10,
            continuation_mode="queue",
            continuation_max_retries=3,
            continuation_retry_base_seconds=1.0,
        )
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return factory


@pytest.fixture
def platform():
    return build_platform()


@pytest.fixture
def data_source(session_factory) -> int:
    """A SmartLead data source for engagement eng-1; returns its id"""
    with session_factory() as db:
        ds = DataSource(
            client_id="client-1",
            engagement_id="eng-1",
            name="SmartLead (test)",
            source_type="smartlead",
            api_key="test-key",
        )
        db.add(ds)
        db.commit()
        return ds.id


@pytest.fixture
def make_orchestrator(session_factory, clock, platform, make_settings):
    """Build an orchestrator wired to the fake clock and FakeAdapter"""
    def factory(settings: Optional[Settings] = None, call_cost: float = 1.0, source: Optional[FakePlatform] = None):
        settings = settings or make_settings()
        adapters: List[FakeAdapter] = []

        def adapter_factory(_data_source):
            adapter = FakeAdapter(source or platform, clock, call_cost=call_cost)
            adapters.append(adapter)
            return adapter

        continuations = ContinuationScheduler(
            session_factory=session_factory, settings=settings, sleep=clock.sleep, now=clock.now
        )
        orchestrator = SyncOrchestrator(
            session_factory=session_factory,
            settings=settings,
            adapter_factory=adapter_factory,
            continuations=continuations,
            clock=clock.monotonic,
            now=clock.now,
            sleep=clock.sleep,
        )
        orchestrator.adapters = adapters
        return orchestrator
    return factory


@pytest.fixture
def platform_factory():
    return build_platform
