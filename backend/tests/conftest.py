# tests/conftest.py

import asyncio
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import event

from leadsync.connectors.base import InboundEvent, InboundUser, Page
from leadsync.database import create_engine_for, create_session_factory, init_models
from leadsync.services.dedup_store import DedupStore
from leadsync.services.job_tracker import JobTracker
from leadsync.services.namespace_router import NamespaceRegistry
from leadsync.services.notifier import Notifier
from leadsync.services.rate_limiter import RateLimiterRegistry
from leadsync.services.retry import RetryPolicy
from leadsync.services.sync_orchestrator import SyncOrchestrator
from leadsync.services.sync_state import SyncStateStore
from leadsync.services.user_store import UserStore


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite; BEGIN IMMEDIATE so concurrent writers queue instead of deadlocking."""
    engine = create_engine_for(
        f"sqlite+aiosqlite:///{tmp_path / 'leadsync.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
async def registry(session_factory):
    registry = NamespaceRegistry(session_factory, default_name="default")
    await registry.ensure_default()
    await registry.load()
    return registry


@pytest.fixture
def callback_sender():
    sender = Mock()
    sender.send = AsyncMock(return_value=True)
    return sender


@pytest.fixture
def tracker(session_factory, callback_sender):
    return JobTracker(session_factory, callback_sender=callback_sender)


@pytest.fixture
def dedup(session_factory):
    return DedupStore(session_factory)


@pytest.fixture
def user_store(session_factory):
    return UserStore(session_factory)


@pytest.fixture
def sync_state(session_factory):
    return SyncStateStore(session_factory)


# ============================================================================
# FAKES
# ============================================================================

class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0)
        await asyncio.sleep(0)


class FakeConnector:
    """
    Scripted connector: pages are served by index, failures are raised
    the first N times a given (phase, page) is requested.
    """

    def __init__(
        self,
        platform: str,
        user_pages: Optional[List[List[Any]]] = None,
        event_pages: Optional[List[List[Any]]] = None,
        failures: Optional[Dict[Tuple[str, int], List[Exception]]] = None,
    ):
        self.platform = platform
        self.user_pages = user_pages or []
        self.event_pages = event_pages or []
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: List[Tuple[str, int]] = []
        self.windows: List[Any] = []
        self.upsert_user = AsyncMock(side_effect=lambda user: f"rec-{user.email}")
        self.notify = AsyncMock(return_value=None)
        self.test_connection = AsyncMock(return_value=True)
        self.closed = 0

    async def _serve(self, phase: str, pages: List[List[Any]], window, cursor) -> Page:
        index = (cursor or {}).get("page", 0)
        self.calls.append((phase, index))
        self.windows.append(window)
        pending = self.failures.get((phase, index))
        if pending:
            raise pending.pop(0)
        records = pages[index] if index < len(pages) else []
        has_more = index + 1 < len(pages)
        return Page(
            records=list(records),
            next_cursor={"page": index + 1} if has_more else None,
            has_more=has_more,
            total=sum(len(p) for p in pages) if index == 0 else None,
        )

    async def fetch_users(self, window, cursor):
        return await self._serve("users", self.user_pages, window, cursor)

    async def fetch_events(self, window, cursor):
        return await self._serve("events", self.event_pages, window, cursor)

    async def aclose(self):
        self.closed += 1


def make_user(platform: str, email: str, campaign: Optional[str] = None, **fields) -> InboundUser:
    return InboundUser(platform=platform, email=email, campaign_name=campaign, **fields)


def make_event(platform: str, email: str, event_type: str, external_id: str,
               campaign: Optional[str] = None, **fields) -> InboundEvent:
    return InboundEvent(
        platform=platform,
        event_type=event_type,
        email=email,
        external_id=external_id,
        campaign_name=campaign,
        **fields
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_orchestrator(registry, tracker, dedup, user_store, sync_state):
    """Factory: orchestrator wired to the test DB and the given fake connectors."""

    def factory(connectors: Dict[str, FakeConnector], **kwargs) -> SyncOrchestrator:
        def connector_factory(platform, limiter, **_):
            return connectors[platform]

        options = dict(
            registry=registry,
            tracker=tracker,
            dedup=dedup,
            users=user_store,
            state=sync_state,
            limiters=RateLimiterRegistry(),
            notifier=Notifier(sinks=[]),
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0, max_delay=0),
            connector_factory=connector_factory,
            credentials={},
            known_platforms=list(connectors),
            batch_timeout=5,
            max_parallel=4,
        )
        options.update(kwargs)
        return SyncOrchestrator(**options)

    return factory
