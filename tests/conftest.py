"""Shared test fixtures for PeeLog."""

import asyncio
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio

from peelog.analytics.aggregator import AnalyticsAggregator
from peelog.analytics.calculator import AnalyticsCalculator
from peelog.auth.provider import AuthIdentity
from peelog.core.bus import EventBus
from peelog.core.config import AnalyticsConfig, ConnectivityConfig, SyncConfig
from peelog.core.errors import AuthError, AuthErrorKind, NetworkUnavailableError, ServerError
from peelog.core.schemas import AuthProvider, Event, Quality, SyncState, User, utcnow
from peelog.core.session import SessionContext
from peelog.network.connectivity import ConnectivityMonitor
from peelog.storage.database import Database
from peelog.storage.event_store import EventStore
from peelog.storage.sync_state import AnalyticsCache, SyncCursorStore
from peelog.storage.user_store import UserStore
from peelog.sync.coordinator import SyncCoordinator


class FakeRemote:
    """In-memory stand-in for RemoteService.

    ``fail`` makes every call raise a transport error, ``gate`` holds every
    call until it is set, and ``analytics`` maps metric method names to the
    value the service should answer with.
    """

    def __init__(self):
        self.store: dict[str, dict[str, Event]] = {}
        self.deleted: dict[str, list[str]] = {}
        self.calls: Counter = Counter()
        self.fail = False
        self.gate: asyncio.Event | None = None
        self.rejected: set[str] = set()
        self.analytics: dict[str, Any] = {}

    async def _enter(self, name: str) -> None:
        self.calls[name] += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise NetworkUnavailableError("Remote unreachable")

    def seed(self, user_id: str, *events: Event) -> None:
        bucket = self.store.setdefault(user_id, {})
        for event in events:
            bucket[event.id] = replace(event, owner_id=user_id, sync_state=SyncState.SYNCED)

    def remove(self, user_id: str, event_id: str) -> None:
        self.store.get(user_id, {}).pop(event_id, None)
        self.deleted.setdefault(user_id, []).append(event_id)

    def ids(self, user_id: str) -> set[str]:
        return set(self.store.get(user_id, {}))

    async def close(self) -> None:
        pass

    async def fetch_full_event_set(self, user_id: str) -> list[Event]:
        await self._enter("fetch_full_event_set")
        return list(self.store.get(user_id, {}).values())

    async def fetch_event_delta(self, user_id: str, since: datetime) -> tuple[list[Event], list[str]]:
        await self._enter("fetch_event_delta")
        changed = [e for e in self.store.get(user_id, {}).values() if e.updated_at > since]
        return changed, list(self.deleted.get(user_id, []))

    async def upsert_events(self, user_id: str, events: list[Event]) -> list[str]:
        await self._enter("upsert_events")
        accepted = [e for e in events if e.id not in self.rejected]
        self.seed(user_id, *accepted)
        return [e.id for e in accepted]

    async def delete_events(self, user_id: str, event_ids: list[str]) -> list[str]:
        await self._enter("delete_events")
        for event_id in event_ids:
            self.store.get(user_id, {}).pop(event_id, None)
        return list(event_ids)

    async def _answer(self, name: str) -> Any:
        await self._enter(name)
        if name not in self.analytics:
            raise ServerError(f"No canned answer for {name}")
        return self.analytics[name]

    async def fetch_overview(self, user_id: str, body: dict) -> Any:
        return await self._answer("fetch_overview")

    async def fetch_quality_trends(self, user_id: str, body: dict) -> Any:
        return await self._answer("fetch_quality_trends")

    async def fetch_hourly(self, user_id: str, body: dict) -> Any:
        return await self._answer("fetch_hourly")

    async def fetch_quality_distribution(self, user_id: str, body: dict) -> Any:
        return await self._answer("fetch_quality_distribution")

    async def fetch_weekly(self, user_id: str, body: dict) -> Any:
        return await self._answer("fetch_weekly")

    async def fetch_insights(self, user_id: str, body: dict) -> Any:
        return await self._answer("fetch_insights")


class FakeAuthProvider:
    """In-memory auth provider with email/password accounts."""

    def __init__(self):
        self.accounts: dict[str, tuple[str, AuthIdentity]] = {}
        self.identity: AuthIdentity | None = None
        self.error: Exception | None = None
        self.unavailable = False
        self.sign_in_calls = 0

    def add_account(self, email: str, password: str, uid: str, display_name: str | None = None) -> AuthIdentity:
        identity = AuthIdentity(
            uid=uid, provider=AuthProvider.EMAIL, email=email, display_name=display_name, token=f"tok-{uid}"
        )
        self.accounts[email] = (password, identity)
        return identity

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    async def sign_in(self, email: str, password: str) -> AuthIdentity:
        self.sign_in_calls += 1
        if self.error is not None:
            raise self.error
        account = self.accounts.get(email)
        if account is None or account[0] != password:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)
        self.identity = account[1]
        return self.identity

    async def register(self, email: str, password: str, display_name: str | None) -> AuthIdentity:
        if self.error is not None:
            raise self.error
        if email in self.accounts:
            raise AuthError(AuthErrorKind.WEAK_INPUT, "An account with this email already exists")
        identity = self.add_account(email, password, f"uid-{len(self.accounts) + 1}", display_name)
        self.identity = identity
        return identity

    async def sign_out(self) -> None:
        self.identity = None

    async def delete_account(self) -> None:
        if self.error is not None:
            raise self.error
        self.identity = None

    async def current_identity(self) -> AuthIdentity | None:
        if self.unavailable:
            raise NetworkUnavailableError("Auth service unreachable")
        return self.identity

    async def id_token(self) -> str | None:
        return self.identity.token if self.identity else None


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_event():
    """Factory for events logged ``hours_ago`` before ``at`` (default: now)."""

    def _make(
        quality: Quality = Quality.PALE_YELLOW,
        hours_ago: float = 1,
        owner_id: str | None = None,
        at: datetime | None = None,
        **kwargs,
    ) -> Event:
        reference = at or utcnow()
        return Event.create(
            quality,
            timestamp=reference - timedelta(hours=hours_ago),
            owner_id=owner_id,
            now=reference,
            **kwargs,
        )

    return _make


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def session(bus):
    return SessionContext(bus)


@pytest.fixture
def connectivity(bus):
    """Monitor that is never started; tests drive it with ``report()``."""
    return ConnectivityMonitor(ConnectivityConfig(), bus)


@pytest.fixture
def event_store(db):
    return EventStore(db)


@pytest.fixture
def user_store(db):
    return UserStore(db)


@pytest.fixture
def cursors(db):
    return SyncCursorStore(db)


@pytest.fixture
def analytics_cache(db):
    return AnalyticsCache(db)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def auth_provider():
    return FakeAuthProvider()


@pytest_asyncio.fixture
async def sync(event_store, cursors, remote, session, bus, connectivity):
    coordinator = SyncCoordinator(event_store, cursors, remote, session, bus, connectivity, SyncConfig())
    yield coordinator
    await coordinator.cancel_all()


@pytest.fixture
def aggregator(remote, analytics_cache, event_store, session, connectivity, bus):
    return AnalyticsAggregator(
        remote,
        analytics_cache,
        event_store,
        session,
        connectivity,
        AnalyticsCalculator(timezone.utc),
        bus,
        AnalyticsConfig(),
    )


@pytest.fixture
def account():
    return User(id="user-1", auth_provider=AuthProvider.EMAIL, email="ana@example.com", display_name="Ana")


@pytest.fixture
def other_account():
    return User(id="user-2", auth_provider=AuthProvider.EMAIL, email="ben@example.com", display_name="Ben")


@pytest.fixture
def guest():
    return User.create_guest()


@pytest_asyncio.fixture
async def signed_in(session, user_store, account):
    await user_store.save(account)
    await session.set_user(account)
    return account


@pytest.fixture
def collector(bus):
    """Subscribe a list to an event type and return it."""

    def _collect(event_type: type) -> list:
        received: list = []
        bus.subscribe(event_type, received.append)
        return received

    return _collect
