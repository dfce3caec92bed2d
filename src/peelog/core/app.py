"""Application runtime wiring every component together."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from peelog.ai.insights_client import AIInsightClient
from peelog.analytics.aggregator import AnalyticsAggregator
from peelog.analytics.board import StatisticsBoard
from peelog.analytics.calculator import AnalyticsCalculator
from peelog.analytics.staleness import StalenessPolicy, StatusNotifier, ToastLimiter
from peelog.auth.migration import GuestMigrationController, MigrationReport
from peelog.auth.provider import AuthProviderClient, HttpAuthProvider
from peelog.auth.session_controller import AuthSessionController
from peelog.core.bus import (
    ConnectivityChanged,
    DataCorruptionDetected,
    EventBus,
    IdentityChanged,
    Subscription,
)
from peelog.core.config import Config, get_config
from peelog.core.errors import InvalidInputError, NotFoundError, PermissionDeniedError
from peelog.core.schemas import AuthProvider, Event, Quality, SyncState, User
from peelog.core.session import SessionContext
from peelog.network.connectivity import ConnectivityMonitor
from peelog.network.remote import RemoteService
from peelog.storage.database import Database
from peelog.storage.event_store import EventStore
from peelog.storage.sync_state import AnalyticsCache, SyncCursorStore
from peelog.storage.user_store import UserStore
from peelog.sync.coordinator import SyncCoordinator, SyncReason

logger = logging.getLogger(__name__)


class PeeLogApp:
    """Owns the lifecycle of every component for one process.

    Components are built in ``start()`` and torn down in ``stop()``. The
    auth provider and remote service can be injected for tests or for
    alternative backends.
    """

    def __init__(
        self,
        config: Config | None = None,
        auth_provider: AuthProviderClient | None = None,
        remote: RemoteService | None = None,
        monitor_connectivity: bool = True,
    ):
        self.config = config or get_config()
        self.monitor_connectivity = monitor_connectivity
        self._running = False
        self._startup_time: datetime | None = None

        self.bus = EventBus()
        self.session = SessionContext(self.bus)

        # Built in start()
        self.db: Database | None = None
        self.events: EventStore | None = None
        self.users: UserStore | None = None
        self.cursors: SyncCursorStore | None = None
        self.analytics_cache: AnalyticsCache | None = None
        self.connectivity: ConnectivityMonitor | None = None
        self.auth_provider: AuthProviderClient | None = auth_provider
        self.remote: RemoteService | None = remote
        self.sync: SyncCoordinator | None = None
        self.auth: AuthSessionController | None = None
        self.migration: GuestMigrationController | None = None
        self.aggregator: AnalyticsAggregator | None = None
        self.board: StatisticsBoard | None = None
        self.staleness: StalenessPolicy | None = None
        self.notifier: StatusNotifier | None = None
        self.ai: AIInsightClient | None = None

        self._owned_clients: list[Any] = []
        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Open storage, build components, resolve auth and kick off the launch sync."""
        if self._running:
            logger.warning("PeeLog already running")
            return

        logger.info("Starting PeeLog...")
        try:
            self.config.ensure_directories()
            self.db = Database(self.config.db_path)
            await self.db.connect()
            self._build()

            if self.monitor_connectivity:
                await self.connectivity.check_now()
                await self.connectivity.start()
            self.notifier.start()
            self.board.start()
            self._subscriptions = [
                self.bus.subscribe(ConnectivityChanged, self._on_connectivity_changed),
                self.bus.subscribe(IdentityChanged, self._on_identity_changed),
                self.bus.subscribe(DataCorruptionDetected, self._on_data_corruption),
            ]
            if not await self.db.check_integrity():
                await self.bus.publish(
                    DataCorruptionDetected(component="database", detail="SQLite integrity check failed")
                )

            state = await self.auth.start()
            logger.info(f"Auth resolved: {state.status.value}")

            self._running = True
            self._startup_time = datetime.now()
            self._spawn(self.sync.sync_if_needed(SyncReason.APP_LAUNCH), "launch-sync")
            if self.connectivity.is_online:
                self._spawn(self.aggregator.prewarm(), "prewarm")
            logger.info("PeeLog started")
        except Exception as e:
            logger.error(f"Failed to start PeeLog: {e}")
            await self.stop()
            raise

    def _build(self) -> None:
        cfg = self.config
        self.events = EventStore(self.db)
        self.users = UserStore(self.db)
        self.cursors = SyncCursorStore(self.db)
        self.analytics_cache = AnalyticsCache(self.db)
        self.connectivity = ConnectivityMonitor(cfg.connectivity, self.bus)

        if self.auth_provider is None:
            provider = HttpAuthProvider(cfg.remote, self.db)
            self._owned_clients.append(provider)
            self.auth_provider = provider
        if self.remote is None:
            self.remote = RemoteService(cfg.remote, token_provider=self.auth_provider.id_token)
            self._owned_clients.append(self.remote)

        self.sync = SyncCoordinator(
            self.events, self.cursors, self.remote, self.session, self.bus, self.connectivity, cfg.sync
        )
        self.auth = AuthSessionController(
            self.auth_provider,
            self.users,
            self.events,
            self.cursors,
            self.analytics_cache,
            self.session,
            self.bus,
            sync=self.sync,
        )
        self.migration = GuestMigrationController(
            self.events,
            self.users,
            self.remote,
            self.sync,
            self.session,
            self.bus,
            batch_size=cfg.sync.upload_batch_size,
        )
        self.aggregator = AnalyticsAggregator(
            self.remote,
            self.analytics_cache,
            self.events,
            self.session,
            self.connectivity,
            AnalyticsCalculator(cfg.tz, cfg.analytics.min_active_days),
            self.bus,
            cfg.analytics,
            cfg.remote,
        )
        self.staleness = StalenessPolicy(timedelta(minutes=cfg.analytics.freshness_minutes))
        self.notifier = StatusNotifier(
            self.bus, ToastLimiter(timedelta(seconds=cfg.notifications.toast_interval_seconds))
        )
        self.board = StatisticsBoard(
            self.aggregator, self.session, self.connectivity, self.sync, self.staleness, self.bus
        )
        self.ai = AIInsightClient(
            cfg.remote,
            cfg.ai,
            self.db,
            self.session,
            self.connectivity,
            token_provider=self.auth_provider.id_token,
        )
        self._owned_clients.append(self.ai)

    async def stop(self) -> None:
        """Cancel background work and release network and storage resources."""
        if not self._running and self.db is None:
            return

        logger.info("Stopping PeeLog...")
        self._running = False

        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if self.board:
            await self.board.stop()
        if self.notifier:
            self.notifier.stop()
        if self.sync:
            await self.sync.cancel_all()
        if self.connectivity:
            await self.connectivity.stop()

        for client in self._owned_clients:
            await client.close()
        self._owned_clients.clear()

        if self.db:
            await self.db.close()
            self.db = None

        logger.info("PeeLog stopped")

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}")

    async def wait_idle(self) -> None:
        """Wait for spawned background work (used by one-shot CLI commands)."""
        while True:
            pending = [t for t in self._tasks if not t.done()] + list(self.sync.background_tasks)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # Event wiring

    async def _on_connectivity_changed(self, event: ConnectivityChanged) -> None:
        if not event.online:
            logger.info("Offline: statistics will come from cache or the local log")
            return
        self.sync.trigger(SyncReason.CONNECTIVITY_RESTORED)
        if self.staleness.should_refresh_on_foreground(online=True):
            self._spawn(self.board.refresh_stale(), "refresh-after-reconnect")

    async def _on_identity_changed(self, event: IdentityChanged) -> None:
        # Work started for the previous identity must not outlive it
        await self.sync.cancel_all()

    async def _on_data_corruption(self, event: DataCorruptionDetected) -> None:
        logger.critical(
            f"Local data corruption in {event.component}: {event.detail}. "
            "Restart the app; if it persists, export what you can and reset local data."
        )

    async def on_foreground(self) -> None:
        """App returned to the foreground: cooldown-gated sync plus stale-only refresh."""
        self.sync.trigger(SyncReason.APP_FOREGROUND)
        if self.staleness.should_refresh_on_foreground(self.connectivity.is_online):
            self._spawn(self.board.refresh_stale(), "foreground-refresh")

    # User actions

    async def log_event(
        self,
        quality: Quality,
        timestamp: datetime | None = None,
        notes: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        location_name: str | None = None,
    ) -> Event:
        """Record an event for the active user and push it in the background."""
        event = Event.create(
            quality,
            timestamp=timestamp,
            notes=notes,
            latitude=latitude,
            longitude=longitude,
            location_name=location_name,
            owner_id=self.session.active_user_id,
        )
        await self.events.add(event)
        logger.info(f"Logged {quality.value} event {event.id}")
        self._spawn(self.sync.push_event(event), f"push:{event.id}")
        return event

    async def delete_event(self, event_id: str) -> Event:
        event = await self.events.get(event_id)
        if event is None or event.sync_state is SyncState.PENDING_DELETE:
            raise NotFoundError(f"No event {event_id}")
        if event.owner_id != self.session.active_user_id:
            raise PermissionDeniedError("That event belongs to another account")

        await self.events.delete(event_id)
        if event.sync_state is SyncState.SYNCED:
            self._spawn(self.sync.push_deletion(event_id), f"delete:{event_id}")
        logger.info(f"Deleted event {event_id}")
        return event

    async def _migration_parties(self) -> tuple[User, User]:
        target = self.session.user
        if target is None or target.is_guest:
            raise InvalidInputError("Sign in to an account before migrating guest data")

        offer = self.auth.pending_migration
        if offer is not None and offer.target_user_id == target.id:
            guest = await self.users.get(offer.guest_id)
            return guest or User(id=offer.guest_id, auth_provider=AuthProvider.GUEST), target

        # The offer lives in memory only; a later process finds the guest again
        guest = await self.users.most_recent(AuthProvider.GUEST)
        if guest is None or not await self.migration.has_guest_data(guest.id):
            raise InvalidInputError("No guest data is waiting to be migrated")
        return guest, target

    async def migrate_guest_data(self) -> MigrationReport:
        guest, target = await self._migration_parties()
        report = await self.migration.migrate(guest, target)
        self.auth.clear_pending_migration()
        return report

    async def skip_guest_migration(self) -> MigrationReport:
        guest, target = await self._migration_parties()
        report = await self.migration.skip(guest, target)
        self.auth.clear_pending_migration()
        return report
