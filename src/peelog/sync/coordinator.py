"""Full and incremental synchronization between the local log and the remote store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from peelog.core.bus import DataCorruptionDetected, EventBus, EventsDidSync, Observable
from peelog.core.config import SyncConfig
from peelog.core.errors import DataCorruptionError, PeeLogError, classify_exception
from peelog.core.schemas import Event, SyncState, User, utcnow
from peelog.core.session import SessionContext, SessionToken
from peelog.network.connectivity import ConnectivityMonitor
from peelog.network.remote import RemoteService
from peelog.storage.event_store import EventStore, MergeResult
from peelog.storage.sync_state import SyncCursorStore

logger = logging.getLogger(__name__)


class SyncReason(str, Enum):
    APP_LAUNCH = "app_launch"
    AUTH_RESOLVED = "auth_resolved"
    PULL_TO_REFRESH = "pull_to_refresh"
    CONNECTIVITY_RESTORED = "connectivity_restored"
    APP_FOREGROUND = "app_foreground"
    MANUAL = "manual"


class SyncPhase(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Outcome of one sync attempt, shared by every caller that joined it."""

    user_id: str | None
    full: bool
    merged: MergeResult = field(default_factory=MergeResult)
    uploaded: int = 0
    deleted: int = 0
    skipped: str | None = None
    discarded: bool = False
    error: PeeLogError | None = None

    @property
    def ok(self) -> bool:
        return self.skipped is None and not self.discarded and self.error is None


@dataclass(frozen=True)
class SyncStatus:
    phase: SyncPhase = SyncPhase.IDLE
    last_synced_at: datetime | None = None
    last_error: str | None = None


class SyncCoordinator:
    """Reconciles the local event log with the remote authoritative store.

    At most one sync runs per user: callers arriving while one is in flight
    await the same task and receive the same ``SyncResult``. Transport
    failures are logged and reported in ``status``; the next trigger retries.
    """

    def __init__(
        self,
        events: EventStore,
        cursors: SyncCursorStore,
        remote: RemoteService,
        session: SessionContext,
        bus: EventBus,
        connectivity: ConnectivityMonitor,
        config: SyncConfig,
    ):
        self.events = events
        self.cursors = cursors
        self.remote = remote
        self.session = session
        self.bus = bus
        self.connectivity = connectivity
        self.config = config
        self.status: Observable[SyncStatus] = Observable(SyncStatus())

        self._inflight: dict[str, asyncio.Task[SyncResult]] = {}
        self._full_tasks: set[asyncio.Task[SyncResult]] = set()
        self._background: set[asyncio.Task] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def cooldown(self) -> timedelta:
        return timedelta(seconds=self.config.cooldown_seconds)

    def exclusive(self, user_id: str) -> asyncio.Lock:
        """Held while a sync merges a remote snapshot into ``user_id``'s log.

        Any other writer that marks rows synced or finalizes deletions for
        that user takes it too, so a full merge never sees half of a push.
        """
        return self._locks.setdefault(user_id, asyncio.Lock())

    @property
    def background_tasks(self) -> set[asyncio.Task]:
        return {t for t in self._background if not t.done()}

    def is_syncing(self, user_id: str | None = None) -> bool:
        user_id = user_id or self.session.active_user_id
        task = self._inflight.get(user_id) if user_id else None
        return task is not None and not task.done()

    def _skip_reason(self, user: User | None) -> str | None:
        if not self.config.enabled:
            return "sync disabled"
        if user is None:
            return "no active user"
        if user.is_guest:
            return "guest session"
        if not user.preferences.sync_enabled:
            return "sync turned off by user"
        if not self.connectivity.is_online:
            return "offline"
        return None

    # Entry points

    async def initial_full_sync(self) -> SyncResult:
        """Fetch the entire remote set for the active user and merge it.

        Joins a full sync already in flight. A running incremental sync is
        allowed to finish first, then the full fetch runs.
        """
        return await self._run(full=True, since=None)

    async def incremental_sync(self, since: datetime | None = None) -> SyncResult:
        """Fetch remote changes after ``since``; falls back to a full sync without one."""
        user_id = self.session.active_user_id
        if since is None and user_id is not None:
            since = (await self.cursors.get(user_id)).last_success_at
        if since is None:
            return await self._run(full=True, since=None)
        return await self._run(full=False, since=since)

    async def sync_if_needed(self, reason: SyncReason, force: bool = False) -> SyncResult | None:
        """Sync unless a successful sync finished within the cooldown.

        Full when the user has never synced, incremental otherwise. Returns
        None when the cooldown suppressed the attempt.
        """
        user_id = self.session.active_user_id
        if user_id is None:
            return SyncResult(user_id=None, full=False, skipped="no active user")

        cursor = await self.cursors.get(user_id)
        last = cursor.last_success_at
        if not force and last is not None and utcnow() - last < self.cooldown:
            logger.debug(f"Sync skipped (cooldown) reason={reason.value}")
            return None

        if last is None:
            logger.info(f"Full sync reason={reason.value}")
            return await self._run(full=True, since=None)
        logger.info(f"Incremental sync reason={reason.value}")
        return await self._run(full=False, since=last)

    def trigger(self, reason: SyncReason, force: bool = False) -> asyncio.Task:
        """Fire-and-forget ``sync_if_needed``; failures are logged only."""
        return self._spawn(self.sync_if_needed(reason, force=force), f"sync:{reason.value}")

    def trigger_full_sync(self, reason: SyncReason) -> asyncio.Task:
        logger.info(f"Forced full sync reason={reason.value}")
        return self._spawn(self.initial_full_sync(), f"full-sync:{reason.value}")

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background {task.get_name()} failed: {exc}")

    # Immediate single-event pushes (best effort)

    async def push_event(self, event: Event) -> bool:
        """Upload one freshly logged event; on failure it stays pending for the next sync."""
        user = self.session.user
        if self._skip_reason(user) or event.owner_id != user.id:
            return False
        try:
            async with self.exclusive(user.id):
                current = await self.events.get(event.id)
                if current is None or current.sync_state is not SyncState.PENDING_UPLOAD:
                    # A sync that ran first already uploaded (or the user deleted) it
                    return current is not None and current.sync_state is SyncState.SYNCED
                accepted = await self.remote.upsert_events(user.id, [current])
                await self.events.mark_synced(accepted)
            await self.bus.publish(EventsDidSync(user_id=user.id, full=False, uploaded=len(accepted)))
            return event.id in accepted
        except PeeLogError as e:
            logger.warning(f"Upload of event {event.id} deferred: {e.message}")
            return False

    async def push_deletion(self, event_id: str) -> bool:
        """Propagate one deletion; on failure the tombstone waits for the next sync."""
        user = self.session.user
        if self._skip_reason(user):
            return False
        try:
            async with self.exclusive(user.id):
                if await self.events.get(event_id) is None:
                    return True
                accepted = await self.remote.delete_events(user.id, [event_id])
                await self.events.finalize_deletes(accepted)
            await self.bus.publish(EventsDidSync(user_id=user.id, full=False, deleted=len(accepted)))
            return event_id in accepted
        except PeeLogError as e:
            logger.warning(f"Deletion of event {event_id} deferred: {e.message}")
            return False

    async def sync_before_sign_out(self) -> bool:
        """Push pending uploads and deletions before the session ends."""
        user = self.session.user
        if self._skip_reason(user):
            return False
        token = self.session.token()
        try:
            async with self.exclusive(user.id):
                await self._upload_pending(user.id, token)
                await self._push_deletes(user.id, token)
            return True
        except PeeLogError as e:
            logger.warning(f"Pre-sign-out push failed, pending changes stay local: {e.message}")
            return False

    async def cancel_all(self) -> None:
        """Cancel in-flight and background syncs (identity change or shutdown)."""
        tasks = [t for t in [*self._inflight.values(), *self._background] if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} sync task(s)")
        self._inflight.clear()
        self._full_tasks.clear()

    # Core

    async def _run(self, full: bool, since: datetime | None) -> SyncResult:
        user = self.session.user
        reason = self._skip_reason(user)
        if reason:
            logger.debug(f"Sync skipped: {reason}")
            return SyncResult(user_id=user.id if user else None, full=full, skipped=reason)

        task = self._inflight.get(user.id)
        if full and task is not None and not task.done() and task not in self._full_tasks:
            # An incremental pass cannot stand in for a full one: run the full pass after it
            logger.debug(f"Full sync for {user.id} queued behind in-flight incremental")
            await asyncio.wait({task})
            return await self._run(full=True, since=None)

        if task is None or task.done():
            task = asyncio.create_task(self._perform_exclusive(user, self.session.token(), full, since))
            self._inflight[user.id] = task
            if full:
                self._full_tasks.add(task)
            task.add_done_callback(lambda t, uid=user.id: self._release(uid, t))
        else:
            logger.debug(f"Joining in-flight sync for {user.id}")

        # Shield so one caller giving up does not cancel the sync for the others
        return await asyncio.shield(task)

    def _release(self, user_id: str, task: asyncio.Task) -> None:
        self._full_tasks.discard(task)
        if self._inflight.get(user_id) is task:
            del self._inflight[user_id]

    async def _perform_exclusive(
        self, user: User, token: SessionToken, full: bool, since: datetime | None
    ) -> SyncResult:
        async with self.exclusive(user.id):
            return await self._perform(user, token, full, since)

    async def _perform(self, user: User, token: SessionToken, full: bool, since: datetime | None) -> SyncResult:
        started = utcnow()
        result = SyncResult(user_id=user.id, full=full)
        await self.status.set(SyncStatus(SyncPhase.SYNCING, self.status.value.last_synced_at))

        try:
            if full:
                remote_events = await self.remote.fetch_full_event_set(user.id)
                deleted: list[str] = []
            else:
                remote_events, deleted = await self.remote.fetch_event_delta(user.id, since)

            if not self.session.is_current(token):
                logger.info(f"Discarding sync result for {user.id}: session changed")
                result.discarded = True
                await self.status.set(SyncStatus(SyncPhase.IDLE, self.status.value.last_synced_at))
                return result

            result.merged = await self.events.merge_remote(user.id, remote_events, deleted, authoritative=full)
            result.uploaded = await self._upload_pending(user.id, token)
            result.deleted = await self._push_deletes(user.id, token)

            cursor = await self.cursors.record(user.id, started, full)
            await self.bus.publish(
                EventsDidSync(
                    user_id=user.id,
                    full=full,
                    merged=result.merged.changed,
                    uploaded=result.uploaded,
                    deleted=result.deleted,
                )
            )
            await self.status.set(SyncStatus(SyncPhase.SUCCEEDED, cursor.last_success_at))
            logger.info(
                f"{'Full' if full else 'Incremental'} sync done for {user.id}: "
                f"{result.merged.changed} merged, {result.uploaded} uploaded, {result.deleted} deleted"
            )
            return result

        except asyncio.CancelledError:
            logger.info(f"Sync for {user.id} cancelled")
            await self.status.set(SyncStatus(SyncPhase.IDLE, self.status.value.last_synced_at))
            raise
        except Exception as e:
            error = classify_exception(e)
            if isinstance(error, DataCorruptionError):
                logger.error(f"Local data corruption during sync: {error.message}")
                await self.bus.publish(DataCorruptionDetected(component="sync", detail=error.message))
                await self.status.set(SyncStatus(SyncPhase.FAILED, self.status.value.last_synced_at, error.message))
                raise error from e
            logger.warning(f"Sync failed for {user.id} ({error.kind.value}): {error.message}")
            result.error = error
            await self.status.set(SyncStatus(SyncPhase.FAILED, self.status.value.last_synced_at, error.user_message))
            return result

    async def _upload_pending(self, user_id: str, token: SessionToken) -> int:
        uploaded = 0
        batch_size = self.config.upload_batch_size
        while self.session.is_current(token):
            batch = await self.events.pending_uploads(user_id, limit=batch_size)
            if not batch:
                break
            accepted = await self.remote.upsert_events(user_id, batch)
            uploaded += await self.events.mark_synced(accepted)
            if not accepted or len(batch) < batch_size:
                break
        return uploaded

    async def _push_deletes(self, user_id: str, token: SessionToken) -> int:
        if not self.session.is_current(token):
            return 0
        ids = await self.events.pending_deletes(user_id)
        if not ids:
            return 0
        accepted = await self.remote.delete_events(user_id, ids)
        return await self.events.finalize_deletes(accepted)
