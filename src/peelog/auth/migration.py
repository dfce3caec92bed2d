"""Guest-to-account migration of locally stored events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from peelog.core.bus import EventBus, EventsDidSync, Observable
from peelog.core.errors import MigrationError, PeeLogError
from peelog.core.schemas import MigrationState, User
from peelog.core.session import SessionContext
from peelog.network.remote import RemoteService
from peelog.storage.event_store import EventStore
from peelog.storage.user_store import UserStore
from peelog.sync.coordinator import SyncCoordinator, SyncReason

logger = logging.getLogger(__name__)

SKIP_KEY_PREFIX = "migration_skipped:"


class MigrationStatus(str, Enum):
    IDLE = "idle"
    REASSIGNING = "reassigning"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class MigrationReport:
    guest_id: str
    target_id: str
    status: MigrationStatus
    reassigned: int = 0
    uploaded: int = 0
    remaining: int = 0
    error: str | None = None
    retryable: bool = False


class GuestMigrationController:
    """Moves guest-owned (or unowned) events to a newly signed-in account.

    Progress is tracked per event through ``migration_state``, so a run that
    fails halfway can simply be repeated: reassignment only touches events
    still held by the guest, upload only touches events in ``reassigned``.
    Running it again after completion changes nothing.
    """

    def __init__(
        self,
        events: EventStore,
        users: UserStore,
        remote: RemoteService,
        sync: SyncCoordinator,
        session: SessionContext,
        bus: EventBus,
        batch_size: int = 200,
    ):
        self.events = events
        self.users = users
        self.remote = remote
        self.sync = sync
        self.session = session
        self.bus = bus
        self.batch_size = batch_size
        self.status: Observable[MigrationStatus] = Observable(MigrationStatus.IDLE)
        self.last_report: MigrationReport | None = None

    async def has_guest_data(self, guest_id: str) -> bool:
        return bool(await self.events.guest_events(guest_id))

    async def was_skipped(self, guest_id: str) -> bool:
        return await self.users.db.get_config(f"{SKIP_KEY_PREFIX}{guest_id}") is not None

    async def _finish(self, report: MigrationReport) -> MigrationReport:
        self.last_report = report
        await self.status.set(report.status)
        return report

    async def _failed(self, report: MigrationReport, message: str, retryable: bool) -> MigrationError:
        report.status = MigrationStatus.FAILED
        report.error = message
        report.retryable = retryable
        report.remaining = len(await self.events.migrated_events(report.target_id, MigrationState.REASSIGNED))
        await self._finish(report)
        logger.error(f"Guest migration {report.guest_id} -> {report.target_id} failed: {message}")
        return MigrationError(message, retryable=retryable)

    async def migrate(self, guest: User, target: User) -> MigrationReport:
        """Reassign then upload the guest's events.

        Raises:
            MigrationError: When a step fails; ``retryable`` says whether
                calling ``migrate`` again can resume the work.
        """
        report = MigrationReport(guest_id=guest.id, target_id=target.id, status=MigrationStatus.REASSIGNING)
        if target.is_guest:
            raise await self._failed(report, "Cannot migrate into another guest account", retryable=False)
        if self.session.active_user_id != target.id:
            raise await self._failed(report, "Target account is no longer signed in", retryable=False)

        await self.status.set(MigrationStatus.REASSIGNING)
        try:
            candidates = await self.events.guest_events(guest.id)
            report.reassigned = await self.events.reassign_owner([e.id for e in candidates], target.id, guest.id)
        except PeeLogError as e:
            raise await self._failed(report, f"Could not reassign events: {e.message}", retryable=True) from e
        logger.info(f"Reassigned {report.reassigned} guest events to {target.id}")

        report.status = MigrationStatus.UPLOADING
        await self.status.set(MigrationStatus.UPLOADING)
        token = self.session.token()
        while True:
            pending = await self.events.migrated_events(target.id, MigrationState.REASSIGNED)
            if not pending:
                break
            if not self.session.is_current(token):
                raise await self._failed(report, "Session changed during migration", retryable=True)

            batch = pending[: self.batch_size]
            async with self.sync.exclusive(target.id):
                try:
                    accepted = await self.remote.upsert_events(target.id, batch)
                except PeeLogError as e:
                    raise await self._failed(report, f"Upload failed: {e.user_message}", retryable=True) from e
                if accepted:
                    await self.events.mark_synced(accepted)
                    report.uploaded += await self.events.set_migration_state(accepted, MigrationState.UPLOADED)
            if not accepted:
                raise await self._failed(report, "Server accepted none of the migrated events", retryable=True)

        if await self.users.get(guest.id) is not None:
            await self.users.delete(guest.id)
        await self.users.db.delete_config(f"{SKIP_KEY_PREFIX}{guest.id}")

        report.status = MigrationStatus.COMPLETED
        await self._finish(report)
        if report.uploaded:
            await self.bus.publish(EventsDidSync(user_id=target.id, full=False, uploaded=report.uploaded))
        self.sync.trigger_full_sync(SyncReason.AUTH_RESOLVED)
        logger.info(f"Guest migration complete: {report.uploaded} events uploaded to {target.id}")
        return report

    async def skip(self, guest: User, target: User) -> MigrationReport:
        """Leave the guest's events local and unowned by the new account."""
        await self.users.db.set_config(f"{SKIP_KEY_PREFIX}{guest.id}", target.id)
        report = MigrationReport(
            guest_id=guest.id,
            target_id=target.id,
            status=MigrationStatus.SKIPPED,
            remaining=len(await self.events.guest_events(guest.id)),
        )
        logger.info(f"Guest migration skipped; {report.remaining} events stay with {guest.id}")
        return await self._finish(report)
