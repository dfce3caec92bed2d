"""Tests for the sync coordinator."""

import asyncio
from datetime import timedelta

import pytest

from peelog.core.bus import EventsDidSync
from peelog.core.errors import ErrorKind
from peelog.core.schemas import SyncState, utcnow
from peelog.sync.coordinator import SyncPhase, SyncReason


class TestFullSync:
    @pytest.mark.asyncio
    async def test_merges_remote_set(self, sync, remote, event_store, cursors, signed_in, make_event, collector):
        synced = collector(EventsDidSync)
        remote.seed(signed_in.id, make_event(), make_event(hours_ago=3))

        result = await sync.initial_full_sync()

        assert result.ok
        assert result.merged.inserted == 2
        assert await event_store.count(signed_in.id) == 2
        assert (await cursors.get(signed_in.id)).last_full_sync_at is not None
        assert sync.status.value.phase is SyncPhase.SUCCEEDED
        assert synced[0].full is True

    @pytest.mark.asyncio
    async def test_uploads_pending_local_events(self, sync, remote, event_store, signed_in, make_event):
        local = await event_store.add(make_event(owner_id=signed_in.id))

        result = await sync.initial_full_sync()

        assert result.uploaded == 1
        assert local.id in remote.ids(signed_in.id)
        assert (await event_store.get(local.id)).sync_state is SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_pushes_pending_deletes(self, sync, remote, event_store, signed_in, make_event):
        event = make_event(owner_id=signed_in.id)
        remote.seed(signed_in.id, event)
        await sync.initial_full_sync()
        await event_store.delete(event.id)

        result = await sync.incremental_sync()

        assert result.deleted == 1
        assert event.id not in remote.ids(signed_in.id)
        assert await event_store.get(event.id) is None


class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_applies_remote_deletions(self, sync, remote, event_store, signed_in, make_event):
        event = make_event()
        remote.seed(signed_in.id, event)
        await sync.initial_full_sync()
        remote.remove(signed_in.id, event.id)

        result = await sync.incremental_sync()

        assert not result.full
        assert result.merged.removed == 1
        assert await event_store.count(signed_in.id) == 0

    @pytest.mark.asyncio
    async def test_without_cursor_falls_back_to_full(self, sync, remote, signed_in):
        result = await sync.incremental_sync()

        assert result.full
        assert remote.calls["fetch_full_event_set"] == 1


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_round_trip(self, sync, remote, signed_in):
        remote.gate = asyncio.Event()

        first = asyncio.create_task(sync.initial_full_sync())
        second = asyncio.create_task(sync.initial_full_sync())
        await asyncio.sleep(0)
        assert sync.is_syncing()
        remote.gate.set()
        results = await asyncio.gather(first, second)

        assert results[0] is results[1]
        assert remote.calls["fetch_full_event_set"] == 1

    @pytest.mark.asyncio
    async def test_full_request_runs_after_incremental(self, sync, remote, signed_in):
        remote.gate = asyncio.Event()

        incremental = asyncio.create_task(sync.incremental_sync(since=utcnow() - timedelta(hours=1)))
        await asyncio.sleep(0)
        full = asyncio.create_task(sync.initial_full_sync())
        await asyncio.sleep(0)
        remote.gate.set()
        first, second = await asyncio.gather(incremental, full)

        assert not first.full
        assert second.full and second.ok
        assert remote.calls["fetch_event_delta"] == 1
        assert remote.calls["fetch_full_event_set"] == 1

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_repeat(self, sync, remote, signed_in):
        assert (await sync.sync_if_needed(SyncReason.APP_LAUNCH)).full

        assert await sync.sync_if_needed(SyncReason.APP_FOREGROUND) is None
        assert remote.calls["fetch_event_delta"] == 0

    @pytest.mark.asyncio
    async def test_force_bypasses_cooldown(self, sync, remote, signed_in):
        await sync.sync_if_needed(SyncReason.APP_LAUNCH)

        result = await sync.sync_if_needed(SyncReason.PULL_TO_REFRESH, force=True)

        assert result.ok
        assert not result.full
        assert remote.calls["fetch_event_delta"] == 1

    @pytest.mark.asyncio
    async def test_cooldown_expires(self, sync, remote, cursors, signed_in):
        await cursors.record(signed_in.id, utcnow() - timedelta(minutes=5), full=True)

        result = await sync.sync_if_needed(SyncReason.CONNECTIVITY_RESTORED)

        assert result is not None
        assert remote.calls["fetch_event_delta"] == 1


class TestStaleResults:
    @pytest.mark.asyncio
    async def test_result_for_previous_identity_discarded(
        self, sync, remote, session, event_store, signed_in, other_account, make_event
    ):
        remote.seed(signed_in.id, make_event())
        remote.gate = asyncio.Event()

        task = asyncio.create_task(sync.initial_full_sync())
        await asyncio.sleep(0)
        await session.set_user(other_account)
        remote.gate.set()
        result = await task

        assert result.discarded
        assert await event_store.count(signed_in.id) == 0

    @pytest.mark.asyncio
    async def test_cancel_all(self, sync, remote, signed_in):
        remote.gate = asyncio.Event()
        sync.trigger(SyncReason.APP_LAUNCH)
        await asyncio.sleep(0.01)

        await sync.cancel_all()

        assert not sync.is_syncing()
        assert not sync.background_tasks


class TestSkips:
    @pytest.mark.asyncio
    async def test_guest_never_syncs(self, sync, remote, session, guest):
        await session.set_user(guest)

        result = await sync.initial_full_sync()

        assert result.skipped == "guest session"
        assert not remote.calls

    @pytest.mark.asyncio
    async def test_offline(self, sync, remote, connectivity, signed_in):
        await connectivity.report(False)

        result = await sync.initial_full_sync()

        assert result.skipped == "offline"
        assert not remote.calls

    @pytest.mark.asyncio
    async def test_user_turned_sync_off(self, sync, remote, session, signed_in):
        signed_in.preferences.sync_enabled = False

        result = await sync.initial_full_sync()

        assert result.skipped == "sync turned off by user"

    @pytest.mark.asyncio
    async def test_no_user(self, sync):
        result = await sync.sync_if_needed(SyncReason.APP_LAUNCH)
        assert result.skipped == "no active user"


class TestFailures:
    @pytest.mark.asyncio
    async def test_transport_failure_reported_not_raised(self, sync, remote, cursors, signed_in):
        remote.fail = True

        result = await sync.initial_full_sync()

        assert result.error.kind is ErrorKind.NETWORK_UNAVAILABLE
        assert sync.status.value.phase is SyncPhase.FAILED
        assert (await cursors.get(signed_in.id)).last_success_at is None

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, sync, remote, signed_in):
        remote.fail = True
        await sync.sync_if_needed(SyncReason.APP_LAUNCH)
        remote.fail = False

        result = await sync.sync_if_needed(SyncReason.CONNECTIVITY_RESTORED)

        assert result.ok


class TestImmediatePush:
    @pytest.mark.asyncio
    async def test_push_event(self, sync, remote, event_store, signed_in, make_event):
        event = await event_store.add(make_event(owner_id=signed_in.id))

        assert await sync.push_event(event)
        assert (await event_store.get(event.id)).sync_state is SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_push_failure_leaves_event_pending(self, sync, remote, event_store, signed_in, make_event):
        remote.fail = True
        event = await event_store.add(make_event(owner_id=signed_in.id))

        assert not await sync.push_event(event)
        assert (await event_store.get(event.id)).sync_state is SyncState.PENDING_UPLOAD

    @pytest.mark.asyncio
    async def test_push_deletion(self, sync, remote, event_store, signed_in, make_event):
        event = await event_store.add(make_event(owner_id=signed_in.id))
        await sync.push_event(event)
        await event_store.delete(event.id)

        assert await sync.push_deletion(event.id)
        assert await event_store.get(event.id) is None
        assert event.id not in remote.ids(signed_in.id)

    @pytest.mark.asyncio
    async def test_push_waits_for_running_full_sync(self, sync, remote, event_store, signed_in, make_event):
        remote.gate = asyncio.Event()
        event = await event_store.add(make_event(owner_id=signed_in.id))

        full = asyncio.create_task(sync.initial_full_sync())
        await asyncio.sleep(0.01)
        push = asyncio.create_task(sync.push_event(event))
        await asyncio.sleep(0.01)
        remote.gate.set()
        result, pushed = await asyncio.gather(full, push)

        assert result.uploaded == 1
        assert pushed
        assert remote.calls["upsert_events"] == 1
        assert (await event_store.get(event.id)).sync_state is SyncState.SYNCED
