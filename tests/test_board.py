"""Tests for the statistics board and staleness handling."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from peelog.analytics.aggregator import Metric
from peelog.analytics.board import MetricState, StatisticsBoard
from peelog.analytics.ranges import LAST_30_DAYS
from peelog.analytics.schemas import Interpretation, OverviewStats
from peelog.analytics.staleness import (
    OFFLINE_MESSAGE,
    ONLINE_MESSAGE,
    StalenessPolicy,
    StatusNotifier,
    ToastLimiter,
)
from peelog.core.bus import ConnectivityChanged, StatusToast
from peelog.core.schemas import DataSource


def _overview():
    return OverviewStats(
        total_events=3,
        this_week_events=3,
        average_daily=1.0,
        health_score=0.9,
        health_score_interpretation=Interpretation(label="Excellent"),
        active_days=3,
    )


@pytest_asyncio.fixture
async def board(aggregator, session, connectivity, sync, bus):
    board = StatisticsBoard(aggregator, session, connectivity, sync, StalenessPolicy(), bus)
    yield board
    await board.stop()


class TestRefresh:
    @pytest.mark.asyncio
    async def test_remote_value_is_verified(self, board, remote, signed_in):
        remote.analytics["fetch_overview"] = _overview()

        state = await board.refresh(Metric.OVERVIEW)

        assert state.source is DataSource.REMOTE
        assert not state.loading
        assert not state.is_unverified
        assert not board.staleness.is_stale(Metric.OVERVIEW.value, board.range.cache_key)

    @pytest.mark.asyncio
    async def test_local_value_is_unverified(self, board, connectivity, signed_in):
        await connectivity.report(False)

        await board.refresh(Metric.OVERVIEW)

        assert board.state(Metric.OVERVIEW).source is DataSource.LOCAL
        assert board.is_showing_unverified
        assert board.staleness.is_stale(Metric.OVERVIEW.value, board.range.cache_key)

    @pytest.mark.asyncio
    async def test_result_from_previous_session_discarded(self, board, remote, session, signed_in, other_account):
        remote.analytics["fetch_overview"] = _overview()
        remote.gate = asyncio.Event()

        task = asyncio.create_task(board.refresh(Metric.OVERVIEW))
        await asyncio.sleep(0)
        await session.set_user(other_account)
        remote.gate.set()
        await task

        assert board.discarded == 1
        assert board.state(Metric.OVERVIEW).value is None

    @pytest.mark.asyncio
    async def test_refresh_all_fills_every_metric(self, board, connectivity, signed_in):
        await connectivity.report(False)

        await board.refresh_all()

        assert all(board.state(m).value is not None for m in Metric)

    @pytest.mark.asyncio
    async def test_set_range_reloads(self, board, connectivity, signed_in):
        await connectivity.report(False)

        await board.set_range(LAST_30_DAYS)

        assert board.state(Metric.OVERVIEW).range_key == LAST_30_DAYS.cache_key
        assert board.state(Metric.WEEKLY).range_key == "weekly"

    @pytest.mark.asyncio
    async def test_refresh_stale_skips_fresh_metrics(self, board, remote, signed_in):
        remote.analytics["fetch_overview"] = _overview()
        await board.refresh(Metric.OVERVIEW)

        refreshed = await board.refresh_stale()

        assert refreshed == len(Metric) - 1


class TestManualRefresh:
    @pytest.mark.asyncio
    async def test_refused_offline(self, board, connectivity, signed_in):
        await connectivity.report(False)

        assert not board.can_manual_refresh
        assert not await board.manual_refresh()

    @pytest.mark.asyncio
    async def test_forces_sync_then_reloads(self, board, remote, cursors, signed_in):
        assert await board.manual_refresh()

        assert remote.calls["fetch_full_event_set"] == 1
        assert board.last_synced_at is not None
        assert board.state(Metric.OVERVIEW).value is not None


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_sign_out_clears_state(self, board, connectivity, session, signed_in):
        board.start()
        await connectivity.report(False)
        await board.refresh(Metric.OVERVIEW)

        await session.set_user(None)

        assert board.state(Metric.OVERVIEW) == MetricState()


class TestStalenessPolicy:
    def test_never_fetched_is_stale(self):
        assert StalenessPolicy().is_stale("overview", "last_7_days")

    def test_fresh_then_stale(self):
        policy = StalenessPolicy(timedelta(minutes=10))
        at = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)
        policy.record("overview", "last_7_days", at)

        assert not policy.is_stale("overview", "last_7_days", at + timedelta(minutes=9))
        assert policy.is_stale("overview", "last_7_days", at + timedelta(minutes=10))

    def test_foreground_refresh_only_online_and_stale(self):
        policy = StalenessPolicy(timedelta(minutes=10))
        at = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)
        policy.record("overview", "today", at)

        assert not policy.should_refresh_on_foreground(online=False, now=at + timedelta(hours=1))
        assert not policy.should_refresh_on_foreground(online=True, now=at + timedelta(minutes=1))
        assert policy.should_refresh_on_foreground(online=True, now=at + timedelta(minutes=11))

    def test_empty_policy_refreshes_when_online(self):
        assert StalenessPolicy().should_refresh_on_foreground(online=True)


class TestToasts:
    def test_limiter_one_per_interval(self):
        limiter = ToastLimiter(timedelta(seconds=3))
        at = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)

        assert limiter.allow(at)
        assert not limiter.allow(at + timedelta(seconds=1))
        assert limiter.allow(at + timedelta(seconds=3))

    @pytest.mark.asyncio
    async def test_notifier_rate_limits_flapping(self, bus, collector):
        toasts = collector(StatusToast)
        notifier = StatusNotifier(bus, ToastLimiter(timedelta(seconds=3)))
        notifier.start()
        at = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)

        await bus.publish(ConnectivityChanged(online=False, at=at))
        await bus.publish(ConnectivityChanged(online=True, at=at + timedelta(seconds=1)))
        await bus.publish(ConnectivityChanged(online=False, at=at + timedelta(seconds=5)))

        assert [t.message for t in toasts] == [OFFLINE_MESSAGE, OFFLINE_MESSAGE]
        assert notifier.suppressed == 1
        notifier.stop()

    @pytest.mark.asyncio
    async def test_online_message(self, bus, collector):
        toasts = collector(StatusToast)
        notifier = StatusNotifier(bus, ToastLimiter())
        notifier.start()

        await bus.publish(ConnectivityChanged(online=True))

        assert toasts == [StatusToast(message=ONLINE_MESSAGE, online=True)]
