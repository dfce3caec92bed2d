"""Observable statistics state for a UI (or the CLI) to bind to."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from peelog.analytics.aggregator import WEEKLY_CACHE_KEY, AnalyticsAggregator, Metric
from peelog.analytics.ranges import LAST_7_DAYS, AnalyticsRange
from peelog.analytics.staleness import StalenessPolicy
from peelog.core.bus import (
    EventBus,
    EventsDidSync,
    EventStoreDidReset,
    EventStoreWillReset,
    IdentityChanged,
    Observable,
    Subscription,
)
from peelog.core.errors import PeeLogError
from peelog.core.schemas import DataSource
from peelog.core.session import SessionContext
from peelog.network.connectivity import ConnectivityMonitor
from peelog.sync.coordinator import SyncCoordinator, SyncReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricState:
    """Value, provenance and loading flag of one metric."""

    value: Any = None
    source: DataSource | None = None
    loading: bool = False
    range_key: str | None = None
    fetched_at: datetime | None = None
    error: str | None = None

    @property
    def is_unverified(self) -> bool:
        return self.value is not None and self.source is not DataSource.REMOTE


class StatisticsBoard:
    """Keeps one ``MetricState`` observable per metric for the selected range.

    Results computed for a previous session generation are dropped on
    arrival, so a slow fetch for a signed-out user never overwrites the new
    user's numbers.
    """

    def __init__(
        self,
        aggregator: AnalyticsAggregator,
        session: SessionContext,
        connectivity: ConnectivityMonitor,
        sync: SyncCoordinator,
        staleness: StalenessPolicy,
        bus: EventBus,
        rng: AnalyticsRange = LAST_7_DAYS,
    ):
        self.aggregator = aggregator
        self.session = session
        self.connectivity = connectivity
        self.sync = sync
        self.staleness = staleness
        self.bus = bus
        self.range = rng
        self.metrics: dict[Metric, Observable[MetricState]] = {m: Observable(MetricState()) for m in Metric}
        self.discarded = 0

        self._subscriptions: list[Subscription] = []
        self._background: set[asyncio.Task] = set()

    def start(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self.bus.subscribe(EventStoreWillReset, self._on_will_reset),
            self.bus.subscribe(EventStoreDidReset, self._on_reload),
            self.bus.subscribe(EventsDidSync, self._on_synced),
            self.bus.subscribe(IdentityChanged, self._on_identity_changed),
        ]

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        tasks = [t for t in self._background if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Derived flags

    def state(self, metric: Metric) -> MetricState:
        return self.metrics[metric].value

    @property
    def is_showing_unverified(self) -> bool:
        return any(obs.value.is_unverified for obs in self.metrics.values())

    @property
    def can_manual_refresh(self) -> bool:
        return self.connectivity.is_online

    @property
    def last_synced_at(self) -> datetime | None:
        return self.sync.status.value.last_synced_at

    def _range_key(self, metric: Metric) -> str:
        return WEEKLY_CACHE_KEY if metric is Metric.WEEKLY else self.range.cache_key

    # Loading

    async def refresh(self, metric: Metric) -> MetricState:
        token = self.session.token()
        rng = self.range
        observable = self.metrics[metric]
        await observable.set(replace(observable.value, loading=True, error=None))

        try:
            result = await self.aggregator.fetch(metric, rng)
        except PeeLogError as e:
            logger.error(f"Could not load {metric.value}: {e.message}")
            if self.session.is_current(token):
                await observable.set(replace(observable.value, loading=False, error=e.user_message))
            return observable.value

        if not self.session.is_current(token) or result.generation != self.session.generation:
            self.discarded += 1
            logger.info(f"Discarding {metric.value} result from an earlier session")
            return observable.value
        if rng != self.range:
            # Range switched while loading; the newer request owns the state
            return observable.value

        if result.source is DataSource.REMOTE:
            self.staleness.record(metric.value, self._range_key(metric), result.fetched_at)
        await observable.set(
            MetricState(
                value=result.data,
                source=result.source,
                loading=False,
                range_key=self._range_key(metric),
                fetched_at=result.fetched_at,
            )
        )
        return observable.value

    async def refresh_all(self) -> None:
        await asyncio.gather(*(self.refresh(metric) for metric in Metric))

    async def refresh_stale(self) -> int:
        """Refresh only metrics whose last remote fetch is outside the freshness window."""
        stale = [m for m in Metric if self.staleness.is_stale(m.value, self._range_key(m))]
        await asyncio.gather(*(self.refresh(metric) for metric in stale))
        return len(stale)

    async def set_range(self, rng: AnalyticsRange) -> None:
        if rng == self.range:
            return
        self.range = rng
        await self.refresh_all()

    async def manual_refresh(self) -> bool:
        """Pull-to-refresh: sync, then reload every metric. Refused while offline."""
        if not self.can_manual_refresh:
            logger.info("Manual refresh unavailable while offline")
            return False
        await self.sync.sync_if_needed(SyncReason.PULL_TO_REFRESH, force=True)
        await self.refresh_all()
        return True

    async def clear(self) -> None:
        self.staleness.clear()
        for observable in self.metrics.values():
            await observable.set(MetricState())

    # Bus handlers

    def _spawn_refresh(self) -> None:
        task = asyncio.create_task(self.refresh_all(), name="board-refresh")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _on_will_reset(self, event: EventStoreWillReset) -> None:
        await self.clear()

    async def _on_reload(self, event: EventStoreDidReset) -> None:
        self._spawn_refresh()

    async def _on_synced(self, event: EventsDidSync) -> None:
        if event.user_id == self.session.active_user_id:
            self._spawn_refresh()

    async def _on_identity_changed(self, event: IdentityChanged) -> None:
        await self.clear()
        if event.user is not None:
            self._spawn_refresh()
