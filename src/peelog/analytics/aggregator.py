"""Analytics with remote, cache and local-fallback tiers.

Every fetch returns a ``Sourced`` value:

1. Online with a remote-capable account: ask the service, cache the answer
   under ``(user, metric, range)`` and tag it ``remote``.
2. Remote failed or offline: serve the cached answer tagged ``cache``.
3. No cache: compute from the local event log, tagged ``local``.

Transport errors stop here. Unreadable local events do not: they are
published as ``DataCorruptionDetected`` and re-raised.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import ValidationError

from peelog.analytics.calculator import AnalyticsCalculator, normalize_hourly, normalize_weekly
from peelog.analytics.ranges import LAST_7_DAYS, LAST_30_DAYS, TODAY, AnalyticsRange, start_of_day
from peelog.analytics.schemas import (
    DISTRIBUTION_LIST,
    HOURLY_LIST,
    INSIGHT_LIST,
    TREND_LIST,
    WEEKLY_LIST,
    HealthInsight,
    HourlyBucket,
    OverviewStats,
    QualityCount,
    QualityTrendPoint,
    WeeklyDay,
)
from peelog.core.bus import DataCorruptionDetected, EventBus
from peelog.core.config import AnalyticsConfig, RemoteConfig
from peelog.core.errors import DataCorruptionError, PeeLogError
from peelog.core.schemas import DataSource, Event, Sourced, utcnow
from peelog.core.session import SessionContext
from peelog.network.connectivity import ConnectivityMonitor
from peelog.network.remote import RemoteService
from peelog.storage.event_store import EventStore
from peelog.storage.sync_state import AnalyticsCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

# The weekly overview ignores the selected range
WEEKLY_CACHE_KEY = "weekly"

PREWARM_RANGES = (TODAY, LAST_7_DAYS, LAST_30_DAYS)


class Metric(str, Enum):
    OVERVIEW = "overview"
    QUALITY_TRENDS = "quality_trends"
    HOURLY = "hourly"
    DISTRIBUTION = "quality_distribution"
    WEEKLY = "weekly"
    INSIGHTS = "insights"


def _dump(data: Any) -> Any:
    if isinstance(data, list):
        return [item.to_wire() for item in data]
    return data.to_wire()


class AnalyticsAggregator:
    """Serves each metric family from the best available tier."""

    def __init__(
        self,
        remote: RemoteService,
        cache: AnalyticsCache,
        events: EventStore,
        session: SessionContext,
        connectivity: ConnectivityMonitor,
        calculator: AnalyticsCalculator,
        bus: EventBus,
        config: AnalyticsConfig,
        remote_config: RemoteConfig | None = None,
    ):
        self.remote = remote
        self.cache = cache
        self.events = events
        self.session = session
        self.connectivity = connectivity
        self.calculator = calculator
        self.bus = bus
        self.config = config
        self.remote_enabled = remote_config.enabled if remote_config else True

    @property
    def tz(self) -> tzinfo:
        return self.calculator.tz

    def _remote_user_id(self) -> str | None:
        user = self.session.user
        if user is None or user.is_guest or not self.remote_enabled:
            return None
        if not self.connectivity.is_online:
            return None
        return user.id

    async def _local_events(self, start: datetime | None, end: datetime | None) -> list[Event]:
        try:
            return await self.events.list_events(self.session.active_user_id, start, end, newest_first=False)
        except DataCorruptionError as e:
            logger.error(f"Local event log unreadable while computing statistics: {e.message}")
            await self.bus.publish(DataCorruptionDetected(component="analytics", detail=e.message))
            raise

    async def _range_events(self, rng: AnalyticsRange, now: datetime) -> list[Event]:
        resolved = rng.resolve(now, self.tz)
        return await self._local_events(resolved.start, resolved.end)

    async def _fetch(
        self,
        metric: Metric,
        range_key: str,
        body: dict[str, Any],
        remote_call: Callable[[str, dict[str, Any]], Awaitable[T]],
        decode: Callable[[Any], T],
        compute_local: Callable[[], Awaitable[T]],
        finish: Callable[[T], Awaitable[T]] | None = None,
    ) -> Sourced[T]:
        token = self.session.token()
        user_id = token.user_id

        remote_user = self._remote_user_id()
        if remote_user is not None:
            try:
                data = await remote_call(remote_user, body)
                if finish is not None:
                    data = await finish(data)
            except DataCorruptionError:
                raise
            except PeeLogError as e:
                logger.warning(
                    f"Remote {metric.value} [{range_key}] failed ({e.kind.value}), falling back: {e.message}"
                )
            else:
                fetched_at = utcnow()
                if self.session.is_current(token):
                    try:
                        await self.cache.store(remote_user, metric.value, range_key, _dump(data), fetched_at)
                    except PeeLogError as e:
                        logger.warning(f"Could not cache {metric.value} [{range_key}]: {e.message}")
                return Sourced(data, DataSource.REMOTE, user_id, token.generation, fetched_at)

        if user_id is not None:
            cached = await self.cache.load(user_id, metric.value, range_key)
            if cached is not None:
                try:
                    data = decode(cached.payload)
                    if finish is not None:
                        data = await finish(data)
                except ValidationError as e:
                    logger.warning(
                        f"Cached {metric.value} [{range_key}] no longer valid, dropping: {e.error_count()} errors"
                    )
                    await self.cache.invalidate(user_id, metric.value, range_key)
                else:
                    return Sourced(data, DataSource.CACHE, user_id, token.generation, cached.fetched_at)

        data = await compute_local()
        logger.debug(f"Computed {metric.value} [{range_key}] locally")
        return Sourced(data, DataSource.LOCAL, user_id, token.generation, utcnow())

    # Metric families

    async def fetch_overview(self, rng: AnalyticsRange) -> Sourced[OverviewStats]:
        now = utcnow()

        async def local() -> OverviewStats:
            return self.calculator.overview(await self._range_events(rng, now), now)

        async def fill_active_days(stats: OverviewStats) -> OverviewStats:
            update: dict[str, Any] = {"min_active_days": self.config.min_active_days}
            if stats.active_days is None:
                update["active_days"] = self.calculator.active_days(await self._range_events(rng, now))
            return stats.model_copy(update=update)

        return await self._fetch(
            Metric.OVERVIEW,
            rng.cache_key,
            rng.remote_body(now, self.tz),
            self.remote.fetch_overview,
            OverviewStats.model_validate,
            local,
            fill_active_days,
        )

    async def fetch_quality_trends(self, rng: AnalyticsRange) -> Sourced[list[QualityTrendPoint]]:
        now = utcnow()

        async def local() -> list[QualityTrendPoint]:
            return self.calculator.quality_trends(await self._range_events(rng, now))

        async def ascending(points: list[QualityTrendPoint]) -> list[QualityTrendPoint]:
            return sorted(points, key=lambda p: p.date)

        return await self._fetch(
            Metric.QUALITY_TRENDS,
            rng.cache_key,
            rng.remote_body(now, self.tz),
            self.remote.fetch_quality_trends,
            TREND_LIST.validate_python,
            local,
            ascending,
        )

    async def fetch_hourly(self, rng: AnalyticsRange) -> Sourced[list[HourlyBucket]]:
        now = utcnow()

        async def local() -> list[HourlyBucket]:
            return self.calculator.hourly(await self._range_events(rng, now))

        async def all_hours(buckets: list[HourlyBucket]) -> list[HourlyBucket]:
            return normalize_hourly(buckets)

        return await self._fetch(
            Metric.HOURLY,
            rng.cache_key,
            rng.remote_body(now, self.tz),
            self.remote.fetch_hourly,
            HOURLY_LIST.validate_python,
            local,
            all_hours,
        )

    async def fetch_quality_distribution(self, rng: AnalyticsRange) -> Sourced[list[QualityCount]]:
        now = utcnow()

        async def local() -> list[QualityCount]:
            return self.calculator.distribution(await self._range_events(rng, now))

        async def nonzero_descending(counts: list[QualityCount]) -> list[QualityCount]:
            return sorted((c for c in counts if c.count > 0), key=lambda c: -c.count)

        return await self._fetch(
            Metric.DISTRIBUTION,
            rng.cache_key,
            rng.remote_body(now, self.tz),
            self.remote.fetch_quality_distribution,
            DISTRIBUTION_LIST.validate_python,
            local,
            nonzero_descending,
        )

    async def fetch_weekly(self, rng: AnalyticsRange | None = None) -> Sourced[list[WeeklyDay]]:
        """Seven fixed days ending today; ``rng`` is accepted for symmetry and ignored."""
        now = utcnow()
        today = now.astimezone(self.tz).date()

        async def local() -> list[WeeklyDay]:
            events = await self._local_events(start_of_day(today - timedelta(days=6), self.tz), now)
            return self.calculator.weekly(events, now)

        async def seven_days(days: list[WeeklyDay]) -> list[WeeklyDay]:
            return normalize_weekly(days, today)

        return await self._fetch(
            Metric.WEEKLY,
            WEEKLY_CACHE_KEY,
            LAST_7_DAYS.remote_body(now, self.tz),
            self.remote.fetch_weekly,
            WEEKLY_LIST.validate_python,
            local,
            seven_days,
        )

    async def fetch_insights(self, rng: AnalyticsRange) -> Sourced[list[HealthInsight]]:
        now = utcnow()

        async def local() -> list[HealthInsight]:
            events = await self._range_events(rng, now)
            return self.calculator.insights(self.calculator.overview(events, now), events, now)

        return await self._fetch(
            Metric.INSIGHTS,
            rng.cache_key,
            rng.remote_body(now, self.tz),
            self.remote.fetch_insights,
            INSIGHT_LIST.validate_python,
            local,
        )

    async def fetch(self, metric: Metric, rng: AnalyticsRange) -> Sourced[Any]:
        fetchers = {
            Metric.OVERVIEW: self.fetch_overview,
            Metric.QUALITY_TRENDS: self.fetch_quality_trends,
            Metric.HOURLY: self.fetch_hourly,
            Metric.DISTRIBUTION: self.fetch_quality_distribution,
            Metric.WEEKLY: self.fetch_weekly,
            Metric.INSIGHTS: self.fetch_insights,
        }
        return await fetchers[metric](rng)

    async def prewarm(self, ranges: tuple[AnalyticsRange, ...] = PREWARM_RANGES) -> int:
        """Populate the cache for common ranges. Returns the number of remote hits."""
        if not self.config.prewarm or self._remote_user_id() is None:
            return 0

        token = self.session.token()
        hits = 0
        for rng in ranges:
            for metric in Metric:
                if metric is Metric.WEEKLY and rng is not ranges[0]:
                    continue
                if not self.session.is_current(token):
                    logger.debug("Prewarm stopped: session changed")
                    return hits
                try:
                    result = await self.fetch(metric, rng)
                except PeeLogError as e:
                    logger.warning(f"Prewarm of {metric.value} [{rng.cache_key}] failed: {e.message}")
                    continue
                if result.source is DataSource.REMOTE:
                    hits += 1
        logger.info(f"Prewarmed {hits} analytics entries")
        return hits
