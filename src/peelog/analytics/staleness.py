"""Freshness of cached statistics and rate limiting of status toasts."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from peelog.core.bus import ConnectivityChanged, EventBus, StatusToast, Subscription
from peelog.core.schemas import utcnow

logger = logging.getLogger(__name__)

OFFLINE_MESSAGE = "You're offline. Showing saved statistics."
ONLINE_MESSAGE = "Back online. Refreshing your data."


class StalenessPolicy:
    """Tracks the last successful fetch per (metric, range key).

    An entry older than ``freshness`` is stale. Never-fetched entries are
    stale too.
    """

    def __init__(self, freshness: timedelta = timedelta(minutes=10)):
        self.freshness = freshness
        self._fetched: dict[tuple[str, str], datetime] = {}

    def record(self, metric: str, key: str, at: datetime | None = None) -> None:
        self._fetched[(metric, key)] = at or utcnow()

    def last_fetch(self, metric: str, key: str) -> datetime | None:
        return self._fetched.get((metric, key))

    def is_stale(self, metric: str, key: str, now: datetime | None = None) -> bool:
        last = self._fetched.get((metric, key))
        if last is None:
            return True
        return (now or utcnow()) - last >= self.freshness

    def should_refresh_on_foreground(self, online: bool, now: datetime | None = None) -> bool:
        """Refresh in the background only when online and something is stale."""
        if not online:
            return False
        if not self._fetched:
            return True
        now = now or utcnow()
        return any(now - at >= self.freshness for at in self._fetched.values())

    def clear(self) -> None:
        self._fetched.clear()


class ToastLimiter:
    """Allows at most one toast per interval."""

    def __init__(self, interval: timedelta = timedelta(seconds=3)):
        self.interval = interval
        self.last_shown: datetime | None = None

    def allow(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        if self.last_shown is not None and now - self.last_shown < self.interval:
            return False
        self.last_shown = now
        return True


class StatusNotifier:
    """Turns connectivity transitions into rate-limited ``StatusToast`` events."""

    def __init__(self, bus: EventBus, limiter: ToastLimiter):
        self.bus = bus
        self.limiter = limiter
        self.suppressed = 0
        self._subscription: Subscription | None = None

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.bus.subscribe(ConnectivityChanged, self._on_connectivity)

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def _on_connectivity(self, event: ConnectivityChanged) -> None:
        await self.notify(ONLINE_MESSAGE if event.online else OFFLINE_MESSAGE, event.online, event.at)

    async def notify(self, message: str, online: bool, at: datetime | None = None) -> bool:
        if not self.limiter.allow(at):
            self.suppressed += 1
            logger.debug(f"Status toast suppressed: {message}")
            return False
        await self.bus.publish(StatusToast(message=message, online=online))
        return True
