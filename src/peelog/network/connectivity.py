"""Network reachability as a single source of truth."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from peelog.core.bus import ConnectivityChanged, EventBus, Observable
from peelog.core.config import ConnectivityConfig

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Periodically probes reachability and publishes transitions.

    Starts out online. A probe that cannot decide (unexpected error) keeps
    the device online so sync is never blocked spuriously. Only real
    transitions are published; repeated identical states are not.
    """

    def __init__(self, config: ConnectivityConfig, bus: EventBus, session: aiohttp.ClientSession | None = None):
        self.config = config
        self.bus = bus
        self.observable: Observable[bool] = Observable(True)
        self._session = session
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_online(self) -> bool:
        return self.observable.value

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._probe_loop())
        logger.info(f"Connectivity monitor started (every {self.config.probe_interval_seconds}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Connectivity monitor stopped")

    async def _probe_loop(self) -> None:
        while self._running:
            await self.check_now()
            await asyncio.sleep(self.config.probe_interval_seconds)

    async def check_now(self) -> bool:
        """Probe once and report the outcome."""
        result = await self._probe()
        await self.report(result)
        return self.is_online

    async def report(self, online: bool | None) -> None:
        """Feed an observation; ``None`` means indeterminate and counts as online."""
        state = True if online is None else online
        if await self.observable.set(state):
            logger.info(f"Connectivity changed: {'online' if state else 'offline'}")
            await self.bus.publish(ConnectivityChanged(online=state))

    async def _probe(self) -> bool | None:
        timeout = aiohttp.ClientTimeout(total=self.config.probe_timeout_seconds)
        try:
            if self._session is not None:
                async with self._session.head(self.config.probe_url, timeout=timeout) as resp:
                    logger.debug(f"Probe answered {resp.status}")
                    return True
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.head(self.config.probe_url) as resp:
                    logger.debug(f"Probe answered {resp.status}")
                    return True
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            logger.debug(f"Probe failed: {e}")
            return False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Connectivity probe indeterminate: {e}")
            return None
