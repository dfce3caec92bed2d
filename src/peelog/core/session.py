"""Explicit session context shared by every component."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from peelog.core.bus import EventBus, IdentityChanged
from peelog.core.schemas import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionToken:
    """Snapshot of the session taken before an async operation starts."""

    user_id: str | None
    generation: int


class SessionContext:
    """Holds the active user and a generation counter.

    The generation is bumped on every identity change. Async work captures a
    ``token()`` up front and drops its result when ``is_current(token)`` no
    longer holds.
    """

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._user: User | None = None
        self._generation = 0

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def active_user_id(self) -> str | None:
        return self._user.id if self._user else None

    @property
    def generation(self) -> int:
        return self._generation

    def token(self) -> SessionToken:
        return SessionToken(self.active_user_id, self._generation)

    def is_current(self, token: SessionToken) -> bool:
        return token.generation == self._generation and token.user_id == self.active_user_id

    async def set_user(self, user: User | None) -> None:
        """Switch the active user, bumping the generation if the id changes."""
        previous = self.active_user_id
        new_id = user.id if user else None
        self._user = user
        if new_id == previous:
            return

        self._generation += 1
        logger.info(f"Session identity changed: {previous} -> {new_id} (generation {self._generation})")
        await self.bus.publish(IdentityChanged(previous, user, self._generation))
