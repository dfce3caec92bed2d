"""In-process event bus and observable values.

Components never reach for each other's state directly; they publish typed
events on an ``EventBus`` or expose an ``Observable`` that interested parties
subscribe to.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

from peelog.core.schemas import User, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")

Handler = Callable[[Any], Union[None, Awaitable[None]]]


# Typed bus events


@dataclass(frozen=True)
class ConnectivityChanged:
    online: bool
    at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AuthStateChanged:
    state: Any  # peelog.auth.session_controller.AuthState


@dataclass(frozen=True)
class IdentityChanged:
    """The active user id changed; in-flight work for the old id is stale."""

    previous_user_id: str | None
    user: User | None
    generation: int


@dataclass(frozen=True)
class EventsDidSync:
    user_id: str
    full: bool
    merged: int = 0
    uploaded: int = 0
    deleted: int = 0


@dataclass(frozen=True)
class EventStoreWillReset:
    user_id: str | None


@dataclass(frozen=True)
class EventStoreDidReset:
    user_id: str | None


@dataclass(frozen=True)
class StatusToast:
    message: str
    online: bool


@dataclass(frozen=True)
class GuestMigrationOffered:
    guest_id: str
    target_user_id: str
    event_count: int


@dataclass(frozen=True)
class DataCorruptionDetected:
    component: str
    detail: str


class Subscription:
    """Handle returned by subscribe(); call unsubscribe() to detach."""

    def __init__(self, remove: Callable[[], None]):
        self._remove = remove
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._remove()


async def _invoke(handler: Handler, payload: Any) -> None:
    try:
        result = handler(payload)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Event handler {getattr(handler, '__qualname__', handler)} failed: {e}", exc_info=True)


class EventBus:
    """Typed publish/subscribe dispatch keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = {}

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> Subscription:
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def remove() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return Subscription(remove)

    async def publish(self, event: Any) -> None:
        """Deliver an event to every handler registered for its exact type."""
        for handler in list(self._handlers.get(type(event), [])):
            await _invoke(handler, event)

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, []))


class Observable(Generic[T]):
    """A current value that notifies subscribers when it changes."""

    def __init__(self, value: T):
        self._value = value
        self._subscribers: list[Handler] = []

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, handler: Callable[[T], Any]) -> Subscription:
        self._subscribers.append(handler)
        return Subscription(lambda: self._subscribers.remove(handler) if handler in self._subscribers else None)

    async def set(self, value: T) -> bool:
        """Store a new value. Returns False (and notifies no one) if unchanged."""
        if value == self._value:
            return False
        self._value = value
        for handler in list(self._subscribers):
            await _invoke(handler, value)
        return True
