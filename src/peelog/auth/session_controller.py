"""Authentication lifecycle state machine."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from peelog.auth.provider import AuthIdentity, AuthProviderClient
from peelog.core.bus import (
    AuthStateChanged,
    EventBus,
    EventStoreDidReset,
    EventStoreWillReset,
    GuestMigrationOffered,
    Observable,
)
from peelog.core.errors import AuthError, AuthErrorKind
from peelog.core.schemas import AuthProvider, User
from peelog.core.session import SessionContext
from peelog.storage.event_store import EventStore
from peelog.storage.sync_state import AnalyticsCache, SyncCursorStore
from peelog.storage.user_store import UserStore
from peelog.sync.coordinator import SyncCoordinator, SyncReason

logger = logging.getLogger(__name__)

LAST_SYNCED_USER_KEY = "last_synced_user_id"
MIN_PASSWORD_LENGTH = 6
MIN_DISPLAY_NAME_LENGTH = 2

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthStatus(str, Enum):
    CHECKING = "checking"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    GUEST = "guest"
    UNAUTHENTICATED = "unauthenticated"
    ERROR = "error"


@dataclass(frozen=True)
class AuthState:
    status: AuthStatus
    user: User | None = None
    error: AuthError | None = None

    @classmethod
    def checking(cls) -> AuthState:
        return cls(AuthStatus.CHECKING)

    @classmethod
    def authenticating(cls) -> AuthState:
        return cls(AuthStatus.AUTHENTICATING)

    @classmethod
    def signed_in(cls, user: User) -> AuthState:
        return cls(AuthStatus.GUEST if user.is_guest else AuthStatus.AUTHENTICATED, user)

    @classmethod
    def unauthenticated(cls) -> AuthState:
        return cls(AuthStatus.UNAUTHENTICATED)

    @classmethod
    def failed(cls, error: AuthError) -> AuthState:
        return cls(AuthStatus.ERROR, error=error)

    @property
    def is_authenticated(self) -> bool:
        return self.status is AuthStatus.AUTHENTICATED

    @property
    def has_session(self) -> bool:
        return self.status in (AuthStatus.AUTHENTICATED, AuthStatus.GUEST)


def validate_credentials(email: str, password: str, display_name: str | None = None) -> None:
    """Raise ``AuthError(weak_input)`` before any provider call is made."""
    if not _EMAIL_RE.match(email.strip()):
        raise AuthError(AuthErrorKind.WEAK_INPUT, "Please enter a valid email address")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError(AuthErrorKind.WEAK_INPUT, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if display_name is not None and display_name.strip() and len(display_name.strip()) < MIN_DISPLAY_NAME_LENGTH:
        raise AuthError(
            AuthErrorKind.WEAK_INPUT, f"Display name must be at least {MIN_DISPLAY_NAME_LENGTH} characters"
        )


class AuthSessionController:
    """Owns the active identity for the process.

    Startup favors availability: any local user record is adopted even when
    the provider cannot verify it, so the app stays usable offline. Once
    authenticated the controller never returns to ``checking``, and a
    network failure while authenticated is logged rather than surfaced.
    """

    def __init__(
        self,
        provider: AuthProviderClient,
        users: UserStore,
        events: EventStore,
        cursors: SyncCursorStore,
        analytics_cache: AnalyticsCache,
        session: SessionContext,
        bus: EventBus,
        sync: SyncCoordinator | None = None,
    ):
        self.provider = provider
        self.users = users
        self.events = events
        self.cursors = cursors
        self.analytics_cache = analytics_cache
        self.session = session
        self.bus = bus
        self.sync = sync
        self.state: Observable[AuthState] = Observable(AuthState.checking())
        self.pending_migration: GuestMigrationOffered | None = None

    @property
    def current(self) -> AuthState:
        return self.state.value

    @property
    def error_message(self) -> str | None:
        error = self.current.error
        return error.user_message if error else None

    async def _set_state(self, new: AuthState) -> None:
        old = self.current
        if old.is_authenticated and new.status is AuthStatus.CHECKING:
            logger.warning("Ignoring transition from authenticated back to checking")
            return

        if new.has_session:
            await self.session.set_user(new.user)
            await self.users.set_current_user_id(new.user.id)
        elif new.status is AuthStatus.UNAUTHENTICATED:
            await self.session.set_user(None)

        if await self.state.set(new):
            logger.info(f"Auth state: {old.status.value} -> {new.status.value}")
            await self.bus.publish(AuthStateChanged(new))

        if new.is_authenticated:
            await self._on_authenticated(new.user)

    async def _on_authenticated(self, user: User) -> None:
        # One full sync per newly seen identity
        last = await self.users.db.get_config(LAST_SYNCED_USER_KEY)
        if last == user.id:
            return
        await self.users.db.set_config(LAST_SYNCED_USER_KEY, user.id)
        if self.sync is not None:
            self.sync.trigger_full_sync(SyncReason.AUTH_RESOLVED)

    async def _fail(self, error: AuthError, previous: AuthState) -> None:
        if error.is_network and previous.is_authenticated:
            logger.warning(f"Network error while authenticated, keeping session: {error}")
            await self._set_state(previous)
            return
        logger.error(f"Authentication error ({error.kind.value}): {error}")
        await self._set_state(AuthState.failed(error))

    # Lifecycle

    async def start(self) -> AuthState:
        """Resolve the initial state from the provider and local records."""
        identity: AuthIdentity | None = None
        try:
            identity = await self.provider.current_identity()
        except Exception as e:
            logger.warning(f"Auth provider unavailable at startup: {AuthError.from_exception(e)}")

        user: User | None = None
        if identity is not None:
            user = await self.users.get(identity.uid)
            if user is None:
                user = await self.users.save(self._user_for(identity))

        if user is None:
            current_id = await self.users.current_user_id()
            if current_id:
                user = await self.users.get(current_id)
        if user is None:
            user = await self.users.most_recent()

        if user is None:
            await self._set_state(AuthState.unauthenticated())
        else:
            await self._set_state(AuthState.signed_in(user))
        return self.current

    def _user_for(self, identity: AuthIdentity) -> User:
        return User.from_identity(identity.uid, identity.provider, identity.email, identity.display_name)

    async def _adopt_identity(self, identity: AuthIdentity, previous: AuthState) -> User:
        user = await self.users.get(identity.uid)
        if user is None:
            user = self._user_for(identity)
        elif identity.display_name and user.display_name != identity.display_name:
            user.display_name = identity.display_name
        user = await self.users.save(user)

        if previous.user is not None and previous.user.is_guest:
            await self._offer_migration(previous.user, user)
        return user

    async def _offer_migration(self, guest: User, target: User) -> None:
        guest_events = await self.events.guest_events(guest.id)
        if not guest_events:
            return
        self.pending_migration = GuestMigrationOffered(guest.id, target.id, len(guest_events))
        logger.info(f"Offering migration of {len(guest_events)} guest events to {target.id}")
        await self.bus.publish(self.pending_migration)

    async def sign_in(self, email: str, password: str) -> User:
        validate_credentials(email, password)
        previous = self.current
        await self._set_state(AuthState.authenticating())
        try:
            identity = await self.provider.sign_in(email.strip(), password)
        except Exception as e:
            error = AuthError.from_exception(e)
            await self._fail(error, previous)
            raise error from e

        user = await self._adopt_identity(identity, previous)
        await self._set_state(AuthState.signed_in(user))
        return user

    async def register(self, email: str, password: str, display_name: str | None = None) -> User:
        validate_credentials(email, password, display_name)
        previous = self.current
        await self._set_state(AuthState.authenticating())
        try:
            identity = await self.provider.register(email.strip(), password, display_name)
        except Exception as e:
            error = AuthError.from_exception(e)
            await self._fail(error, previous)
            raise error from e

        if display_name and not identity.display_name:
            identity.display_name = display_name.strip()
        user = await self._adopt_identity(identity, previous)
        await self._set_state(AuthState.signed_in(user))
        return user

    async def continue_as_guest(self) -> User:
        guest = await self.users.most_recent(AuthProvider.GUEST)
        if guest is None:
            guest = User.create_guest()
            logger.info(f"Created guest user {guest.id}")
        guest = await self.users.save(guest)
        await self._set_state(AuthState.signed_in(guest))
        return guest

    async def sign_out(self) -> None:
        """Explicit sign-out; pending changes are pushed first on a best-effort basis."""
        user = self.session.user
        if self.sync is not None:
            if user is not None and not user.is_guest:
                await self.sync.sync_before_sign_out()
            await self.sync.cancel_all()

        await self.bus.publish(EventStoreWillReset(user.id if user else None))
        try:
            await self.provider.sign_out()
        except Exception as e:
            logger.warning(f"Provider sign-out failed, clearing local session anyway: {e}")

        self.pending_migration = None
        await self.users.set_current_user_id(None)
        await self._set_state(AuthState.unauthenticated())
        await self.bus.publish(EventStoreDidReset(None))

    async def delete_account(self) -> None:
        """Delete the active account and cascade to its local events."""
        user = self.session.user
        if user is None:
            raise AuthError(AuthErrorKind.UNKNOWN, "No account is signed in")

        if not user.is_guest:
            try:
                await self.provider.delete_account()
            except Exception as e:
                error = AuthError.from_exception(e)
                logger.error(f"Account deletion failed: {error}")
                raise error from e

        if self.sync is not None:
            await self.sync.cancel_all()
        await self.bus.publish(EventStoreWillReset(user.id))
        removed = await self.events.purge_owner(user.id)
        await self.cursors.clear(user.id)
        await self.analytics_cache.invalidate(user.id)
        await self.users.delete(user.id)
        if await self.users.db.get_config(LAST_SYNCED_USER_KEY) == user.id:
            await self.users.db.delete_config(LAST_SYNCED_USER_KEY)
        logger.info(f"Deleted account {user.id} and {removed} local events")

        self.pending_migration = None
        await self._set_state(AuthState.unauthenticated())
        await self.bus.publish(EventStoreDidReset(None))

    def clear_pending_migration(self) -> None:
        self.pending_migration = None
