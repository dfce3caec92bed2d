"""Tests for the auth session state machine."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from peelog.auth.session_controller import (
    LAST_SYNCED_USER_KEY,
    AuthSessionController,
    AuthState,
    AuthStatus,
    validate_credentials,
)
from peelog.core.bus import EventStoreDidReset, EventStoreWillReset, GuestMigrationOffered, IdentityChanged
from peelog.core.errors import AuthError, AuthErrorKind


@pytest.fixture
def sync_mock():
    sync = MagicMock()
    sync.sync_before_sign_out = AsyncMock(return_value=True)
    sync.cancel_all = AsyncMock()
    return sync


@pytest.fixture
def controller(auth_provider, user_store, event_store, cursors, analytics_cache, session, bus, sync_mock):
    return AuthSessionController(
        auth_provider, user_store, event_store, cursors, analytics_cache, session, bus, sync=sync_mock
    )


@pytest.fixture
def ana(auth_provider):
    return auth_provider.add_account("ana@example.com", "secret123", "uid-ana", "Ana")


class TestValidation:
    @pytest.mark.parametrize(
        "email,password",
        [("not-an-email", "secret123"), ("ana@example.com", "short")],
    )
    def test_weak_input(self, email, password):
        with pytest.raises(AuthError) as exc:
            validate_credentials(email, password)
        assert exc.value.kind is AuthErrorKind.WEAK_INPUT

    def test_display_name_too_short(self):
        with pytest.raises(AuthError):
            validate_credentials("ana@example.com", "secret123", "A")

    @pytest.mark.asyncio
    async def test_provider_not_called_for_bad_input(self, controller, auth_provider):
        with pytest.raises(AuthError):
            await controller.sign_in("nope", "secret123")
        assert auth_provider.sign_in_calls == 0


class TestStartup:
    @pytest.mark.asyncio
    async def test_nobody_known(self, controller, session):
        state = await controller.start()

        assert state.status is AuthStatus.UNAUTHENTICATED
        assert session.user is None

    @pytest.mark.asyncio
    async def test_restores_provider_identity(self, controller, auth_provider, user_store, sync_mock, ana):
        auth_provider.identity = ana

        state = await controller.start()

        assert state.status is AuthStatus.AUTHENTICATED
        assert (await user_store.get("uid-ana")).email == "ana@example.com"
        sync_mock.trigger_full_sync.assert_called_once()

    @pytest.mark.asyncio
    async def test_offline_start_adopts_local_record(self, controller, auth_provider, user_store, account):
        await user_store.save(account)
        await user_store.set_current_user_id(account.id)
        auth_provider.unavailable = True

        state = await controller.start()

        assert state.status is AuthStatus.AUTHENTICATED
        assert state.user.id == account.id

    @pytest.mark.asyncio
    async def test_resumes_guest(self, controller, user_store, guest):
        await user_store.save(guest)

        state = await controller.start()

        assert state.status is AuthStatus.GUEST


class TestSignIn:
    @pytest.mark.asyncio
    async def test_success(self, controller, session, ana, collector):
        changes = collector(IdentityChanged)

        user = await controller.sign_in("ana@example.com", "secret123")

        assert controller.current.status is AuthStatus.AUTHENTICATED
        assert session.active_user_id == user.id == "uid-ana"
        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_wrong_password(self, controller, ana):
        with pytest.raises(AuthError):
            await controller.sign_in("ana@example.com", "wrong-password")

        assert controller.current.status is AuthStatus.ERROR
        assert controller.current.error.kind is AuthErrorKind.INVALID_CREDENTIALS
        assert controller.error_message == "Invalid email or password"

    @pytest.mark.asyncio
    async def test_network_error_while_authenticated_keeps_session(self, controller, auth_provider, ana):
        await controller.sign_in("ana@example.com", "secret123")
        auth_provider.error = AuthError(AuthErrorKind.NETWORK_UNAVAILABLE)

        with pytest.raises(AuthError):
            await controller.sign_in("ana@example.com", "secret123")

        assert controller.current.status is AuthStatus.AUTHENTICATED
        assert controller.current.error is None

    @pytest.mark.asyncio
    async def test_network_error_when_signed_out_is_surfaced(self, controller, auth_provider, ana):
        auth_provider.error = AuthError(AuthErrorKind.NETWORK_UNAVAILABLE)

        with pytest.raises(AuthError):
            await controller.sign_in("ana@example.com", "secret123")

        assert controller.current.status is AuthStatus.ERROR

    @pytest.mark.asyncio
    async def test_never_back_to_checking(self, controller, ana):
        await controller.sign_in("ana@example.com", "secret123")

        await controller._set_state(AuthState.checking())

        assert controller.current.status is AuthStatus.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_full_sync_once_per_identity(self, controller, sync_mock, ana):
        await controller.sign_in("ana@example.com", "secret123")
        await controller.sign_out()
        await controller.sign_in("ana@example.com", "secret123")

        assert sync_mock.trigger_full_sync.call_count == 1
        assert await controller.users.db.get_config(LAST_SYNCED_USER_KEY) == "uid-ana"


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_authenticates(self, controller, user_store):
        user = await controller.register("sam@example.com", "secret123", "Sam")

        assert controller.current.is_authenticated
        assert user.display_name == "Sam"
        assert await user_store.get(user.id) is not None

    @pytest.mark.asyncio
    async def test_duplicate_email(self, controller, ana):
        with pytest.raises(AuthError) as exc:
            await controller.register("ana@example.com", "secret123")
        assert exc.value.kind is AuthErrorKind.WEAK_INPUT


class TestGuest:
    @pytest.mark.asyncio
    async def test_continue_as_guest_reuses_profile(self, controller):
        first = await controller.continue_as_guest()
        second = await controller.continue_as_guest()

        assert first.id == second.id
        assert controller.current.status is AuthStatus.GUEST

    @pytest.mark.asyncio
    async def test_sign_in_offers_migration(self, controller, event_store, make_event, collector, ana):
        offers = collector(GuestMigrationOffered)
        guest = await controller.continue_as_guest()
        await event_store.add(make_event(owner_id=guest.id))
        await event_store.add(make_event(owner_id=guest.id))

        await controller.sign_in("ana@example.com", "secret123")

        assert controller.pending_migration.event_count == 2
        assert offers[0].guest_id == guest.id
        assert offers[0].target_user_id == "uid-ana"

    @pytest.mark.asyncio
    async def test_no_offer_without_guest_events(self, controller, ana):
        await controller.continue_as_guest()

        await controller.sign_in("ana@example.com", "secret123")

        assert controller.pending_migration is None


class TestSignOut:
    @pytest.mark.asyncio
    async def test_sign_out_resets(self, controller, session, user_store, sync_mock, collector, ana):
        will_reset = collector(EventStoreWillReset)
        did_reset = collector(EventStoreDidReset)
        await controller.sign_in("ana@example.com", "secret123")

        await controller.sign_out()

        assert controller.current.status is AuthStatus.UNAUTHENTICATED
        assert session.user is None
        assert await user_store.current_user_id() is None
        sync_mock.sync_before_sign_out.assert_awaited_once()
        assert will_reset[0].user_id == "uid-ana"
        assert len(did_reset) == 1

    @pytest.mark.asyncio
    async def test_guest_sign_out_skips_push(self, controller, sync_mock):
        await controller.continue_as_guest()

        await controller.sign_out()

        sync_mock.sync_before_sign_out.assert_not_awaited()


class TestDeleteAccount:
    @pytest.mark.asyncio
    async def test_cascades_to_local_data(self, controller, event_store, user_store, make_event, ana):
        user = await controller.sign_in("ana@example.com", "secret123")
        await event_store.add(make_event(owner_id=user.id))

        await controller.delete_account()

        assert await event_store.count(user.id) == 0
        assert await user_store.get(user.id) is None
        assert controller.current.status is AuthStatus.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_data(self, controller, auth_provider, event_store, make_event, ana):
        user = await controller.sign_in("ana@example.com", "secret123")
        await event_store.add(make_event(owner_id=user.id))
        auth_provider.error = AuthError(AuthErrorKind.NETWORK_UNAVAILABLE)

        with pytest.raises(AuthError):
            await controller.delete_account()

        assert await event_store.count(user.id) == 1
        assert controller.current.is_authenticated

    @pytest.mark.asyncio
    async def test_nobody_signed_in(self, controller):
        with pytest.raises(AuthError):
            await controller.delete_account()
