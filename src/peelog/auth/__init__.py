"""Authentication state and guest migration."""

from peelog.auth.migration import GuestMigrationController, MigrationReport, MigrationStatus
from peelog.auth.provider import AuthIdentity, AuthProviderClient, HttpAuthProvider
from peelog.auth.session_controller import AuthSessionController, AuthState, AuthStatus

__all__ = [
    "AuthIdentity",
    "AuthProviderClient",
    "AuthSessionController",
    "AuthState",
    "AuthStatus",
    "GuestMigrationController",
    "HttpAuthProvider",
    "MigrationReport",
    "MigrationStatus",
]
