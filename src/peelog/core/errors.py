"""Error taxonomy shared by storage, sync, analytics and auth."""

from __future__ import annotations

import asyncio
import sqlite3
from enum import Enum

import aiohttp


class ErrorKind(str, Enum):
    """Top-level error categories."""

    NETWORK_UNAVAILABLE = "network_unavailable"
    SERVER_ERROR = "server_error"
    DATA_CORRUPTION = "data_corruption"
    PERMISSION_DENIED = "permission_denied"
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class Severity(int, Enum):
    """How loudly an error should be surfaced."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


_RECOVERY = {
    ErrorKind.NETWORK_UNAVAILABLE: "Check your internet connection and try again.",
    ErrorKind.SERVER_ERROR: "The service is temporarily unavailable. Please try again later.",
    ErrorKind.DATA_CORRUPTION: "The app data may be corrupted. Consider restarting or resetting the app.",
    ErrorKind.PERMISSION_DENIED: "Please enable the required permissions in Settings.",
    ErrorKind.INVALID_INPUT: "Please check your input and try again.",
    ErrorKind.NOT_FOUND: "The requested item no longer exists.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again or restart the app.",
}

_SEVERITY = {
    ErrorKind.NETWORK_UNAVAILABLE: Severity.MEDIUM,
    ErrorKind.SERVER_ERROR: Severity.HIGH,
    ErrorKind.DATA_CORRUPTION: Severity.CRITICAL,
    ErrorKind.PERMISSION_DENIED: Severity.HIGH,
    ErrorKind.INVALID_INPUT: Severity.LOW,
    ErrorKind.NOT_FOUND: Severity.LOW,
    ErrorKind.UNKNOWN: Severity.MEDIUM,
}


class PeeLogError(Exception):
    """Base class for all application errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", status: int | None = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.status = status

    @property
    def severity(self) -> Severity:
        return _SEVERITY[self.kind]

    @property
    def recovery_suggestion(self) -> str:
        return _RECOVERY[self.kind]

    @property
    def user_message(self) -> str:
        return f"{self.kind.value.replace('_', ' ').capitalize()}: {self.message}"

    @property
    def is_transport(self) -> bool:
        """Errors the sync/analytics boundary converts into a fallback."""
        return self.kind in (ErrorKind.NETWORK_UNAVAILABLE, ErrorKind.SERVER_ERROR)


class NetworkUnavailableError(PeeLogError):
    kind = ErrorKind.NETWORK_UNAVAILABLE


class ServerError(PeeLogError):
    kind = ErrorKind.SERVER_ERROR


class DataCorruptionError(PeeLogError):
    kind = ErrorKind.DATA_CORRUPTION


class PermissionDeniedError(PeeLogError):
    kind = ErrorKind.PERMISSION_DENIED


class InvalidInputError(PeeLogError):
    kind = ErrorKind.INVALID_INPUT


class NotFoundError(PeeLogError):
    kind = ErrorKind.NOT_FOUND


class UnknownError(PeeLogError):
    kind = ErrorKind.UNKNOWN


class AuthErrorKind(str, Enum):
    """Authentication failures surfaced to the user."""

    INVALID_CREDENTIALS = "invalid_credentials"
    WEAK_INPUT = "weak_input"
    TOKEN_EXPIRED = "token_expired"
    NETWORK_UNAVAILABLE = "network_unavailable"
    UNKNOWN = "unknown"


_AUTH_MESSAGES = {
    AuthErrorKind.INVALID_CREDENTIALS: "Invalid email or password",
    AuthErrorKind.WEAK_INPUT: "Please check your email and password",
    AuthErrorKind.TOKEN_EXPIRED: "Session expired. Please sign in again",
    AuthErrorKind.NETWORK_UNAVAILABLE: "No internet connection. Please try again when online",
    AuthErrorKind.UNKNOWN: "Something went wrong while signing in",
}


class AuthError(Exception):
    """Authentication error with a user-facing message."""

    def __init__(self, kind: AuthErrorKind, detail: str | None = None):
        self.kind = kind
        self.detail = detail
        super().__init__(detail or _AUTH_MESSAGES[kind])

    @property
    def user_message(self) -> str:
        if self.kind is AuthErrorKind.WEAK_INPUT and self.detail:
            return self.detail
        return _AUTH_MESSAGES[self.kind]

    @property
    def is_network(self) -> bool:
        return self.kind is AuthErrorKind.NETWORK_UNAVAILABLE

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AuthError) and other.kind == self.kind and other.detail == self.detail

    def __hash__(self) -> int:
        return hash((self.kind, self.detail))

    @classmethod
    def from_exception(cls, exc: BaseException) -> AuthError:
        if isinstance(exc, AuthError):
            return exc
        classified = classify_exception(exc)
        if classified.kind is ErrorKind.NETWORK_UNAVAILABLE:
            return cls(AuthErrorKind.NETWORK_UNAVAILABLE, classified.message)
        if classified.kind is ErrorKind.PERMISSION_DENIED:
            return cls(AuthErrorKind.TOKEN_EXPIRED, classified.message)
        return cls(AuthErrorKind.UNKNOWN, classified.message)


class MigrationError(PeeLogError):
    """Guest data migration failed; ``retryable`` tells whether a rerun can resume it."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


def classify_exception(exc: BaseException) -> PeeLogError:
    """Map a foreign exception onto the application taxonomy."""
    if isinstance(exc, PeeLogError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ClientConnectionError)):
        return NetworkUnavailableError(str(exc) or "Cannot connect to server")
    if isinstance(exc, aiohttp.ClientResponseError):
        return error_for_status(exc.status, exc.message)
    if isinstance(exc, aiohttp.ClientError):
        return NetworkUnavailableError(str(exc))
    if isinstance(exc, sqlite3.DatabaseError) and not isinstance(exc, sqlite3.OperationalError):
        return DataCorruptionError(str(exc))
    if isinstance(exc, PermissionError):
        return PermissionDeniedError(str(exc))
    if isinstance(exc, OSError):
        return NetworkUnavailableError(str(exc))
    return UnknownError(str(exc))


def error_for_status(status: int, message: str = "") -> PeeLogError:
    """Map an HTTP status code to an error."""
    if status in (401, 403):
        return PermissionDeniedError(message or "Not authorized", status=status)
    if status == 404:
        return NotFoundError(message or "Not found", status=status)
    if 400 <= status < 500:
        return InvalidInputError(message or f"Request rejected ({status})", status=status)
    return ServerError(message or f"Server error ({status})", status=status)
