"""Authentication provider boundary.

The session controller only cares whether a provider call succeeded and
which identity resulted; everything else about the provider is opaque.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Protocol

from pydantic import ValidationError

from peelog.core.config import RemoteConfig
from peelog.core.errors import AuthError, AuthErrorKind, ErrorKind, PeeLogError
from peelog.core.schemas import AuthProvider
from peelog.network.http import ServiceClient
from peelog.network.schemas import AuthResponse
from peelog.storage.database import Database

logger = logging.getLogger(__name__)

SESSION_KEY = "auth_session"


@dataclass
class AuthIdentity:
    """A remotely verified identity."""

    uid: str
    provider: AuthProvider
    email: str | None = None
    display_name: str | None = None
    token: str | None = None


class AuthProviderClient(Protocol):
    async def sign_in(self, email: str, password: str) -> AuthIdentity: ...

    async def register(self, email: str, password: str, display_name: str | None) -> AuthIdentity: ...

    async def sign_out(self) -> None: ...

    async def delete_account(self) -> None: ...

    async def current_identity(self) -> AuthIdentity | None: ...

    async def id_token(self) -> str | None: ...

    @property
    def is_authenticated(self) -> bool: ...


def _auth_error(error: PeeLogError) -> AuthError:
    if error.kind is ErrorKind.NETWORK_UNAVAILABLE:
        return AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, error.message)
    if error.status in (400, 401, 403, 404):
        return AuthError(AuthErrorKind.INVALID_CREDENTIALS)
    if error.status in (409, 422):
        return AuthError(AuthErrorKind.WEAK_INPUT, error.message or None)
    return AuthError(AuthErrorKind.UNKNOWN, error.message)


class HttpAuthProvider(ServiceClient):
    """Email/password auth against the remote service.

    The signed-in identity and its bearer token persist in the local config
    table so a restart (or an offline launch) restores the session.
    """

    def __init__(self, config: RemoteConfig, db: Database, session=None):
        super().__init__(config.base_url, config.timeout_seconds, token_provider=None, session=session)
        self._token_provider = self.id_token
        self.db = db
        self._identity: AuthIdentity | None = None
        self._loaded = False

    @property
    def is_authenticated(self) -> bool:
        return self._identity is not None

    async def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        raw = await self.db.get_config(SESSION_KEY)
        if not raw:
            return
        try:
            data = json.loads(raw)
            data["provider"] = AuthProvider(data["provider"])
            self._identity = AuthIdentity(**data)
        except (TypeError, ValueError, KeyError) as e:
            logger.warning(f"Discarding unreadable stored auth session: {e}")
            await self.db.delete_config(SESSION_KEY)

    async def _store(self, identity: AuthIdentity | None) -> None:
        self._identity = identity
        self._loaded = True
        if identity is None:
            await self.db.delete_config(SESSION_KEY)
        else:
            data = asdict(identity)
            data["provider"] = identity.provider.value
            await self.db.set_config(SESSION_KEY, json.dumps(data))

    async def _authenticate(self, path: str, body: dict) -> AuthIdentity:
        try:
            data = await self.post(path, body, auth=False)
            response = AuthResponse.model_validate(data or {})
        except PeeLogError as e:
            raise _auth_error(e) from e
        except ValidationError as e:
            raise AuthError(AuthErrorKind.UNKNOWN, "Unexpected response from sign-in service") from e

        identity = AuthIdentity(
            uid=response.uid,
            provider=AuthProvider.APPLE if response.provider == "apple" else AuthProvider.EMAIL,
            email=response.email,
            display_name=response.display_name,
            token=response.id_token,
        )
        await self._store(identity)
        return identity

    async def sign_in(self, email: str, password: str) -> AuthIdentity:
        return await self._authenticate("auth/signIn", {"email": email, "password": password})

    async def register(self, email: str, password: str, display_name: str | None) -> AuthIdentity:
        return await self._authenticate(
            "auth/register", {"email": email, "password": password, "displayName": display_name}
        )

    async def sign_out(self) -> None:
        await self._store(None)

    async def delete_account(self) -> None:
        await self._load()
        if self._identity is None:
            return
        try:
            await self.post("auth/deleteAccount", {"uid": self._identity.uid})
        except PeeLogError as e:
            raise _auth_error(e) from e
        await self._store(None)

    async def current_identity(self) -> AuthIdentity | None:
        await self._load()
        return self._identity

    async def id_token(self) -> str | None:
        await self._load()
        return self._identity.token if self._identity else None
