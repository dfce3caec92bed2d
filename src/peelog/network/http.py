"""Shared aiohttp plumbing for the remote services."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import aiohttp

from peelog.core.errors import (
    PeeLogError,
    PermissionDeniedError,
    ServerError,
    classify_exception,
    error_for_status,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]


class ServiceClient:
    """JSON-over-POST client with bearer auth and a bounded timeout.

    Every failure is raised as a ``PeeLogError`` so callers can tell a
    transport problem apart from an empty result.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float,
        token_provider: TokenProvider | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._token_provider = token_provider
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _headers(self, auth: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if auth:
            token = await self._token_provider() if self._token_provider else None
            if not token:
                raise PermissionDeniedError("Not signed in")
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def post(self, path: str, body: dict[str, Any] | None = None, auth: bool = True) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = await self._headers(auth)

        try:
            async with self._get_session().post(url, json=body or {}, headers=headers, timeout=self.timeout) as resp:
                if not 200 <= resp.status < 300:
                    text = await resp.text()
                    logger.debug(f"POST {path} failed: {resp.status} {text[:200]}")
                    raise error_for_status(resp.status, text[:200])
                if resp.content_length == 0:
                    return None
                return await resp.json(content_type=None)
        except (asyncio.CancelledError, PeeLogError):
            raise
        except ValueError as e:
            raise ServerError(f"Malformed response from {path}: {e}") from e
        except Exception as e:
            raise classify_exception(e) from e
