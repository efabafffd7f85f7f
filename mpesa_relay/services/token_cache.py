"""
Process-local cache for Daraja access tokens.

Concurrent callers share a single in-flight acquisition: while one token
request is outstanding every other caller awaits the same task instead of
issuing its own.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol, Tuple

from mpesa_relay.clients.daraja import AccessTokenError

logger = logging.getLogger(__name__)


def _consume_outcome(task: "asyncio.Task[str]") -> None:
    # Mark the outcome retrieved even when every waiter was cancelled.
    if not task.cancelled():
        task.exception()


class SupportsTokenFetch(Protocol):
    async def fetch_access_token(self) -> Tuple[str, int]: ...


class AccessTokenCache:
    """Hold one bearer token and refresh it ahead of the declared expiry."""

    def __init__(
        self,
        token_client: SupportsTokenFetch,
        *,
        buffer_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = token_client
        self._buffer = buffer_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._inflight: Optional[asyncio.Task[str]] = None

    @property
    def expires_at(self) -> float:
        return self._expires_at

    @property
    def has_valid_token(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    async def get_token(self) -> str:
        """Return a valid access token, acquiring one when necessary."""
        if self._token is not None and self._clock() < self._expires_at:
            return self._token

        if self._inflight is None:
            logger.debug("Starting access token acquisition")
            self._inflight = asyncio.ensure_future(self._acquire())
            self._inflight.add_done_callback(_consume_outcome)
        else:
            logger.debug("Waiting for in-flight access token request")

        # A waiter that gets cancelled must not cancel the shared acquisition.
        return await asyncio.shield(self._inflight)

    def invalidate(self) -> None:
        """Drop the cached token so the next caller acquires a fresh one."""
        self._token = None
        self._expires_at = 0.0

    async def _acquire(self) -> str:
        try:
            started_at = self._clock()
            token, ttl = await self._client.fetch_access_token()
            self._token = token
            self._expires_at = started_at + ttl - self._buffer
            logger.info("Access token cached, expires in %ss", ttl)
            return token
        except Exception as exc:
            self.invalidate()
            logger.error("Access token acquisition failed: %s", exc)
            if isinstance(exc, AccessTokenError):
                raise
            raise AccessTokenError("Failed to generate access token") from exc
        finally:
            self._inflight = None


__all__ = ["AccessTokenCache", "SupportsTokenFetch"]
