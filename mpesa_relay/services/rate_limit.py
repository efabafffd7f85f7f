"""In-memory rolling-window rate limiting keyed by client address."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allow at most ``max_requests`` per ``window_seconds`` for each key."""

    def __init__(
        self,
        *,
        name: str,
        max_requests: int,
        window_seconds: float = 60.0,
        message: str = "Too many requests. Please wait before trying again.",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.message = message
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def hit(self, key: str) -> Optional[float]:
        """
        Record a request for ``key``.

        Returns ``None`` when the request is allowed, otherwise the number of
        seconds until the oldest request leaves the window.
        """
        now = self._clock()
        window_start = now - self.window_seconds
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(window_start)
            self._last_sweep = now

        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= window_start:
            hits.popleft()

        if len(hits) >= self.max_requests:
            retry_after = hits[0] + self.window_seconds - now
            logger.warning(
                "Rate limit %s exceeded for %s (%s requests in window)",
                self.name,
                key,
                len(hits),
            )
            return max(retry_after, 0.0)

        hits.append(now)
        return None

    def _sweep(self, window_start: float) -> None:
        """Forget keys whose newest request has left the window."""
        stale = [
            key
            for key, hits in self._hits.items()
            if not hits or hits[-1] <= window_start
        ]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug("Rate limit %s dropped %s idle clients", self.name, len(stale))

    def remaining(self, key: str) -> int:
        hits = self._hits.get(key)
        if not hits:
            return self.max_requests
        window_start = self._clock() - self.window_seconds
        live = sum(1 for stamp in hits if stamp > window_start)
        return max(self.max_requests - live, 0)

    def reset(self) -> None:
        self._hits.clear()


def client_address(request: Request, *, trust_proxy_headers: bool = False) -> str:
    """Resolve the caller address used as the rate limit key."""
    if trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


__all__ = ["RateLimiter", "client_address"]
