"""Cached access to the authenticated session."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthSession:
    """The signed-in identity and its bearer token."""

    user_id: str
    token: str


SessionFetcher = Callable[[], Awaitable[AuthSession | None]]


class SessionProvider:
    """Caches the current session to avoid hammering the auth backend.

    Concurrent callers share a single in-flight fetch. A fetch that raises
    is treated as signed out and clears the cache.
    """

    def __init__(self, fetch: SessionFetcher, cache_seconds: float = 5.0):
        """Initialize the provider.

        Args:
            fetch: Coroutine function returning the current session or None.
            cache_seconds: How long a fetched session is reused.
        """
        self._fetch = fetch
        self.cache_seconds = cache_seconds
        self._cached: AuthSession | None = None
        self._last_fetch: float = 0.0
        self._in_flight: asyncio.Task | None = None

    async def get_session(self) -> AuthSession | None:
        """Return the current session, using the cache when fresh."""
        now = time.monotonic()
        if self._cached and (now - self._last_fetch) < self.cache_seconds:
            return self._cached

        if self._in_flight is None:
            self._in_flight = asyncio.ensure_future(self._refresh())
        task = self._in_flight
        try:
            return await asyncio.shield(task)
        finally:
            if self._in_flight is task and task.done():
                self._in_flight = None

    async def _refresh(self) -> AuthSession | None:
        try:
            session = await self._fetch()
        except Exception as e:
            logger.warning(f"Session fetch failed, treating as signed out: {e}")
            self.invalidate_cache()
            return None

        self._cached = session
        self._last_fetch = time.monotonic() if session else 0.0
        return session

    def invalidate_cache(self) -> None:
        """Forget the cached session (call after sign in/out)."""
        self._cached = None
        self._last_fetch = 0.0

    async def is_authenticated(self) -> bool:
        return await self.get_session() is not None

    async def get_user_id(self) -> str | None:
        session = await self.get_session()
        return session.user_id if session else None


def static_session_provider(
    user_id: str | None, token: str | None, cache_seconds: float = 5.0
) -> SessionProvider:
    """Build a provider for a fixed, pre-issued session (CLI and tests).

    Returns a provider that is signed out when either value is missing.
    """

    async def fetch() -> AuthSession | None:
        if user_id and token:
            return AuthSession(user_id=user_id, token=token)
        return None

    return SessionProvider(fetch, cache_seconds=cache_seconds)
