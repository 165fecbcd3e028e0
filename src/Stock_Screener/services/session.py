"""Session token (crumb + cookie) cache for the Yahoo chart API.

Yahoo serves some venues only to callers presenting a crumb together with
the cookie it was issued for. Acquisition is two HTTP round trips:

1. GET the consent endpoint and collect its ``Set-Cookie`` pairs.
2. GET the crumb endpoint with those cookies; the body is the crumb.

The cached pair is served until it is older than the freshness window or a
caller reports a 401/403 for it. Concurrent refreshes may race: the last
writer wins and a loser simply uses whichever token is cached afterwards.
The cache itself is a single reference swap, so no lock is held across I/O.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Final

import httpx
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TOKEN_TTL_SECONDS: Final[float] = 30 * 60
DEFAULT_COOKIE_URL: Final[str] = "https://fc.yahoo.com/"
DEFAULT_CRUMB_URL: Final[str] = "https://query2.finance.yahoo.com/v1/test/getcrumb"


class SessionToken(BaseModel):
    """A crumb and the cookie string it is bound to."""

    model_config = ConfigDict(frozen=True)

    crumb: str
    cookie: str
    acquired_at: float  # clock seconds at acquisition

    def age(self, now: float) -> float:
        return now - self.acquired_at


class SessionTokenCache:
    """Acquire, cache, and refresh the primary provider's session token.

    The HTTP client and clock are injected so tests can drive both.

    Usage::

        tokens = SessionTokenCache(client)
        token = await tokens.get_token()
        if token is None:
            ...  # proceed unauthenticated; retry with auth only on 401/403
        # after a 401/403 with this token:
        token = await tokens.refresh(stale=token)
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        cookie_url: str = DEFAULT_COOKIE_URL,
        crumb_url: str = DEFAULT_CRUMB_URL,
        ttl_seconds: float = DEFAULT_TOKEN_TTL_SECONDS,
        user_agent: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._cookie_url = cookie_url
        self._crumb_url = crumb_url
        self._ttl_seconds = ttl_seconds
        self._headers = {"User-Agent": user_agent} if user_agent else {}
        self._clock = clock
        self._token: SessionToken | None = None
        self.acquisitions: int = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def peek(self) -> SessionToken | None:
        """Return the cached token if it is still fresh, without any I/O."""
        token = self._token
        if token is None or token.age(self._clock()) >= self._ttl_seconds:
            return None
        return token

    async def get_token(self) -> SessionToken | None:
        """Return a fresh token, acquiring one if needed.

        Returns:
            The token, or None when acquisition failed. Nothing is cached
            on failure, so the next call tries again.
        """
        token = self.peek()
        if token is not None:
            return token
        return await self._acquire()

    def invalidate(self, token: SessionToken | None = None) -> None:
        """Drop the cached token.

        When ``token`` is given, only drop it if it is still the cached one,
        so a caller holding an old token cannot evict a newer one.
        """
        if token is None or self._token is token:
            if self._token is not None:
                logger.debug("Session token invalidated")
            self._token = None

    async def refresh(self, stale: SessionToken | None = None) -> SessionToken | None:
        """Invalidate ``stale`` and acquire a new token.

        If another caller already replaced ``stale`` with a fresh token, that
        token is returned instead of issuing another acquisition.
        """
        self.invalidate(stale)
        current = self.peek()
        if current is not None and current is not stale:
            return current
        return await self._acquire()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _acquire(self) -> SessionToken | None:
        self.acquisitions += 1
        try:
            cookie = await self._fetch_cookie()
            if not cookie:
                logger.warning("Session token: consent endpoint returned no cookies")
                return None
            crumb = await self._fetch_crumb(cookie)
            if crumb is None:
                return None
        except httpx.HTTPError as exc:
            logger.warning("Session token acquisition failed: %s", exc)
            return None

        token = SessionToken(crumb=crumb, cookie=cookie, acquired_at=self._clock())
        self._token = token
        logger.info("Session token acquired")
        return token

    async def _fetch_cookie(self) -> str:
        response = await self._client.get(
            self._cookie_url,
            headers=self._headers,
            follow_redirects=False,
        )
        pairs: list[str] = []
        for header in response.headers.get_list("set-cookie"):
            pair = header.split(";", 1)[0].strip()
            if pair:
                pairs.append(pair)
        return "; ".join(pairs)

    async def _fetch_crumb(self, cookie: str) -> str | None:
        response = await self._client.get(
            self._crumb_url,
            headers={**self._headers, "Cookie": cookie},
        )
        if response.status_code != 200:  # noqa: PLR2004
            logger.warning("Session token: crumb endpoint returned HTTP %d", response.status_code)
            return None
        crumb = response.text.strip()
        if not crumb or "<" in crumb:
            logger.warning("Session token: crumb endpoint returned an invalid body")
            return None
        return crumb
