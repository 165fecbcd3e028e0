"""Response cache for the quote providers, with TTLs tied to the US session.

A hit skips the provider call entirely and consumes no call budget. Quotes
and short chart ranges ("1d", "5d") are only kept for minutes; multi-year
daily history is kept for an hour while New York is trading and half a day
otherwise. Quotes live in process memory. History is written through to the
``service_cache`` table when a Database is attached, so a restarted process
can scan again without re-downloading every chart.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable
from typing import Final
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict

from Stock_Screener.data.database import Database

logger = logging.getLogger(__name__)

TTL_SHORT_RANGE: Final[int] = 5 * 60
TTL_HISTORY_MARKET: Final[int] = 60 * 60
TTL_HISTORY_AFTER: Final[int] = 12 * 60 * 60
TTL_QUOTE_MARKET: Final[int] = 60
TTL_QUOTE_AFTER: Final[int] = 5 * 60

SHORT_RANGES: Final[frozenset[str]] = frozenset({"1d", "5d"})

DATA_TYPE_HISTORY: Final[str] = "history"
DATA_TYPE_QUOTE: Final[str] = "quote"
_PERSISTENT_PREFIX: Final[str] = f"chart:{DATA_TYPE_HISTORY}:"

# Every N reads the memory tier is swept for expired entries.
LAZY_CLEANUP_INTERVAL: Final[int] = 100

NEW_YORK: Final[ZoneInfo] = ZoneInfo("America/New_York")
SESSION_OPEN: Final[datetime.time] = datetime.time(9, 30)
SESSION_CLOSE: Final[datetime.time] = datetime.time(16, 0)

_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS service_cache (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    ttl_seconds INTEGER NOT NULL
)
"""


def history_key(symbol: str, range_: str, interval: str) -> str:
    """Cache key for a price-history response."""
    return f"{_PERSISTENT_PREFIX}{symbol}:{range_}:{interval}"


def quote_key(symbol: str) -> str:
    """Cache key for a single-price quote."""
    return f"chart:{DATA_TYPE_QUOTE}:{symbol}"


def us_session_open(moment: datetime.datetime) -> bool:
    """True between 9:30 and 16:00 New York time on a weekday. Holidays are not modelled."""
    local = moment.astimezone(NEW_YORK)
    if local.weekday() >= 5:
        return False
    return SESSION_OPEN <= local.time() < SESSION_CLOSE


class CacheEntry(BaseModel):
    """One cached payload. A ``ttl_seconds`` of 0 means it never expires."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str
    created_at: datetime.datetime
    ttl_seconds: int

    @property
    def expires_at(self) -> datetime.datetime | None:
        if self.ttl_seconds == 0:
            return None
        return self.created_at + datetime.timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime.datetime | None = None) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return (now or datetime.datetime.now(datetime.UTC)) > expires_at


class ServiceCache:
    """Memory tier for quotes, write-through SQLite tier for history.

    Usage::

        cache = ServiceCache(database=db)
        await cache.initialize()

        key = history_key("SHOP.TO", "5y", "1d")
        payload = await cache.get(key)
        if payload is None:
            series = await fetch(...)
            await cache.set(key, series.model_dump_json(), cache.get_ttl("5y"))
    """

    def __init__(
        self,
        database: Database | None = None,
        *,
        now: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self._database = database
        self._now = now or (lambda: datetime.datetime.now(datetime.UTC))
        self._memory_cache: dict[str, CacheEntry] = {}
        self._reads_since_sweep = 0
        self._table_ready = False

    @property
    def _persistent_tier(self) -> Database | None:
        return self._database if self._table_ready else None

    async def initialize(self) -> None:
        """Create the ``service_cache`` table. Safe to call more than once."""
        if self._database is None or self._table_ready:
            return
        await self._write(_DDL, ())
        self._table_ready = True
        logger.debug("service_cache table ready")

    async def get(self, key: str) -> str | None:
        """Return the cached payload, or None on a miss. Expired entries are dropped."""
        self._count_read()
        entry = self._memory_cache.get(key)
        if entry is None and key.startswith(_PERSISTENT_PREFIX):
            entry = await self._load(key)
        if entry is None:
            logger.debug("cache miss %s", key)
            return None
        if entry.is_expired(self._now()):
            logger.debug("cache expired %s", key)
            await self.invalidate(key)
            return None
        logger.debug("cache hit %s", key)
        return entry.value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        entry = CacheEntry(key=key, value=value, created_at=self._now(), ttl_seconds=ttl_seconds)
        if key.startswith(_PERSISTENT_PREFIX) and self._persistent_tier is not None:
            await self._write(
                "INSERT OR REPLACE INTO service_cache (key, value, created_at, ttl_seconds) "
                "VALUES (?, ?, ?, ?)",
                (key, value, entry.created_at.isoformat(), ttl_seconds),
            )
        else:
            self._memory_cache[key] = entry

    async def invalidate(self, key: str) -> None:
        """Remove *key* from both tiers."""
        self._memory_cache.pop(key, None)
        if self._persistent_tier is not None:
            await self._write("DELETE FROM service_cache WHERE key = ?", (key,))

    def is_market_hours(self) -> bool:
        return us_session_open(self._now())

    def get_ttl(self, range_: str) -> int:
        """TTL in seconds for a chart *range_*, or for ``DATA_TYPE_QUOTE``."""
        trading = self.is_market_hours()
        if range_ == DATA_TYPE_QUOTE:
            return TTL_QUOTE_MARKET if trading else TTL_QUOTE_AFTER
        if range_ in SHORT_RANGES:
            return TTL_SHORT_RANGE
        return TTL_HISTORY_MARKET if trading else TTL_HISTORY_AFTER

    def _count_read(self) -> None:
        self._reads_since_sweep += 1
        if self._reads_since_sweep < LAZY_CLEANUP_INTERVAL:
            return
        self._reads_since_sweep = 0
        now = self._now()
        stale = [key for key, entry in self._memory_cache.items() if entry.is_expired(now)]
        for key in stale:
            del self._memory_cache[key]
        if stale:
            logger.debug("swept %d expired cache entries", len(stale))

    async def _load(self, key: str) -> CacheEntry | None:
        database = self._persistent_tier
        if database is None:
            return None
        cursor = await database.connection.execute(
            "SELECT value, created_at, ttl_seconds FROM service_cache WHERE key = ?",
            (key,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        value, created_at, ttl_seconds = row
        return CacheEntry(
            key=key,
            value=value,
            created_at=datetime.datetime.fromisoformat(created_at),
            ttl_seconds=ttl_seconds,
        )

    async def _write(self, sql: str, params: tuple[object, ...]) -> None:
        assert self._database is not None
        conn = self._database.connection
        await conn.execute(sql, params)
        await conn.commit()
