"""Tests for ServiceCache: memory and SQLite tiers, TTLs, and market hours."""

from __future__ import annotations

import datetime

import pytest

from Stock_Screener.data.database import Database
from Stock_Screener.services.cache import (
    DATA_TYPE_QUOTE,
    LAZY_CLEANUP_INTERVAL,
    TTL_HISTORY_AFTER,
    TTL_HISTORY_MARKET,
    TTL_QUOTE_AFTER,
    TTL_QUOTE_MARKET,
    TTL_SHORT_RANGE,
    CacheEntry,
    ServiceCache,
    history_key,
    quote_key,
)

# Monday 2024-06-03, 10:00 in New York
MARKET_OPEN = datetime.datetime(2024, 6, 3, 14, 0, tzinfo=datetime.UTC)
# Monday 2024-06-03, 17:00 in New York
AFTER_HOURS = datetime.datetime(2024, 6, 3, 21, 0, tzinfo=datetime.UTC)
# Saturday 2024-06-08, 10:00 in New York
WEEKEND = datetime.datetime(2024, 6, 8, 14, 0, tzinfo=datetime.UTC)


class FakeNow:
    def __init__(self, now: datetime.datetime = MARKET_OPEN) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now


class TestKeys:
    def test_history_key(self) -> None:
        assert history_key("SHOP.TO", "5y", "1d") == "chart:history:SHOP.TO:5y:1d"

    def test_quote_key(self) -> None:
        assert quote_key("SHOP.TO") == "chart:quote:SHOP.TO"


class TestMemoryTier:
    """Tests for the in-memory tier without a database."""

    @pytest.mark.asyncio()
    async def test_set_then_get(self) -> None:
        cache = ServiceCache(now=FakeNow())
        await cache.set(quote_key("AAPL"), "189.5", 60)
        assert await cache.get(quote_key("AAPL")) == "189.5"

    @pytest.mark.asyncio()
    async def test_miss_returns_none(self) -> None:
        assert await ServiceCache().get("chart:quote:NOPE") is None

    @pytest.mark.asyncio()
    async def test_entry_expires_after_ttl(self) -> None:
        clock = FakeNow()
        cache = ServiceCache(now=clock)
        await cache.set(quote_key("AAPL"), "189.5", 60)

        clock.now += datetime.timedelta(seconds=61)
        assert await cache.get(quote_key("AAPL")) is None

    @pytest.mark.asyncio()
    async def test_invalidate(self) -> None:
        cache = ServiceCache(now=FakeNow())
        await cache.set(quote_key("AAPL"), "189.5", 60)
        await cache.invalidate(quote_key("AAPL"))
        assert await cache.get(quote_key("AAPL")) is None

    @pytest.mark.asyncio()
    async def test_lazy_cleanup_evicts_expired_entries(self) -> None:
        clock = FakeNow()
        cache = ServiceCache(now=clock)
        await cache.set(quote_key("OLD"), "1.0", 10)
        clock.now += datetime.timedelta(seconds=11)

        for _ in range(LAZY_CLEANUP_INTERVAL):
            await cache.get(quote_key("OTHER"))
        assert quote_key("OLD") not in cache._memory_cache


class TestSqliteTier:
    """History keys persist in SQLite when a database is configured."""

    @pytest.mark.asyncio()
    async def test_history_survives_a_new_cache_instance(self, database: Database) -> None:
        key = history_key("TEST", "5y", "1d")
        first = ServiceCache(database, now=FakeNow())
        await first.initialize()
        await first.set(key, '{"bars": []}', TTL_HISTORY_MARKET)

        second = ServiceCache(database, now=FakeNow())
        await second.initialize()
        assert await second.get(key) == '{"bars": []}'

    @pytest.mark.asyncio()
    async def test_expired_history_row_deleted(self, database: Database) -> None:
        clock = FakeNow()
        key = history_key("TEST", "5y", "1d")
        cache = ServiceCache(database, now=clock)
        await cache.initialize()
        await cache.set(key, "payload", 60)

        clock.now += datetime.timedelta(minutes=5)
        assert await cache.get(key) is None

        cursor = await database.connection.execute(
            "SELECT COUNT(*) FROM service_cache WHERE key = ?", (key,)
        )
        row = await cursor.fetchone()
        assert row is not None
        assert row[0] == 0

    @pytest.mark.asyncio()
    async def test_quotes_stay_in_memory(self, database: Database) -> None:
        cache = ServiceCache(database, now=FakeNow())
        await cache.initialize()
        await cache.set(quote_key("AAPL"), "189.5", 60)

        cursor = await database.connection.execute("SELECT COUNT(*) FROM service_cache")
        row = await cursor.fetchone()
        assert row is not None
        assert row[0] == 0


class TestTtl:
    """Tests for market-hours awareness and TTL selection."""

    @pytest.mark.parametrize(
        ("now", "expected"),
        [(MARKET_OPEN, True), (AFTER_HOURS, False), (WEEKEND, False)],
    )
    def test_is_market_hours(self, now: datetime.datetime, expected: bool) -> None:
        assert ServiceCache(now=FakeNow(now)).is_market_hours() is expected

    def test_ttl_during_market_hours(self) -> None:
        cache = ServiceCache(now=FakeNow(MARKET_OPEN))
        assert cache.get_ttl(DATA_TYPE_QUOTE) == TTL_QUOTE_MARKET
        assert cache.get_ttl("5d") == TTL_SHORT_RANGE
        assert cache.get_ttl("5y") == TTL_HISTORY_MARKET

    def test_ttl_after_hours(self) -> None:
        cache = ServiceCache(now=FakeNow(AFTER_HOURS))
        assert cache.get_ttl(DATA_TYPE_QUOTE) == TTL_QUOTE_AFTER
        assert cache.get_ttl("1d") == TTL_SHORT_RANGE
        assert cache.get_ttl("2y") == TTL_HISTORY_AFTER

    def test_zero_ttl_never_expires(self) -> None:
        entry = CacheEntry(key="k", value="v", created_at=MARKET_OPEN, ttl_seconds=0)
        assert entry.is_expired(MARKET_OPEN + datetime.timedelta(days=365)) is False
