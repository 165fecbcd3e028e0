"""Shared test fixtures for the stock screener test suite.

Provides deterministic synthetic price paths, builders for bars, series and
chart payloads, and an in-memory database wired to a repository and a run
registry, so tests don't need to inline large construction blocks.
"""

from __future__ import annotations

import datetime
import math
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio

from Stock_Screener.config import ScreenerSettings
from Stock_Screener.data.database import Database
from Stock_Screener.data.repository import Repository
from Stock_Screener.models.enums import Provider
from Stock_Screener.models.market_data import Candidate, EnrichedSeries, PriceBar
from Stock_Screener.services.run_registry import RunRegistry

SERIES_START = datetime.date(2023, 1, 2)
MARKET_OPEN_UTC = datetime.time(14, 30)
NEW_YORK_GMT_OFFSET = -18000


def business_days(start: datetime.date, count: int) -> list[datetime.date]:
    """The first *count* weekdays on or after *start*."""
    days: list[datetime.date] = []
    day = start
    while len(days) < count:
        if day.weekday() < 5:  # noqa: PLR2004
            days.append(day)
        day += datetime.timedelta(days=1)
    return days


def price_path(start: float, legs: list[tuple[float, int]]) -> list[float]:
    """Piecewise-linear closes: each leg moves to ``target`` over ``days`` bars."""
    closes = [start]
    for target, days in legs:
        prev = closes[-1]
        closes.extend(prev + (target - prev) * k / days for k in range(1, days + 1))
    return closes


def build_bars(
    closes: list[float],
    *,
    start: datetime.date = SERIES_START,
    spread: float = 0.02,
) -> tuple[PriceBar, ...]:
    """Daily bars with open == close and a symmetric high/low band."""
    return tuple(
        PriceBar(
            date=day,
            open=close,
            high=close * (1 + spread),
            low=close * (1 - spread),
            close=close,
            volume=100_000,
        )
        for day, close in zip(business_days(start, len(closes)), closes, strict=True)
    )


def build_chart_payload(
    bars: tuple[PriceBar, ...],
    *,
    symbol: str = "TEST",
    market_price: float | None = None,
) -> dict[str, Any]:
    """A chart API response carrying *bars*, timestamped at the New York open."""
    timestamps = [
        int(datetime.datetime.combine(bar.date, MARKET_OPEN_UTC, tzinfo=datetime.UTC).timestamp())
        for bar in bars
    ]
    return {
        "chart": {
            "result": [
                {
                    "meta": {
                        "symbol": symbol,
                        "currency": "USD",
                        "gmtoffset": NEW_YORK_GMT_OFFSET,
                        "regularMarketPrice": (
                            market_price if market_price is not None else bars[-1].close
                        ),
                    },
                    "timestamp": timestamps,
                    "indicators": {
                        "quote": [
                            {
                                "open": [bar.open for bar in bars],
                                "high": [bar.high for bar in bars],
                                "low": [bar.low for bar in bars],
                                "close": [bar.close for bar in bars],
                                "volume": [bar.volume for bar in bars],
                            }
                        ]
                    },
                }
            ],
            "error": None,
        }
    }


# ---------------------------------------------------------------------------
# Synthetic price paths
# ---------------------------------------------------------------------------


@pytest.fixture()
def kuifje_closes() -> list[float]:
    """Four boom-bust cycles ending ~90% below the all-time high.

    Bottoms at 10, 4, 1.6 and 0.64 each hold for 20 bars, then rise to
    3.5x (the last one to ~7x) and collapse to the next bottom. The series
    settles at 3.5 for 30 bars, against an all-time high of 35 * 1.02.
    """
    return price_path(
        10.0,
        [
            (10.0, 19),
            (35.0, 10),
            (35.0, 6),
            (4.0, 10),
            (4.0, 19),
            (14.0, 10),
            (14.0, 6),
            (1.6, 10),
            (1.6, 19),
            (5.6, 10),
            (5.6, 6),
            (0.64, 10),
            (0.64, 19),
            (4.5, 10),
            (4.5, 6),
            (3.5, 1),
            (3.5, 29),
        ],
    )


@pytest.fixture()
def three_cycle_closes() -> list[float]:
    """Three boom-bust cycles, the last falling straight to 3.5.

    Bottoms at 10, 4 and 1.6 each rise to 3.5x. The third boom at 5.6 drops
    to 3.5 and settles there for 30 bars, a trough whose 3x target (~10.3)
    is never reached. All-time high is 35 * 1.02.
    """
    return price_path(
        10.0,
        [
            (10.0, 19),
            (35.0, 10),
            (35.0, 6),
            (4.0, 10),
            (4.0, 19),
            (14.0, 10),
            (14.0, 6),
            (1.6, 10),
            (1.6, 19),
            (5.6, 10),
            (5.6, 6),
            (3.5, 10),
            (3.5, 30),
        ],
    )


@pytest.fixture()
def flat_closes() -> list[float]:
    """300 bars oscillating within 2% of 1.0."""
    return [1.0 + 0.02 * math.sin(i) for i in range(300)]


@pytest.fixture()
def spiked_closes(flat_closes: list[float]) -> list[float]:
    """The flat base with a 3x spike lasting 10 bars in the middle."""
    closes = list(flat_closes)
    for i in range(150, 160):
        closes[i] = 3.0
    return closes


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_bars() -> Callable[..., tuple[PriceBar, ...]]:
    return build_bars


@pytest.fixture()
def make_series() -> Callable[..., EnrichedSeries]:
    """Factory: closes -> EnrichedSeries (current price defaults to the last close)."""

    def _make(
        closes: list[float],
        *,
        symbol: str = "TEST",
        current_price: float | None = None,
        provider: Provider = Provider.YAHOO,
    ) -> EnrichedSeries:
        bars = build_bars(closes)
        return EnrichedSeries(
            symbol=symbol,
            bars=bars,
            current_price=current_price if current_price is not None else bars[-1].close,
            currency="USD",
            provider=provider,
        )

    return _make


@pytest.fixture()
def chart_payload() -> Callable[..., dict[str, Any]]:
    return build_chart_payload


@pytest.fixture()
def sample_candidate() -> Candidate:
    """A NASDAQ candidate 90% below its all-time high."""
    return Candidate(
        raw_symbol="NASDAQ:TEST",
        symbol="TEST",
        exchange="NASDAQ",
        market="us",
        name="Test Corp",
        price=3.5,
        volume=250_000,
        average_volume=300_000,
        sector="Technology",
        high_52w=4.59,
        low_52w=0.62,
        all_time_high=35.7,
    )


# ---------------------------------------------------------------------------
# Settings and persistence
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> ScreenerSettings:
    """Default settings with an in-memory database and no .env lookup."""
    return ScreenerSettings(_env_file=None, db_path=":memory:")


@pytest_asyncio.fixture()
async def database() -> AsyncGenerator[Database]:
    """A connected in-memory database with all migrations applied."""
    db = Database(":memory:")
    await db.connect()
    try:
        yield db
    finally:
        await db.close()


@pytest.fixture()
def repository(database: Database) -> Repository:
    return Repository(database)


@pytest.fixture()
def registry(repository: Repository) -> RunRegistry:
    return RunRegistry(repository, stale_after_minutes=10)
