"""Tests for the RateGovernor: per-provider minute and day windows.

Covers:
- N calls succeed within a window, call N+1 is refused
- Refused calls never decrement
- Minute window rollover restores the minute budget, not the day budget
- Day window rollover at UTC midnight
- Concurrent consumers never exceed the budget
- seconds_until_reset() for minute and day exhaustion
- Unknown providers and snapshot() output
"""

from __future__ import annotations

import asyncio
import math

import pytest

from Stock_Screener.config import ProviderQuota
from Stock_Screener.models.enums import Provider
from Stock_Screener.services.rate_limiter import RateGovernor

# 2024-06-01 00:00:10 UTC, ten seconds into a minute window
START = 1_717_200_010.0


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def governor(clock: FakeClock) -> RateGovernor:
    return RateGovernor(
        {
            Provider.YAHOO: ProviderQuota(per_minute=60, per_day=2000),
            Provider.ALPHA_VANTAGE: ProviderQuota(per_minute=5, per_day=25),
        },
        clock=clock,
    )


class TestTryConsume:
    """Tests for try_consume() within a single window."""

    @pytest.mark.asyncio()
    async def test_budget_then_refusal(self, governor: RateGovernor) -> None:
        """Five calls fit the minute budget, the sixth is refused."""
        granted = [await governor.try_consume(Provider.ALPHA_VANTAGE) for _ in range(5)]
        assert granted == [True] * 5
        assert await governor.try_consume(Provider.ALPHA_VANTAGE) is False

    @pytest.mark.asyncio()
    async def test_refusal_does_not_decrement(self, governor: RateGovernor) -> None:
        for _ in range(7):
            await governor.try_consume(Provider.ALPHA_VANTAGE)
        assert governor.consumed(Provider.ALPHA_VANTAGE) == 5
        assert governor.remaining(Provider.ALPHA_VANTAGE) == 0

    @pytest.mark.asyncio()
    async def test_providers_are_independent(self, governor: RateGovernor) -> None:
        for _ in range(5):
            await governor.try_consume(Provider.ALPHA_VANTAGE)
        assert await governor.try_consume(Provider.YAHOO) is True
        assert governor.remaining(Provider.YAHOO) == 59

    @pytest.mark.asyncio()
    async def test_concurrent_consumers_never_exceed_budget(self, governor: RateGovernor) -> None:
        results = await asyncio.gather(
            *(governor.try_consume(Provider.ALPHA_VANTAGE) for _ in range(20))
        )
        assert sum(results) == 5

    @pytest.mark.asyncio()
    async def test_unknown_provider_raises(self, clock: FakeClock) -> None:
        governor = RateGovernor(
            {Provider.YAHOO: ProviderQuota(per_minute=1, per_day=1)}, clock=clock
        )
        with pytest.raises(KeyError, match="alphavantage"):
            await governor.try_consume(Provider.ALPHA_VANTAGE)


class TestWindows:
    """Tests for minute and day window rollover."""

    @pytest.mark.asyncio()
    async def test_minute_rollover_restores_budget(
        self, governor: RateGovernor, clock: FakeClock
    ) -> None:
        for _ in range(5):
            await governor.try_consume(Provider.ALPHA_VANTAGE)
        clock.advance(50)  # next minute starts 50s after START
        assert await governor.try_consume(Provider.ALPHA_VANTAGE) is True

    @pytest.mark.asyncio()
    async def test_day_budget_survives_minute_rollover(self, clock: FakeClock) -> None:
        governor = RateGovernor(
            {Provider.ALPHA_VANTAGE: ProviderQuota(per_minute=10, per_day=3)}, clock=clock
        )
        for _ in range(3):
            assert await governor.try_consume(Provider.ALPHA_VANTAGE) is True
        clock.advance(120)
        assert await governor.try_consume(Provider.ALPHA_VANTAGE) is False
        assert governor.remaining(Provider.ALPHA_VANTAGE) == 0

    @pytest.mark.asyncio()
    async def test_day_rollover_restores_budget(self, clock: FakeClock) -> None:
        governor = RateGovernor(
            {Provider.ALPHA_VANTAGE: ProviderQuota(per_minute=10, per_day=3)}, clock=clock
        )
        for _ in range(3):
            await governor.try_consume(Provider.ALPHA_VANTAGE)
        clock.advance(24 * 60 * 60)
        assert await governor.try_consume(Provider.ALPHA_VANTAGE) is True

    @pytest.mark.asyncio()
    async def test_seconds_until_minute_reset(
        self, governor: RateGovernor, clock: FakeClock
    ) -> None:
        assert governor.seconds_until_reset(Provider.ALPHA_VANTAGE) == 0.0
        for _ in range(5):
            await governor.try_consume(Provider.ALPHA_VANTAGE)
        assert governor.seconds_until_reset(Provider.ALPHA_VANTAGE) == pytest.approx(50.0)

    @pytest.mark.asyncio()
    async def test_seconds_until_day_reset(self, clock: FakeClock) -> None:
        governor = RateGovernor(
            {Provider.ALPHA_VANTAGE: ProviderQuota(per_minute=10, per_day=1)}, clock=clock
        )
        await governor.try_consume(Provider.ALPHA_VANTAGE)
        assert governor.seconds_until_reset(Provider.ALPHA_VANTAGE) == pytest.approx(
            24 * 60 * 60 - 10
        )


class TestIntrospection:
    """Tests for remaining(), consumed() and snapshot()."""

    def test_unknown_provider_has_no_budget(self, governor: RateGovernor) -> None:
        assert governor.remaining(Provider.TRADINGVIEW) == 0
        assert governor.consumed(Provider.TRADINGVIEW) == 0
        assert math.isinf(governor.seconds_until_reset(Provider.TRADINGVIEW))

    @pytest.mark.asyncio()
    async def test_snapshot_reports_every_provider(self, governor: RateGovernor) -> None:
        await governor.try_consume(Provider.YAHOO)
        snapshots = {s.provider: s for s in governor.snapshot()}

        assert set(snapshots) == {Provider.YAHOO, Provider.ALPHA_VANTAGE}
        assert snapshots[Provider.YAHOO].remaining_minute == 59
        assert snapshots[Provider.YAHOO].remaining_day == 1999
        assert snapshots[Provider.ALPHA_VANTAGE].per_day == 25

    def test_providers_listed_in_configuration_order(self, governor: RateGovernor) -> None:
        assert governor.providers == [Provider.YAHOO, Provider.ALPHA_VANTAGE]
