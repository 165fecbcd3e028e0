"""Per-provider call budgets with fixed minute and day windows.

Each provider gets an independent budget (e.g. Alpha Vantage's free tier:
5 calls per minute, 25 per day). ``try_consume`` decrements atomically under
an asyncio.Lock and refuses without decrementing once either window is
exhausted; ``remaining`` is advisory and used by health checks and the
orchestrator to size its worker pool and to skip the secondary provider.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import math
import time
from collections.abc import Callable, Mapping
from typing import Final

from Stock_Screener.config import ProviderQuota
from Stock_Screener.models.enums import Provider
from Stock_Screener.models.health import BudgetSnapshot

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MINUTE_WINDOW_SECONDS: Final[float] = 60.0
SECONDS_PER_DAY: Final[float] = 24 * 60 * 60


class RateBudget:
    """Call counters for one provider over a fixed minute and a UTC day window.

    Not thread-safe on its own; the RateGovernor serializes mutation.
    """

    def __init__(self, provider: Provider, quota: ProviderQuota, now: float) -> None:
        self.provider = provider
        self.quota = quota
        self.minute_window_start = _minute_start(now)
        self.day_window_start = _day_start(now)
        self.minute_used = 0
        self.day_used = 0
        self.total_consumed = 0

    def roll(self, now: float) -> None:
        """Reset counters whose window has elapsed."""
        minute_start = _minute_start(now)
        if minute_start != self.minute_window_start:
            self.minute_window_start = minute_start
            self.minute_used = 0
        day_start = _day_start(now)
        if day_start != self.day_window_start:
            self.day_window_start = day_start
            self.day_used = 0
            logger.info("Daily budget reset for %s", self.provider)

    @property
    def remaining_minute(self) -> int:
        return max(0, self.quota.per_minute - self.minute_used)

    @property
    def remaining_day(self) -> int:
        return max(0, self.quota.per_day - self.day_used)

    @property
    def remaining(self) -> int:
        return min(self.remaining_minute, self.remaining_day)


class RateGovernor:
    """Track and enforce per-provider call budgets.

    Usage::

        governor = RateGovernor(settings.quotas())

        if await governor.try_consume(Provider.ALPHA_VANTAGE):
            response = await client.get(...)
        else:
            raise RateLimited(...)

        governor.remaining(Provider.YAHOO)  # advisory, never negative
    """

    def __init__(
        self,
        quotas: Mapping[Provider, ProviderQuota],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        now = clock()
        self._budgets: dict[Provider, RateBudget] = {
            provider: RateBudget(provider, quota, now) for provider, quota in quotas.items()
        }
        self._lock = asyncio.Lock()

        logger.info(
            "RateGovernor initialized: %s",
            ", ".join(
                f"{p}={q.per_minute}/min {q.per_day}/day" for p, q in quotas.items()
            ),
        )

    @property
    def providers(self) -> list[Provider]:
        return list(self._budgets)

    async def try_consume(self, provider: Provider) -> bool:
        """Take one call from the provider's budget.

        Returns:
            True if a call was granted, False (with nothing decremented)
            when the minute or day window is exhausted.
        """
        budget = self._require(provider)
        async with self._lock:
            budget.roll(self._clock())
            if budget.remaining <= 0:
                logger.debug(
                    "Budget exhausted for %s (minute=%d/%d day=%d/%d)",
                    provider,
                    budget.minute_used,
                    budget.quota.per_minute,
                    budget.day_used,
                    budget.quota.per_day,
                )
                return False
            budget.minute_used += 1
            budget.day_used += 1
            budget.total_consumed += 1
            return True

    def remaining(self, provider: Provider) -> int:
        """Calls still available right now; 0 for unknown providers."""
        budget = self._budgets.get(provider)
        if budget is None:
            return 0
        budget.roll(self._clock())
        return budget.remaining

    def consumed(self, provider: Provider) -> int:
        """Lifetime number of granted calls, used for per-run tallies."""
        budget = self._budgets.get(provider)
        return budget.total_consumed if budget is not None else 0

    def seconds_until_reset(self, provider: Provider) -> float:
        """Seconds until the exhausted window for this provider rolls over.

        Returns 0.0 when the provider still has budget, and ``math.inf``
        for an unknown provider.
        """
        budget = self._budgets.get(provider)
        if budget is None:
            return math.inf
        now = self._clock()
        budget.roll(now)
        if budget.remaining > 0:
            return 0.0
        if budget.remaining_day <= 0:
            return budget.day_window_start + SECONDS_PER_DAY - now
        return budget.minute_window_start + MINUTE_WINDOW_SECONDS - now

    def snapshot(self) -> list[BudgetSnapshot]:
        """Current state of every budget, for health output."""
        now = self._clock()
        snapshots: list[BudgetSnapshot] = []
        for provider, budget in self._budgets.items():
            budget.roll(now)
            snapshots.append(
                BudgetSnapshot(
                    provider=provider,
                    remaining_minute=budget.remaining_minute,
                    remaining_day=budget.remaining_day,
                    per_minute=budget.quota.per_minute,
                    per_day=budget.quota.per_day,
                )
            )
        return snapshots

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, provider: Provider) -> RateBudget:
        budget = self._budgets.get(provider)
        if budget is None:
            msg = f"No budget configured for provider '{provider}'"
            raise KeyError(msg)
        return budget


def _minute_start(now: float) -> float:
    return math.floor(now / MINUTE_WINDOW_SECONDS) * MINUTE_WINDOW_SECONDS


def _day_start(now: float) -> float:
    day = datetime.datetime.fromtimestamp(now, tz=datetime.UTC).date()
    return datetime.datetime(day.year, day.month, day.day, tzinfo=datetime.UTC).timestamp()
