"""Health checks for the quote providers, the database and recent scans.

Each check runs independently with its own timeout so a single dependency
being down does not block the entire report. The primary provider is probed
with a canary symbol; the secondary is judged by its remaining budget only,
since its free tier is too small to spend on probes.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from typing import Final

from Stock_Screener.data.database import Database
from Stock_Screener.models.enums import HealthState, Provider, RunStatus, ScannerId
from Stock_Screener.models.health import HealthReport, ServiceHealth
from Stock_Screener.services.quote_client import QuoteClient
from Stock_Screener.services.rate_limiter import RateGovernor
from Stock_Screener.services.run_registry import RunRegistry
from Stock_Screener.utils.exceptions import DataFetchError, RateLimited

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CANARY_SYMBOL: Final[str] = "AAPL"
CANARY_RANGE: Final[str] = "5d"

# Timeouts for individual health checks (seconds)
PROVIDER_CHECK_TIMEOUT: Final[float] = 10.0
SQLITE_CHECK_TIMEOUT: Final[float] = 5.0

_RUN_HEALTH: Final[dict[RunStatus, HealthState]] = {
    RunStatus.QUEUED: HealthState.HEALTHY,
    RunStatus.RUNNING: HealthState.HEALTHY,
    RunStatus.COMPLETED: HealthState.HEALTHY,
    RunStatus.PARTIAL: HealthState.DEGRADED,
    RunStatus.FAILED: HealthState.DOWN,
}


class HealthService:
    """Check availability of providers, persistence and the latest runs.

    Usage::

        health = HealthService(
            database=db, quotes=quotes, governor=governor, registry=registry
        )
        report = await health.check_all()
        if report.overall is HealthState.DOWN:
            logger.warning("Screener dependencies are down.")
    """

    def __init__(
        self,
        *,
        database: Database | None,
        quotes: QuoteClient,
        governor: RateGovernor,
        registry: RunRegistry | None = None,
    ) -> None:
        self._database = database
        self._quotes = quotes
        self._governor = governor
        self._registry = registry

    async def check_all(self) -> HealthReport:
        """Run all health checks concurrently and return a consolidated report."""
        results = await asyncio.gather(
            self.check_primary(),
            self.check_secondary(),
            self.check_database(),
            self.check_last_scans(),
            return_exceptions=True,
        )

        names = ("yahoo", "alphavantage", "database", "scans")
        services: list[ServiceHealth] = []
        for name, result in zip(names, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning("%s health check raised: %s", name, result)
                services.append(
                    ServiceHealth(name=name, status=HealthState.DOWN, detail=str(result))
                )
            elif isinstance(result, list):
                services.extend(result)
            else:
                services.append(result)

        report = HealthReport(
            services=services,
            budgets=self._governor.snapshot(),
            last_check=datetime.datetime.now(datetime.UTC),
        )
        logger.info(
            "Health check complete: overall=%s %s",
            report.overall,
            " ".join(f"{s.name}={s.status}" for s in report.services),
        )
        return report

    async def check_primary(self) -> ServiceHealth:
        """Fetch a short canary history from the primary only.

        The secondary is never asked. A cached series it served earlier still
        counts as degraded.
        """
        try:
            series = await asyncio.wait_for(
                self._quotes.fetch_series(CANARY_SYMBOL, range_=CANARY_RANGE, fallback=False),
                timeout=PROVIDER_CHECK_TIMEOUT,
            )
        except TimeoutError:
            logger.warning("Primary provider canary timed out.")
            return ServiceHealth(name="yahoo", status=HealthState.DOWN, detail="timed out")
        except RateLimited as exc:
            return ServiceHealth(name="yahoo", status=HealthState.RATE_LIMITED, detail=str(exc))
        except DataFetchError as exc:
            logger.warning("Primary provider canary failed: %s", exc)
            return ServiceHealth(name="yahoo", status=HealthState.DOWN, detail=str(exc))

        if series.provider is not Provider.YAHOO:
            return ServiceHealth(
                name="yahoo",
                status=HealthState.DEGRADED,
                detail=f"canary served by {series.provider}",
            )
        return ServiceHealth(
            name="yahoo",
            status=HealthState.HEALTHY,
            detail=f"{CANARY_SYMBOL} {series.current_price:.2f}",
        )

    async def check_secondary(self) -> ServiceHealth:
        remaining = self._governor.remaining(Provider.ALPHA_VANTAGE)
        if remaining <= 0:
            wait = self._governor.seconds_until_reset(Provider.ALPHA_VANTAGE)
            return ServiceHealth(
                name="alphavantage",
                status=HealthState.RATE_LIMITED,
                detail=f"budget exhausted, resets in {wait:.0f}s",
            )
        return ServiceHealth(
            name="alphavantage",
            status=HealthState.HEALTHY,
            detail=f"{remaining} calls available",
        )

    async def check_database(self) -> ServiceHealth:
        """Check that the SQLite database answers and migrations were applied."""
        if self._database is None:
            logger.debug("No database configured for health check.")
            return ServiceHealth(name="database", status=HealthState.DOWN, detail="not configured")

        try:
            is_available = await asyncio.wait_for(
                self._database.ping(),
                timeout=SQLITE_CHECK_TIMEOUT,
            )
        except TimeoutError:
            logger.warning("SQLite health check timed out.")
            return ServiceHealth(name="database", status=HealthState.DOWN, detail="timed out")

        if not is_available:
            return ServiceHealth(name="database", status=HealthState.DOWN, detail="ping failed")
        return ServiceHealth(name="database", status=HealthState.HEALTHY)

    async def check_last_scans(self) -> list[ServiceHealth]:
        """One entry per scanner describing its latest run, after staleness repair."""
        if self._registry is None:
            return []

        entries: list[ServiceHealth] = []
        for scanner in ScannerId:
            run = await self._registry.get_latest(scanner)
            name = f"scan:{scanner}"
            if run is None:
                entries.append(
                    ServiceHealth(name=name, status=HealthState.HEALTHY, detail="never run")
                )
                continue
            detail = f"{run.status} at {run.started_at.isoformat(timespec='seconds')}"
            if run.errors:
                detail += f" ({len(run.errors)} errors, first: {run.errors[0]})"
            entries.append(ServiceHealth(name=name, status=_RUN_HEALTH[run.status], detail=detail))
        return entries
