"""Process-wide wiring of the screener's shared components.

The web lifespan and each CLI command open one ScreenerRuntime: a single
database connection, HTTP client, rate governor and token cache shared by
discovery, the quote client and the orchestrator. Budgets and session tokens
are only meaningful when every caller goes through the same instances.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx

from Stock_Screener.config import ScreenerSettings
from Stock_Screener.data.database import Database
from Stock_Screener.data.repository import Repository
from Stock_Screener.services._helpers import build_http_client
from Stock_Screener.services.cache import ServiceCache
from Stock_Screener.services.discovery import CandidateDiscovery
from Stock_Screener.services.health import HealthService
from Stock_Screener.services.orchestrator import ScanOrchestrator
from Stock_Screener.services.quote_client import QuoteClient
from Stock_Screener.services.rate_limiter import RateGovernor
from Stock_Screener.services.run_registry import RunRegistry
from Stock_Screener.services.session import SessionTokenCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScreenerRuntime:
    """The connected component graph for one process."""

    settings: ScreenerSettings
    database: Database
    client: httpx.AsyncClient
    cache: ServiceCache
    governor: RateGovernor
    tokens: SessionTokenCache
    quotes: QuoteClient
    discovery: CandidateDiscovery
    registry: RunRegistry
    orchestrator: ScanOrchestrator

    def health_service(self) -> HealthService:
        return HealthService(
            database=self.database,
            quotes=self.quotes,
            governor=self.governor,
            registry=self.registry,
        )


@contextlib.asynccontextmanager
async def open_runtime(
    settings: ScreenerSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[ScreenerRuntime]:
    """Connect the database, build every service, and tear them down on exit.

    Args:
        settings: Resolved screener settings.
        transport: Optional httpx transport replacing the network, used by
            tests to serve canned provider responses.
    """
    database = Database(settings.db_path)
    await database.connect()
    client = build_http_client(
        timeout_seconds=settings.http_timeout_seconds,
        user_agent=settings.user_agent,
        transport=transport,
    )
    try:
        cache = ServiceCache(database=database)
        await cache.initialize()
        governor = RateGovernor(settings.quotas())
        tokens = SessionTokenCache(
            client,
            cookie_url=settings.yahoo_cookie_url,
            crumb_url=settings.yahoo_crumb_url,
            ttl_seconds=settings.token_ttl_seconds,
            user_agent=settings.user_agent,
        )
        quotes = QuoteClient(client, governor, tokens, settings=settings, cache=cache)
        discovery = CandidateDiscovery(client, settings=settings)
        registry = RunRegistry(Repository(database), stale_after_minutes=settings.stale_run_minutes)
        orchestrator = ScanOrchestrator(
            settings=settings,
            registry=registry,
            discovery=discovery,
            quotes=quotes,
            governor=governor,
        )
        yield ScreenerRuntime(
            settings=settings,
            database=database,
            client=client,
            cache=cache,
            governor=governor,
            tokens=tokens,
            quotes=quotes,
            discovery=discovery,
            registry=registry,
            orchestrator=orchestrator,
        )
    finally:
        await client.aclose()
        await database.close()
        logger.debug("Runtime closed.")
