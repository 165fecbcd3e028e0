"""Provider clients, budgets, discovery, and scan orchestration services.

Re-exports all public service classes so consumers can import directly:
    from Stock_Screener.services import QuoteClient, ScanOrchestrator
"""

from Stock_Screener.services.cache import CacheEntry, ServiceCache
from Stock_Screener.services.discovery import MARKETS, CandidateDiscovery, MarketConfig
from Stock_Screener.services.health import HealthService
from Stock_Screener.services.orchestrator import ScanOrchestrator
from Stock_Screener.services.quote_client import QuoteClient
from Stock_Screener.services.rate_limiter import RateGovernor
from Stock_Screener.services.run_registry import RunRegistry
from Stock_Screener.services.session import SessionToken, SessionTokenCache
from Stock_Screener.services.symbols import normalize_symbol, to_secondary_symbol

__all__ = [
    # Infrastructure
    "CacheEntry",
    "RateGovernor",
    "ServiceCache",
    "SessionToken",
    "SessionTokenCache",
    # Data services
    "MARKETS",
    "CandidateDiscovery",
    "MarketConfig",
    "QuoteClient",
    "normalize_symbol",
    "to_secondary_symbol",
    # Orchestration
    "HealthService",
    "RunRegistry",
    "ScanOrchestrator",
]
