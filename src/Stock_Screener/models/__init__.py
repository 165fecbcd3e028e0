"""Pydantic v2 models, enums, and type definitions.

Re-exports all public models so consumers can import directly:
    from Stock_Screener.models import ScanRun, RunStatus, EnrichedSeries
"""

from Stock_Screener.models.enums import HealthState, Provider, RunStatus, ScannerId
from Stock_Screener.models.health import BudgetSnapshot, HealthReport, ServiceHealth
from Stock_Screener.models.market_data import Candidate, EnrichedSeries, PriceBar
from Stock_Screener.models.scan import (
    MAX_RUN_ERRORS,
    GrowthEvent,
    ProgressCounters,
    ScanProgressView,
    ScanRun,
    ScoreResult,
    SpikeEvent,
    StockMatch,
)

__all__ = [
    # Enums
    "HealthState",
    "Provider",
    "RunStatus",
    "ScannerId",
    # Market data
    "Candidate",
    "EnrichedSeries",
    "PriceBar",
    # Scan
    "MAX_RUN_ERRORS",
    "GrowthEvent",
    "ProgressCounters",
    "ScanProgressView",
    "ScanRun",
    "ScoreResult",
    "SpikeEvent",
    "StockMatch",
    # Health
    "BudgetSnapshot",
    "HealthReport",
    "ServiceHealth",
]
