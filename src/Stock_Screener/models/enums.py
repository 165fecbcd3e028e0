"""StrEnum types for the screening domain.

All enums use Python 3.13+ StrEnum. Values are lowercase strings.
Use enum members in business logic, never raw strings.
"""

from enum import StrEnum


class ScannerId(StrEnum):
    """Which pattern scanner a run or match belongs to."""

    KUIFJE = "kuifje"
    ZONNEBLOEM = "zonnebloem"


class RunStatus(StrEnum):
    """Lifecycle state of a scan run."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """True for states a run never leaves."""
        return self in (RunStatus.COMPLETED, RunStatus.PARTIAL, RunStatus.FAILED)


class Provider(StrEnum):
    """External data sources, each with its own call budget."""

    YAHOO = "yahoo"
    ALPHA_VANTAGE = "alphavantage"
    TRADINGVIEW = "tradingview"


class HealthState(StrEnum):
    """Coarse availability of a dependency."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    RATE_LIMITED = "rate_limited"
