"""Health check models: dependency availability and remaining call budgets."""

import datetime

from pydantic import BaseModel, ConfigDict, computed_field

from Stock_Screener.models.enums import HealthState


class ServiceHealth(BaseModel):
    """Status of a single dependency."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: HealthState
    detail: str = ""


class BudgetSnapshot(BaseModel):
    """Remaining calls for one provider at the time of the check."""

    model_config = ConfigDict(frozen=True)

    provider: str
    remaining_minute: int
    remaining_day: int
    per_minute: int
    per_day: int


class HealthReport(BaseModel):
    """Consolidated health of providers, database and recent scans."""

    model_config = ConfigDict(frozen=True)

    services: list[ServiceHealth]
    budgets: list[BudgetSnapshot]
    last_check: datetime.datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def overall(self) -> HealthState:
        """Worst state across services; rate limiting counts as degraded."""
        states = {s.status for s in self.services}
        if HealthState.DOWN in states:
            return HealthState.DOWN
        if states & {HealthState.DEGRADED, HealthState.RATE_LIMITED}:
            return HealthState.DEGRADED
        return HealthState.HEALTHY
