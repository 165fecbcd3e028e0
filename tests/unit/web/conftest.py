"""Shared fixtures for web route tests.

Provides a test FastAPI app whose registry, orchestrator and health service
dependencies are AsyncMocks, an async client over ASGITransport, and sample
runs, matches and health reports, so route tests never touch SQLite or the
network.
"""

from __future__ import annotations

import datetime
from collections.abc import AsyncGenerator, Iterator
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from Stock_Screener.config import ScreenerSettings
from Stock_Screener.models.enums import HealthState, Provider, RunStatus, ScannerId
from Stock_Screener.models.health import BudgetSnapshot, HealthReport, ServiceHealth
from Stock_Screener.models.scan import ScanRun, StockMatch
from Stock_Screener.services.health import HealthService
from Stock_Screener.services.orchestrator import ScanOrchestrator
from Stock_Screener.services.run_registry import RunRegistry
from Stock_Screener.web import create_app
from Stock_Screener.web.deps import get_health_service, get_orchestrator, get_registry
from Stock_Screener.web.routes import scan as scan_routes

STARTED = datetime.datetime(2025, 3, 10, 8, 0, tzinfo=datetime.UTC)


@pytest.fixture(autouse=True)
def _clear_scan_tasks() -> Iterator[None]:
    """Background run tasks are module state; never leak them across tests."""
    scan_routes._scan_tasks.clear()
    yield
    scan_routes._scan_tasks.clear()


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_scan_run() -> ScanRun:
    """A queued Kuifje run over the US and Canada."""
    return ScanRun(
        id="run-1",
        scanner=ScannerId.KUIFJE,
        status=RunStatus.QUEUED,
        started_at=STARTED,
        markets=["us", "ca"],
    )


@pytest.fixture()
def sample_match() -> StockMatch:
    return StockMatch(
        run_id="run-1",
        scanner=ScannerId.KUIFJE,
        symbol="TEST",
        name="Test Corp",
        market="us",
        exchange="NASDAQ",
        score=9.02,
        metrics={"ath_decline_pct": 90.2, "growth_event_count": 4.0},
        needs_review=True,
        review_reasons=["Only 201 data points (expected 500+)"],
        detected_at=STARTED,
    )


@pytest.fixture()
def sample_health_report() -> HealthReport:
    """Primary healthy, secondary out of budget."""
    return HealthReport(
        services=[
            ServiceHealth(name="yahoo", status=HealthState.HEALTHY, detail="AAPL 190.50"),
            ServiceHealth(
                name="alphavantage",
                status=HealthState.RATE_LIMITED,
                detail="budget exhausted, resets in 40s",
            ),
            ServiceHealth(name="database", status=HealthState.HEALTHY),
        ],
        budgets=[
            BudgetSnapshot(
                provider=Provider.ALPHA_VANTAGE,
                remaining_minute=0,
                remaining_day=20,
                per_minute=5,
                per_day=25,
            )
        ],
        last_check=STARTED,
    )


# ---------------------------------------------------------------------------
# Mocked dependencies
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_registry(sample_scan_run: ScanRun) -> AsyncMock:
    registry = AsyncMock(spec=RunRegistry)
    registry.has_active_run = AsyncMock(return_value=False)
    registry.get_run = AsyncMock(return_value=sample_scan_run)
    registry.list_runs = AsyncMock(return_value=[sample_scan_run])
    registry.list_matches = AsyncMock(return_value=[])
    return registry


@pytest.fixture()
def mock_orchestrator(sample_scan_run: ScanRun) -> AsyncMock:
    orchestrator = AsyncMock(spec=ScanOrchestrator)
    orchestrator.start_run = AsyncMock(return_value=sample_scan_run)
    orchestrator.execute = AsyncMock(
        return_value=sample_scan_run.model_copy(update={"status": RunStatus.COMPLETED})
    )
    return orchestrator


@pytest.fixture()
def mock_health(sample_health_report: HealthReport) -> AsyncMock:
    service = AsyncMock(spec=HealthService)
    service.check_all = AsyncMock(return_value=sample_health_report)
    return service


@pytest.fixture()
def app(
    settings: ScreenerSettings,
    mock_registry: AsyncMock,
    mock_orchestrator: AsyncMock,
    mock_health: AsyncMock,
) -> FastAPI:
    """Create a test app with every service dependency overridden."""
    test_app = create_app(settings)

    async def override_registry() -> AsyncMock:
        return mock_registry

    async def override_orchestrator() -> AsyncMock:
        return mock_orchestrator

    async def override_health() -> AsyncMock:
        return mock_health

    test_app.dependency_overrides[get_registry] = override_registry
    test_app.dependency_overrides[get_orchestrator] = override_orchestrator
    test_app.dependency_overrides[get_health_service] = override_health
    return test_app


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient]:
    """Async client over ASGITransport (the lifespan is not run)."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client
