"""Dependency injection providers for FastAPI route handlers.

All shared resources are created once during the application lifespan and
stored on ``app.state``. Route handlers never construct them directly; they
declare dependencies and FastAPI injects them, which also lets tests swap
any of them through ``app.dependency_overrides``.
"""

import logging
from collections.abc import AsyncGenerator

from fastapi import Request

from Stock_Screener.data.database import Database
from Stock_Screener.services.health import HealthService
from Stock_Screener.services.orchestrator import ScanOrchestrator
from Stock_Screener.services.run_registry import RunRegistry

logger = logging.getLogger(__name__)


async def get_database(request: Request) -> AsyncGenerator[Database]:
    """Yield the Database instance from application state."""
    db: Database = request.app.state.database
    yield db


async def get_registry(request: Request) -> RunRegistry:
    """Return the app-wide RunRegistry."""
    registry: RunRegistry = request.app.state.registry
    return registry


async def get_orchestrator(request: Request) -> ScanOrchestrator:
    """Return the app-wide ScanOrchestrator.

    It shares the process-wide rate governor and token cache, so budgets
    hold across concurrently running scanners.
    """
    orchestrator: ScanOrchestrator = request.app.state.orchestrator
    return orchestrator


async def get_health_service(request: Request) -> HealthService:
    """Return a HealthService over the app-wide runtime."""
    return request.app.state.runtime.health_service()
