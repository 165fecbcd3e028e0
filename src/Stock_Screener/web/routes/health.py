"""Health route: dependency status and remaining provider budgets."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from Stock_Screener.models.health import HealthReport
from Stock_Screener.services.health import HealthService
from Stock_Screener.web.deps import get_health_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthReport)
async def health(
    service: Annotated[HealthService, Depends(get_health_service)],
) -> HealthReport:
    """Run all health checks and return the consolidated report."""
    return await service.check_all()
