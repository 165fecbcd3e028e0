"""Scan API routes.

POST /api/scan/{scanner}           : Queue a run and execute it in the background (202).
GET  /api/scan/{scanner}/progress  : Latest run's progress, after staleness repair.
GET  /api/scan/{scanner}/runs      : Recent runs (paginated).
GET  /api/scan/{scanner}/matches   : Persisted matches, optionally for one run.
"""

import asyncio
import contextlib
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from Stock_Screener.models.enums import ScannerId
from Stock_Screener.models.scan import ScanProgressView, ScanRun, StockMatch
from Stock_Screener.services.orchestrator import ScanOrchestrator
from Stock_Screener.services.run_registry import RunRegistry
from Stock_Screener.web.deps import get_orchestrator, get_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scan", tags=["scan"])

# Background run tasks keyed by scanner. Holding the reference keeps the
# task alive and lets a second POST see the run before its first flush.
_scan_tasks: dict[ScannerId, asyncio.Task[ScanRun]] = {}
_start_lock = asyncio.Lock()


async def cancel_scan_tasks() -> None:
    """Cancel and await every background run (application shutdown)."""
    tasks = list(_scan_tasks.values())
    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    _scan_tasks.clear()


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


@router.post("/{scanner}", status_code=202, response_model=ScanRun)
async def start_scan(
    scanner: ScannerId,
    orchestrator: Annotated[ScanOrchestrator, Depends(get_orchestrator)],
    registry: Annotated[RunRegistry, Depends(get_registry)],
    market: Annotated[list[str] | None, Query(description="Market ids to scan")] = None,
) -> ScanRun:
    """Queue a run for *scanner* and start executing it in the background.

    Returns the queued run immediately; poll the progress endpoint for
    counters. Answers 409 while another run of the same scanner is active.
    """
    async with _start_lock:
        active = _scan_tasks.get(scanner)
        if (active is not None and not active.done()) or await registry.has_active_run(scanner):
            raise HTTPException(status_code=409, detail=f"A {scanner} scan is already running")

        run = await orchestrator.start_run(scanner, market)
        task = asyncio.create_task(orchestrator.execute(run))
        _scan_tasks[scanner] = task

    def _on_scan_done(t: asyncio.Task[ScanRun], *, _scanner: ScannerId = scanner) -> None:
        """Drop the task reference and log any exception the run let escape."""
        if _scan_tasks.get(_scanner) is t:
            _scan_tasks.pop(_scanner, None)
        exc = t.exception() if not t.cancelled() else None
        if exc is not None:
            logger.error("Scan task %s failed: %s", run.id, exc)

    task.add_done_callback(_on_scan_done)

    logger.info("Run %s | STARTED | scanner=%s markets=%s", run.id, scanner, ",".join(run.markets))
    return run


@router.get("/{scanner}/progress", response_model=ScanProgressView)
async def get_progress(
    scanner: ScannerId,
    registry: Annotated[RunRegistry, Depends(get_registry)],
) -> ScanProgressView:
    """Return the latest run's progress; a stale run is reported as failed."""
    return await registry.get_progress(scanner)


@router.get("/{scanner}/runs", response_model=list[ScanRun])
async def list_runs(
    scanner: ScannerId,
    registry: Annotated[RunRegistry, Depends(get_registry)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[ScanRun]:
    """List recent runs of *scanner* with pagination."""
    return await registry.list_runs(scanner, limit=limit, offset=offset)


@router.get("/{scanner}/matches", response_model=list[StockMatch])
async def list_matches(
    scanner: ScannerId,
    registry: Annotated[RunRegistry, Depends(get_registry)],
    run_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[StockMatch]:
    """Return persisted matches, highest score first when scoped to one run."""
    if run_id is not None and await registry.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail=f"Scan run '{run_id}' not found")
    return await registry.list_matches(scanner, run_id=run_id, limit=limit)
