"""Run registry: the persisted lifecycle of scan runs.

Wraps the Repository with the run-level rules: new runs start ``queued``,
and any read of a run that is still non-terminal after the staleness window
rewrites it as ``failed``. A host that is killed mid-run therefore never
leaves a scanner stuck in ``running``; the next progress poll repairs it.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from collections.abc import Callable

from Stock_Screener.data.repository import Repository
from Stock_Screener.models.enums import RunStatus, ScannerId
from Stock_Screener.models.scan import MAX_RUN_ERRORS, ScanProgressView, ScanRun, StockMatch

logger = logging.getLogger(__name__)


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class RunRegistry:
    """Create, persist, and read back scan runs with read-time staleness repair.

    Usage::

        registry = RunRegistry(Repository(db), stale_after_minutes=10)
        run = await registry.start_run(ScannerId.KUIFJE, ["us", "ca"])
        view = await registry.get_progress(ScannerId.KUIFJE)
    """

    def __init__(
        self,
        repository: Repository,
        *,
        stale_after_minutes: float = 10.0,
        now: Callable[[], datetime.datetime] = _utc_now,
    ) -> None:
        self._repository = repository
        self._stale_after = datetime.timedelta(minutes=stale_after_minutes)
        self._stale_after_minutes = stale_after_minutes
        self._now = now

    @property
    def repository(self) -> Repository:
        return self._repository

    async def start_run(self, scanner: ScannerId, markets: list[str]) -> ScanRun:
        """Persist and return a new ``queued`` run."""
        run = ScanRun(
            id=uuid.uuid4().hex,
            scanner=scanner,
            status=RunStatus.QUEUED,
            started_at=self._now(),
            markets=list(markets),
        )
        await self._repository.save_scan_run(run)
        logger.info("Run %s queued for %s (markets=%s)", run.id, scanner, ",".join(markets))
        return run

    async def save(self, run: ScanRun) -> None:
        await self._repository.save_scan_run(run)

    async def get_run(self, run_id: str) -> ScanRun | None:
        run = await self._repository.get_scan_by_id(run_id)
        return await self.repair_if_stale(run) if run is not None else None

    async def get_latest(self, scanner: ScannerId) -> ScanRun | None:
        run = await self._repository.get_latest_run(scanner)
        return await self.repair_if_stale(run) if run is not None else None

    async def get_progress(self, scanner: ScannerId) -> ScanProgressView:
        """Progress of the latest run of *scanner*, after staleness repair."""
        return ScanProgressView.from_run(await self.get_latest(scanner))

    async def has_active_run(self, scanner: ScannerId) -> bool:
        """True when the latest run of *scanner* is queued or running and not stale."""
        run = await self.get_latest(scanner)
        return run is not None and not run.status.is_terminal

    async def list_runs(
        self,
        scanner: ScannerId,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ScanRun]:
        runs = await self._repository.list_scan_runs(scanner, limit=limit, offset=offset)
        return [await self.repair_if_stale(run) for run in runs]

    async def list_matches(
        self,
        scanner: ScannerId,
        *,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[StockMatch]:
        return await self._repository.list_matches(scanner, run_id=run_id, limit=limit)

    async def repair_if_stale(self, run: ScanRun) -> ScanRun:
        """Rewrite a non-terminal run older than the staleness window as ``failed``."""
        if run.status.is_terminal:
            return run
        now = self._now()
        if now - run.started_at <= self._stale_after:
            return run

        message = f"Scan timed out (exceeded {self._stale_after_minutes:g} minute limit)"
        errors = [*run.errors, message][-MAX_RUN_ERRORS:]
        repaired = run.model_copy(
            update={"status": RunStatus.FAILED, "completed_at": now, "errors": errors}
        )
        await self._repository.save_scan_run(repaired)
        logger.warning("Run %s (%s) marked failed: %s", run.id, run.scanner, message)
        return repaired
