"""Tests for RunRegistry: run lifecycle and read-time staleness repair.

Uses a real in-memory SQLite database and an injected clock.
"""

from __future__ import annotations

import datetime

import pytest

from Stock_Screener.data.repository import Repository
from Stock_Screener.models.enums import RunStatus, ScannerId
from Stock_Screener.services.run_registry import RunRegistry

T0 = datetime.datetime(2025, 3, 10, 8, 0, tzinfo=datetime.UTC)


class FakeNow:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime.datetime:
        return self.now


@pytest.fixture()
def clock() -> FakeNow:
    return FakeNow()


@pytest.fixture()
def timed_registry(repository: Repository, clock: FakeNow) -> RunRegistry:
    return RunRegistry(repository, stale_after_minutes=10, now=clock)


class TestStartRun:
    """Tests for start_run()."""

    @pytest.mark.asyncio()
    async def test_new_run_is_queued_and_persisted(self, timed_registry: RunRegistry) -> None:
        run = await timed_registry.start_run(ScannerId.KUIFJE, ["us", "ca"])

        assert run.status is RunStatus.QUEUED
        assert run.markets == ["us", "ca"]
        assert run.started_at == T0
        assert await timed_registry.get_run(run.id) == run

    @pytest.mark.asyncio()
    async def test_run_ids_are_unique(self, timed_registry: RunRegistry) -> None:
        first = await timed_registry.start_run(ScannerId.KUIFJE, ["us"])
        second = await timed_registry.start_run(ScannerId.KUIFJE, ["us"])
        assert first.id != second.id


class TestActiveRuns:
    """Tests for has_active_run() and get_progress()."""

    @pytest.mark.asyncio()
    async def test_no_runs(self, timed_registry: RunRegistry) -> None:
        assert await timed_registry.has_active_run(ScannerId.ZONNEBLOEM) is False
        view = await timed_registry.get_progress(ScannerId.ZONNEBLOEM)
        assert view.running is False
        assert view.scan is None

    @pytest.mark.asyncio()
    async def test_queued_run_is_active(self, timed_registry: RunRegistry) -> None:
        await timed_registry.start_run(ScannerId.KUIFJE, ["us"])

        assert await timed_registry.has_active_run(ScannerId.KUIFJE) is True
        assert await timed_registry.has_active_run(ScannerId.ZONNEBLOEM) is False

    @pytest.mark.asyncio()
    async def test_completed_run_is_not_active(self, timed_registry: RunRegistry) -> None:
        run = await timed_registry.start_run(ScannerId.KUIFJE, ["us"])
        await timed_registry.save(
            run.model_copy(update={"status": RunStatus.COMPLETED, "completed_at": T0})
        )

        assert await timed_registry.has_active_run(ScannerId.KUIFJE) is False

    @pytest.mark.asyncio()
    async def test_progress_reports_latest_counters(self, timed_registry: RunRegistry) -> None:
        run = await timed_registry.start_run(ScannerId.KUIFJE, ["us"])
        await timed_registry.save(
            run.model_copy(
                update={
                    "status": RunStatus.RUNNING,
                    "candidates_found": 12,
                    "stocks_deep_scanned": 4,
                    "markets_scanned": ["us"],
                }
            )
        )

        view = await timed_registry.get_progress(ScannerId.KUIFJE)
        assert view.running is True
        assert view.status is RunStatus.RUNNING
        assert view.scan is not None
        assert view.scan.candidates_found == 12
        assert view.scan.stocks_deep_scanned == 4


class TestStalenessRepair:
    """A non-terminal run older than the window reads back as failed."""

    @pytest.mark.asyncio()
    async def test_fresh_running_run_untouched(
        self, timed_registry: RunRegistry, clock: FakeNow
    ) -> None:
        run = await timed_registry.start_run(ScannerId.KUIFJE, ["us"])
        clock.now = T0 + datetime.timedelta(minutes=10)

        assert (await timed_registry.get_latest(ScannerId.KUIFJE)) == run

    @pytest.mark.asyncio()
    async def test_stale_run_marked_failed_and_persisted(
        self,
        timed_registry: RunRegistry,
        repository: Repository,
        clock: FakeNow,
    ) -> None:
        run = await timed_registry.start_run(ScannerId.KUIFJE, ["us"])
        await timed_registry.save(
            run.model_copy(update={"status": RunStatus.RUNNING, "errors": ["ABC: HTTP 500"]})
        )
        clock.now = T0 + datetime.timedelta(minutes=11)

        view = await timed_registry.get_progress(ScannerId.KUIFJE)

        assert view.running is False
        assert view.status is RunStatus.FAILED
        assert view.scan is not None
        assert view.scan.errors == [
            "ABC: HTTP 500",
            "Scan timed out (exceeded 10 minute limit)",
        ]
        assert view.scan.completed_at == clock.now

        stored = await repository.get_scan_by_id(run.id)
        assert stored is not None
        assert stored.status is RunStatus.FAILED

    @pytest.mark.asyncio()
    async def test_stale_run_frees_the_scanner(
        self, timed_registry: RunRegistry, clock: FakeNow
    ) -> None:
        await timed_registry.start_run(ScannerId.ZONNEBLOEM, ["us"])
        clock.now = T0 + datetime.timedelta(hours=1)

        assert await timed_registry.has_active_run(ScannerId.ZONNEBLOEM) is False

    @pytest.mark.asyncio()
    async def test_terminal_runs_never_rewritten(
        self, timed_registry: RunRegistry, clock: FakeNow
    ) -> None:
        run = await timed_registry.start_run(ScannerId.KUIFJE, ["us"])
        partial = run.model_copy(
            update={"status": RunStatus.PARTIAL, "completed_at": T0, "errors": ["x"]}
        )
        await timed_registry.save(partial)
        clock.now = T0 + datetime.timedelta(days=2)

        assert await timed_registry.get_run(run.id) == partial

    @pytest.mark.asyncio()
    async def test_list_runs_repairs_each_run(
        self, timed_registry: RunRegistry, clock: FakeNow
    ) -> None:
        await timed_registry.start_run(ScannerId.KUIFJE, ["us"])
        clock.now = T0 + datetime.timedelta(minutes=30)
        await timed_registry.start_run(ScannerId.KUIFJE, ["us"])

        runs = await timed_registry.list_runs(ScannerId.KUIFJE)

        assert [r.status for r in runs] == [RunStatus.QUEUED, RunStatus.FAILED]
