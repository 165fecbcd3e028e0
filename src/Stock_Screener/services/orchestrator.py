"""Scan orchestrator: discovery, enrichment, classification, and run bookkeeping.

One ``execute`` call drives a queued run to a terminal state:

1. Persist ``running``.
2. Discover candidates market by market (sequentially) and deduplicate them.
3. Order them never-scanned first, then least recently scanned.
4. Enrich and classify them with a bounded pool of asyncio workers until the
   list is exhausted, the deadline passes, or the providers are gone.
5. Persist the terminal snapshot exactly once, after all workers joined.

Counters and errors live in a per-run state object guarded by one
asyncio.Lock; every flush persists a fresh frozen ScanRun snapshot, so
progress readers only ever see monotonically growing counters.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Final

from Stock_Screener.analysis.kuifje import classify_kuifje
from Stock_Screener.analysis.validation import (
    cross_validate_price,
    detect_stock_split,
    validate_price_history,
)
from Stock_Screener.analysis.zonnebloem import classify_zonnebloem
from Stock_Screener.config import ScreenerSettings
from Stock_Screener.data.repository import Repository
from Stock_Screener.models.enums import Provider, RunStatus, ScannerId
from Stock_Screener.models.market_data import Candidate, EnrichedSeries
from Stock_Screener.models.scan import MAX_RUN_ERRORS, ScanRun, ScoreResult, StockMatch
from Stock_Screener.services.discovery import CandidateDiscovery
from Stock_Screener.services.quote_client import QuoteClient
from Stock_Screener.services.rate_limiter import RateGovernor
from Stock_Screener.services.run_registry import RunRegistry
from Stock_Screener.utils.exceptions import (
    DataFetchError,
    DiscoveryFailure,
    ProviderUnavailable,
    RateLimited,
    ScanAbortedError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

QUOTE_PROVIDERS: Final[tuple[Provider, ...]] = (Provider.YAHOO, Provider.ALPHA_VANTAGE)
_NEVER_SCANNED: Final[datetime.datetime] = datetime.datetime.min.replace(tzinfo=datetime.UTC)

ProgressCallback = Callable[[ScanRun], Awaitable[None] | None]


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclass
class _RunState:
    """Mutable counters for one run; only touched under ``lock``."""

    run: ScanRun
    markets_scanned: list[str] = field(default_factory=list)
    candidates_found: int = 0
    stocks_deep_scanned: int = 0
    stocks_matched: int = 0
    new_stocks_found: int = 0
    errors: list[str] = field(default_factory=list)
    discovery_calls: int = 0
    attempted: int = 0
    any_success: bool = False
    unavailable_streak: int = 0
    abort_reason: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_RUN_ERRORS:
            self.errors.append(message)

    def prepend_error(self, message: str) -> None:
        self.errors = [message, *self.errors][:MAX_RUN_ERRORS]


class ScanOrchestrator:
    """Drive scan runs from ``queued`` to a terminal state.

    Every collaborator is injected; the clock and sleep are injectable so
    tests can exercise the deadline and budget waits without real time.

    Usage::

        orchestrator = ScanOrchestrator(
            settings=settings,
            registry=registry,
            discovery=discovery,
            quotes=quotes,
            governor=governor,
        )
        run = await orchestrator.start_run(ScannerId.KUIFJE)
        final = await orchestrator.execute(run)
        print(final.status, final.stocks_matched)
    """

    def __init__(
        self,
        *,
        settings: ScreenerSettings,
        registry: RunRegistry,
        discovery: CandidateDiscovery,
        quotes: QuoteClient,
        governor: RateGovernor,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime.datetime] = _utc_now,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._discovery = discovery
        self._quotes = quotes
        self._governor = governor
        self._clock = clock
        self._sleep = sleep
        self._now = now

    @property
    def _repository(self) -> Repository:
        return self._registry.repository

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_run(self, scanner: ScannerId, markets: list[str] | None = None) -> ScanRun:
        """Persist a ``queued`` run for *scanner* over *markets* (default: configured)."""
        return await self._registry.start_run(
            scanner, markets or self._settings.markets_for(scanner)
        )

    async def execute(
        self,
        run: ScanRun,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> ScanRun:
        """Execute a queued run and return its terminal snapshot.

        Never raises for provider or discovery problems; those end up in the
        run's error list. Unexpected exceptions turn the run ``failed``.
        """
        started = self._clock()
        settings = self._settings
        deadline = started + settings.run_deadline_seconds - settings.deadline_margin_seconds
        baseline = {p: self._governor.consumed(p) for p in QUOTE_PROVIDERS}
        state = _RunState(run=run)

        try:
            await self._flush(state, RunStatus.RUNNING, baseline, on_progress)
            candidates = await self._discover_all(state)
            ordered = await self._prioritize(run.scanner, candidates)
            async with state.lock:
                state.candidates_found = len(ordered)
                await self._flush(state, RunStatus.RUNNING, baseline, on_progress)

            await self._deep_scan(state, ordered, deadline, baseline, on_progress)
            status = RunStatus.PARTIAL if state.errors else RunStatus.COMPLETED
        except ScanAbortedError as exc:
            logger.error("Run %s aborted: %s", run.id, exc)
            state.prepend_error(str(exc))
            status = RunStatus.FAILED
        except Exception as exc:  # noqa: BLE001
            logger.exception("Run %s failed unexpectedly", run.id)
            state.prepend_error(f"Unexpected error: {exc}")
            status = RunStatus.FAILED

        final = self._snapshot(state, status, baseline, completed_at=self._now())
        await self._registry.save(final)
        await _notify(on_progress, final)
        logger.info(
            "Run %s (%s) finished %s: candidates=%d scanned=%d matched=%d new=%d "
            "errors=%d in %.1fs",
            run.id,
            run.scanner,
            status,
            final.candidates_found,
            final.stocks_deep_scanned,
            final.stocks_matched,
            final.new_stocks_found,
            len(final.errors),
            self._clock() - started,
        )
        return final

    async def run(
        self,
        scanner: ScannerId,
        markets: list[str] | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> ScanRun:
        """Start and execute a run in one call."""
        run = await self.start_run(scanner, markets)
        return await self.execute(run, on_progress=on_progress)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _discover_all(self, state: _RunState) -> list[Candidate]:
        scanner = state.run.scanner
        merged: dict[str, Candidate] = {}
        for market in state.run.markets:
            state.discovery_calls += 1
            try:
                found = await self._discovery.fetch_candidates(market, scanner)
            except DiscoveryFailure as exc:
                logger.warning("Discovery failed for %s/%s: %s", scanner, market, exc)
                state.add_error(f"{market}: {exc}")
                continue
            state.markets_scanned.append(market)
            for candidate in found:
                existing = merged.get(candidate.symbol)
                if existing is None or (
                    scanner is ScannerId.ZONNEBLOEM
                    and (candidate.range_ratio or 0.0) > (existing.range_ratio or 0.0)
                ):
                    merged[candidate.symbol] = candidate
        return list(merged.values())

    async def _prioritize(self, scanner: ScannerId, candidates: list[Candidate]) -> list[Candidate]:
        """Never-scanned symbols first (in discovery order), then oldest scan first."""
        last_scanned = await self._repository.get_last_scanned(
            scanner, (c.symbol for c in candidates)
        )
        return sorted(
            candidates,
            key=lambda c: (c.symbol in last_scanned, last_scanned.get(c.symbol, _NEVER_SCANNED)),
        )

    # ------------------------------------------------------------------
    # Deep scan
    # ------------------------------------------------------------------

    async def _deep_scan(
        self,
        state: _RunState,
        candidates: list[Candidate],
        deadline: float,
        baseline: dict[Provider, int],
        on_progress: ProgressCallback | None,
    ) -> None:
        if not candidates:
            return

        pending: Iterator[Candidate] = iter(candidates)
        workers = max(
            1,
            min(
                self._settings.max_workers,
                self._governor.remaining(Provider.YAHOO),
                len(candidates),
            ),
        )
        logger.info(
            "Run %s: deep-scanning %d candidates with %d workers",
            state.run.id,
            len(candidates),
            workers,
        )

        async def worker() -> None:
            while state.abort_reason is None:
                if self._clock() >= deadline or not await self._wait_for_budget(deadline):
                    return
                candidate = next(pending, None)
                if candidate is None:
                    return
                state.attempted += 1
                await self._scan_candidate(state, candidate, baseline, on_progress)

        # Every worker is joined before any exception propagates, so nothing
        # can write a running snapshot after the terminal one.
        results = await asyncio.gather(
            *(worker() for _ in range(workers)), return_exceptions=True
        )
        for outcome in results:
            if isinstance(outcome, BaseException):
                raise outcome

        if state.abort_reason is not None:
            raise ScanAbortedError(state.abort_reason)

        not_scanned = len(candidates) - state.attempted
        if not_scanned > 0:
            async with state.lock:
                state.add_error(f"Run deadline reached; {not_scanned} candidates not scanned")

    async def _wait_for_budget(self, deadline: float) -> bool:
        """Return False when no provider has budget and waiting would pass the deadline."""
        if any(self._governor.remaining(p) > 0 for p in QUOTE_PROVIDERS):
            return True
        wait = self._governor.seconds_until_reset(Provider.YAHOO)
        if self._clock() + wait >= deadline:
            logger.info("No provider budget left before the deadline, stopping workers")
            return False
        logger.info("All provider budgets exhausted, waiting %.1fs for the next window", wait)
        await self._sleep(wait)
        return True

    async def _scan_candidate(
        self,
        state: _RunState,
        candidate: Candidate,
        baseline: dict[Provider, int],
        on_progress: ProgressCallback | None,
    ) -> None:
        scanner = state.run.scanner
        symbol = candidate.symbol
        try:
            series = await self._quotes.fetch_series(
                symbol, range_=self._settings.history_range_for(scanner)
            )
        except DataFetchError as exc:
            async with state.lock:
                state.add_error(f"{symbol}: {exc}")
                self._track_unavailability(state, exc)
                await self._flush(state, RunStatus.RUNNING, baseline, on_progress)
            return

        async with state.lock:
            state.any_success = True
            state.unavailable_streak = 0

        try:
            error, result, is_new = await self._evaluate(state, candidate, series)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Run %s: evaluating %s failed", state.run.id, symbol)
            error, result, is_new = f"{symbol}: {exc}", None, False

        async with state.lock:
            if error is not None:
                state.add_error(error)
            else:
                state.stocks_deep_scanned += 1
                if result is not None and result.matched:
                    state.stocks_matched += 1
                    state.new_stocks_found += int(is_new)
            await self._flush(state, RunStatus.RUNNING, baseline, on_progress)

    async def _evaluate(
        self,
        state: _RunState,
        candidate: Candidate,
        series: EnrichedSeries,
    ) -> tuple[str | None, ScoreResult | None, bool]:
        """Classify and persist one fetched series; returns ``(error, result, is_new)``."""
        scanner = state.run.scanner
        symbol = candidate.symbol
        await self._repository.mark_scanned(scanner, symbol, self._now())
        outcome = await self._classify(scanner, candidate, series)

        is_new = False
        if isinstance(outcome, str):
            error: str | None = f"{symbol}: {outcome}"
            result = None
        else:
            error = None
            result, reasons = outcome
            if result.matched:
                is_new = await self._repository.save_match(
                    StockMatch(
                        run_id=state.run.id,
                        scanner=scanner,
                        symbol=symbol,
                        name=candidate.name,
                        market=candidate.market,
                        exchange=candidate.exchange,
                        score=result.score,
                        metrics=result.metrics,
                        needs_review=bool(reasons),
                        review_reasons=reasons,
                        detected_at=self._now(),
                    )
                )
                logger.info(
                    "Run %s: %s matched %s (score %.2f)",
                    state.run.id,
                    scanner,
                    symbol,
                    result.score,
                )
        return error, result, is_new

    async def _classify(
        self,
        scanner: ScannerId,
        candidate: Candidate,
        series: EnrichedSeries,
    ) -> tuple[ScoreResult, list[str]] | str:
        """Classify one series; returns ``(result, review_reasons)`` or a skip reason."""
        reasons = [
            f"Possible {'reverse ' if split.ratio < 0 else ''}"
            f"{abs(split.ratio)}:1 split on {split.date}"
            for split in detect_stock_split(series.bars)
        ]

        if scanner is ScannerId.ZONNEBLOEM:
            minimum = self._settings.zonnebloem.min_history_bars
            if len(series.bars) < minimum:
                return f"insufficient history ({len(series.bars)} bars, need {minimum})"
            return classify_zonnebloem(series, self._settings.zonnebloem), reasons

        validation = validate_price_history(series.bars)
        if not validation.valid:
            return "invalid price history: " + "; ".join(validation.errors)
        result = classify_kuifje(
            series, self._settings.kuifje, reference_high=candidate.all_time_high
        )
        if result.matched:
            reasons = [*validation.warnings, *reasons]
            mismatch = await self._cross_validate(series)
            if mismatch is not None:
                reasons.append(mismatch)
        return result, reasons

    async def _cross_validate(self, series: EnrichedSeries) -> str | None:
        """Compare the current price with the secondary quote; a reason on disagreement."""
        if (
            not self._settings.cross_validate_prices
            or series.provider is Provider.ALPHA_VANTAGE
            or self._governor.remaining(Provider.ALPHA_VANTAGE) <= 0
        ):
            return None
        try:
            secondary = await self._quotes.fetch_quote(series.symbol)
        except DataFetchError as exc:
            logger.info("Cross-validation skipped for %s: %s", series.symbol, exc)
            return None

        check = cross_validate_price(series.current_price, secondary)
        if check.agrees:
            return None
        return (
            f"Price mismatch: primary {series.current_price:.4g} vs secondary "
            f"{secondary:.4g} ({check.deviation_pct}% from mean)"
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _track_unavailability(self, state: _RunState, exc: DataFetchError) -> None:
        if not _is_total_unavailability(exc):
            state.unavailable_streak = 0
            return
        state.unavailable_streak += 1
        limit = self._settings.fatal_unavailable_streak
        if not state.any_success and state.unavailable_streak >= limit:
            state.abort_reason = (
                f"All quote providers unavailable: {state.unavailable_streak} consecutive "
                "candidates failed before any success"
            )

    def _snapshot(
        self,
        state: _RunState,
        status: RunStatus,
        baseline: dict[Provider, int],
        *,
        completed_at: datetime.datetime | None = None,
    ) -> ScanRun:
        api_calls = {p: self._governor.consumed(p) - baseline[p] for p in QUOTE_PROVIDERS}
        api_calls[Provider.TRADINGVIEW] = state.discovery_calls
        return state.run.model_copy(
            update={
                "status": status,
                "completed_at": completed_at,
                "markets_scanned": list(state.markets_scanned),
                "candidates_found": state.candidates_found,
                "stocks_deep_scanned": state.stocks_deep_scanned,
                "stocks_matched": state.stocks_matched,
                "new_stocks_found": state.new_stocks_found,
                "errors": list(state.errors),
                "api_calls": api_calls,
            }
        )

    async def _flush(
        self,
        state: _RunState,
        status: RunStatus,
        baseline: dict[Provider, int],
        on_progress: ProgressCallback | None,
    ) -> None:
        snapshot = self._snapshot(state, status, baseline)
        await self._registry.save(snapshot)
        await _notify(on_progress, snapshot)


def _is_total_unavailability(exc: DataFetchError) -> bool:
    """True when the primary was unreachable and the secondary could not stand in.

    The secondary standing in means it answered; a secondary that was
    unreachable or had no budget left counts as unavailable too.
    """
    primary = exc.__cause__ if isinstance(exc.__cause__, DataFetchError) else exc
    if not isinstance(primary, ProviderUnavailable):
        return False
    return isinstance(exc, ProviderUnavailable) or (
        isinstance(exc, RateLimited) and exc.http_status is None
    )


async def _notify(callback: ProgressCallback | None, run: ScanRun) -> None:
    if callback is None:
        return
    outcome = callback(run)
    if outcome is not None:
        await outcome
