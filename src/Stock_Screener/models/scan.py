"""Scan models: run records, classifier results, persisted matches, progress views."""

import datetime

from pydantic import BaseModel, ConfigDict, Field, computed_field

from Stock_Screener.models.enums import Provider, RunStatus, ScannerId

MAX_RUN_ERRORS: int = 50


class GrowthEvent(BaseModel):
    """A trough-to-peak recovery that cleared the Kuifje growth threshold."""

    model_config = ConfigDict(frozen=True)

    start_date: datetime.date
    peak_date: datetime.date
    end_date: datetime.date
    trough_price: float
    peak_price: float
    growth_pct: float
    days_above_target: int
    sustained: bool = True


class SpikeEvent(BaseModel):
    """A run of closes far enough above the rolling base to count as a spike."""

    model_config = ConfigDict(frozen=True)

    start_date: datetime.date
    peak_date: datetime.date
    end_date: datetime.date
    base_price: float
    peak_price: float
    spike_pct: float
    duration_days: int


class ScoreResult(BaseModel):
    """Outcome of one classifier over one enriched series.

    ``score`` is on a 0-10 scale. ``metrics`` holds the derived numbers the
    classifier computed (decline %, event counts, base CV, ...) so they can
    be persisted alongside a match without a schema per scanner.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    scanner: ScannerId
    matched: bool
    score: float = Field(ge=0.0, le=10.0)
    metrics: dict[str, float | None] = Field(default_factory=dict)
    growth_events: list[GrowthEvent] = Field(default_factory=list)
    spike_events: list[SpikeEvent] = Field(default_factory=list)


class StockMatch(BaseModel):
    """A matched candidate as written to the run registry."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    scanner: ScannerId
    symbol: str
    name: str = ""
    market: str = ""
    exchange: str = ""
    score: float
    metrics: dict[str, float | None] = Field(default_factory=dict)
    needs_review: bool = False
    review_reasons: list[str] = Field(default_factory=list)
    detected_at: datetime.datetime


class ScanRun(BaseModel):
    """Persisted record of one scanner run across its configured markets.

    Frozen: the orchestrator produces a new snapshot with ``model_copy``
    for every progress flush instead of mutating a shared instance.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    scanner: ScannerId
    status: RunStatus
    started_at: datetime.datetime
    completed_at: datetime.datetime | None = None
    markets: list[str] = Field(default_factory=list)
    markets_scanned: list[str] = Field(default_factory=list)
    candidates_found: int = 0
    stocks_deep_scanned: int = 0
    stocks_matched: int = 0
    new_stocks_found: int = 0
    errors: list[str] = Field(default_factory=list)
    api_calls: dict[Provider, int] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_seconds(self) -> float | None:
        """Wall time of a finished run."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class ProgressCounters(BaseModel):
    """Counters and errors as shown to a polling client."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: RunStatus
    started_at: datetime.datetime
    completed_at: datetime.datetime | None = None
    markets_scanned: list[str]
    candidates_found: int
    stocks_deep_scanned: int
    stocks_matched: int
    new_stocks_found: int
    api_calls: dict[Provider, int]
    errors: list[str]


class ScanProgressView(BaseModel):
    """Response shape of the progress endpoint."""

    model_config = ConfigDict(frozen=True)

    running: bool
    status: RunStatus | None = None
    scan: ProgressCounters | None = None

    @classmethod
    def from_run(cls, run: ScanRun | None) -> "ScanProgressView":
        """Build the view for the latest run, or an idle view when there is none."""
        if run is None:
            return cls(running=False)
        return cls(
            running=not run.status.is_terminal,
            status=run.status,
            scan=ProgressCounters(
                id=run.id,
                status=run.status,
                started_at=run.started_at,
                completed_at=run.completed_at,
                markets_scanned=run.markets_scanned,
                candidates_found=run.candidates_found,
                stocks_deep_scanned=run.stocks_deep_scanned,
                stocks_matched=run.stocks_matched,
                new_stocks_found=run.new_stocks_found,
                api_calls=run.api_calls,
                errors=run.errors,
            ),
        )
