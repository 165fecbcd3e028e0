"""Tests for market data models: PriceBar, EnrichedSeries, Candidate.

Covers:
- Frozen immutability
- JSON roundtrip of an enriched series (the history cache stores it as JSON)
- Computed fields: last_date, range_ratio, ath_decline_pct
"""

import datetime

import pytest
from pydantic import ValidationError

from Stock_Screener.models.enums import Provider
from Stock_Screener.models.market_data import Candidate, EnrichedSeries, PriceBar


def _bar(day: int, close: float) -> PriceBar:
    return PriceBar(
        date=datetime.date(2024, 6, day),
        open=close,
        high=close * 1.02,
        low=close * 0.98,
        close=close,
        volume=1_000,
    )


class TestPriceBar:
    def test_frozen(self) -> None:
        bar = _bar(3, 1.5)
        with pytest.raises(ValidationError):
            bar.close = 2.0  # type: ignore[misc]

    def test_volume_defaults_to_zero(self) -> None:
        bar = PriceBar(date=datetime.date(2024, 6, 3), open=1, high=1, low=1, close=1)
        assert bar.volume == 0


class TestEnrichedSeries:
    def test_last_date(self) -> None:
        series = EnrichedSeries(
            symbol="TEST",
            bars=(_bar(3, 1.0), _bar(4, 1.1)),
            current_price=1.1,
            provider=Provider.YAHOO,
        )
        assert series.last_date == datetime.date(2024, 6, 4)

    def test_last_date_of_empty_series(self) -> None:
        series = EnrichedSeries(symbol="TEST", bars=(), current_price=1.0, provider=Provider.YAHOO)
        assert series.last_date is None

    def test_json_roundtrip(self) -> None:
        series = EnrichedSeries(
            symbol="VOD.L",
            bars=(_bar(3, 0.71), _bar(4, 0.72)),
            current_price=0.72,
            currency="GBp",
            provider=Provider.ALPHA_VANTAGE,
        )
        assert EnrichedSeries.model_validate_json(series.model_dump_json()) == series


class TestCandidate:
    """Tests for the computed discovery ratios."""

    def test_range_ratio(self, sample_candidate: Candidate) -> None:
        assert sample_candidate.range_ratio == pytest.approx(4.59 / 0.62)

    def test_ath_decline(self, sample_candidate: Candidate) -> None:
        assert sample_candidate.ath_decline_pct == pytest.approx(90.196, abs=1e-3)

    @pytest.mark.parametrize(
        ("high", "low"),
        [(None, 1.0), (3.0, None), (3.0, 0.0)],
    )
    def test_range_ratio_missing(
        self, sample_candidate: Candidate, high: float | None, low: float | None
    ) -> None:
        candidate = sample_candidate.model_copy(update={"high_52w": high, "low_52w": low})
        assert candidate.range_ratio is None

    def test_ath_decline_missing(self, sample_candidate: Candidate) -> None:
        candidate = sample_candidate.model_copy(update={"all_time_high": None})
        assert candidate.ath_decline_pct is None

    def test_computed_fields_serialized(self, sample_candidate: Candidate) -> None:
        dumped = sample_candidate.model_dump()
        assert "range_ratio" in dumped
        assert "ath_decline_pct" in dumped
