"""Market data models: daily price bars, enriched series, discovery candidates.

Prices are plain floats: the screener works with ratios and percentages on
penny stocks, and bars are converted to numpy arrays for classification.
"""

import datetime

from pydantic import BaseModel, ConfigDict, computed_field

from Stock_Screener.models.enums import Provider


class PriceBar(BaseModel):
    """A single daily OHLCV bar.

    Frozen because historical price data should never be mutated after creation.
    """

    model_config = ConfigDict(frozen=True)

    date: datetime.date
    open: float
    high: float
    low: float
    close: float
    volume: int = 0


class EnrichedSeries(BaseModel):
    """Full daily history for one symbol as returned by a quote provider.

    Owned by the enrichment step; classifiers only read it.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    bars: tuple[PriceBar, ...]
    current_price: float
    currency: str | None = None
    provider: Provider

    @computed_field  # type: ignore[prop-decorator]
    @property
    def last_date(self) -> datetime.date | None:
        """Date of the most recent bar, the anchor for all lookback windows."""
        return self.bars[-1].date if self.bars else None


class Candidate(BaseModel):
    """A ticker that passed a market's coarse discovery filter.

    ``raw_symbol`` is what the discovery source produced; ``symbol`` is the
    quote-provider-native form used for enrichment and deduplication.
    """

    model_config = ConfigDict(frozen=True)

    raw_symbol: str
    symbol: str
    exchange: str
    market: str
    name: str = ""
    price: float
    volume: float = 0.0
    average_volume: float | None = None
    sector: str | None = None
    high_52w: float | None = None
    low_52w: float | None = None
    all_time_high: float | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def range_ratio(self) -> float | None:
        """52-week high divided by 52-week low, None when either is missing."""
        if not self.high_52w or not self.low_52w or self.low_52w <= 0:
            return None
        return self.high_52w / self.low_52w

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ath_decline_pct(self) -> float | None:
        """Decline from the source-reported all-time high, in percent."""
        if not self.all_time_high or self.all_time_high <= 0:
            return None
        return (self.all_time_high - self.price) / self.all_time_high * 100.0
