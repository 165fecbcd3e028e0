"""Conversions shared by the pattern classifiers.

Classifiers work on a pandas DataFrame indexed by bar date, built once from
the immutable series. Lookback windows are anchored on the last bar's date
so the same input always produces the same result.
"""

import datetime

import pandas as pd

from Stock_Screener.models.market_data import PriceBar

PRICE_COLUMNS: list[str] = ["open", "high", "low", "close", "volume"]


def bars_to_frame(bars: tuple[PriceBar, ...] | list[PriceBar]) -> pd.DataFrame:
    """Build an OHLCV DataFrame with a DatetimeIndex, sorted ascending."""
    frame = pd.DataFrame(
        [bar.model_dump() for bar in bars],
        columns=["date", *PRICE_COLUMNS],
    )
    frame["date"] = pd.to_datetime(frame["date"])
    return frame.set_index("date").sort_index()


def lookback_start(
    last_date: datetime.date | pd.Timestamp,
    *,
    years: int = 0,
    months: int = 0,
) -> pd.Timestamp:
    """Calendar-aware start of a lookback window ending at *last_date*."""
    return pd.Timestamp(last_date) - pd.DateOffset(years=years, months=months)
