"""Sanity checks on fetched price history and cross-provider price agreement.

None of these checks reject a candidate on their own; the orchestrator turns
warnings, suspected splits, and provider disagreement into review flags on
the persisted match.
"""

import logging
from collections.abc import Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from Stock_Screener.analysis._series import bars_to_frame
from Stock_Screener.models.market_data import PriceBar

logger = logging.getLogger(__name__)

# --- Thresholds ---

MIN_EXPECTED_BARS: int = 500
EXTREME_MOVE_PCT: float = 1000.0
DEFAULT_PRICE_TOLERANCE: float = 0.05

SPLIT_RATIO_MIN: float = 1.8
SPLIT_RATIO_MAX: float = 10.5
REVERSE_SPLIT_RATIO_MIN: float = 0.08
REVERSE_SPLIT_RATIO_MAX: float = 0.55
SPLIT_ROUNDING_TOLERANCE: float = 0.15

CONFIDENCE_AGREE: int = 100
CONFIDENCE_DISAGREE: int = 66
CONFIDENCE_SINGLE_SOURCE: int = 50


class ValidationResult(BaseModel):
    """Outcome of validating one price history."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class SplitEvent(BaseModel):
    """A suspected split; ``ratio`` is negative for reverse splits."""

    model_config = ConfigDict(frozen=True)

    date: str
    ratio: int


class CrossValidation(BaseModel):
    """Agreement between the primary and secondary current price."""

    model_config = ConfigDict(frozen=True)

    agrees: bool
    deviation_pct: float | None = None
    confidence: int
    average_price: float | None = None


def validate_price_history(bars: Sequence[PriceBar]) -> ValidationResult:
    """Check a daily history for impossible values and suspicious gaps.

    Errors (history unusable): no bars, non-positive prices, high below low.
    Warnings (usable, flag for review): fewer than 500 bars, any close-to-close
    move beyond 1000%.
    """
    if not bars:
        return ValidationResult(valid=False, errors=["No price history data"])

    frame = bars_to_frame(list(bars))
    errors: list[str] = []
    warnings: list[str] = []

    prices = frame[["open", "high", "low", "close"]]
    non_positive = int((prices <= 0).any(axis=1).sum())
    if non_positive:
        errors.append(f"{non_positive} entries with non-positive prices")
    inverted = int((frame["high"] < frame["low"]).sum())
    if inverted:
        errors.append(f"{inverted} entries with high below low")

    if len(frame) < MIN_EXPECTED_BARS:
        warnings.append(f"Only {len(frame)} data points (expected {MIN_EXPECTED_BARS}+)")

    closes = frame["close"]
    previous = closes.shift(1)
    change_pct = (closes - previous) / previous.where(previous > 0) * 100
    for ts, pct in change_pct[change_pct.abs() > EXTREME_MOVE_PCT].items():
        warnings.append(
            f"Extreme move on {ts.date().isoformat()}: {pct:.0f}% (possible split/data error)"
        )

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def detect_stock_split(bars: Sequence[PriceBar]) -> list[SplitEvent]:
    """Flag overnight gaps whose size matches an integer split factor.

    Compares each open with the previous close; 2:1 through 10:1 forward
    splits and their reverse counterparts are recognized.
    """
    splits: list[SplitEvent] = []
    for prev, curr in zip(bars, bars[1:], strict=False):
        if prev.close <= 0 or curr.open <= 0:
            continue
        ratio = prev.close / curr.open
        if SPLIT_RATIO_MIN < ratio < SPLIT_RATIO_MAX:
            factor = round(ratio)
            if abs(ratio - factor) < SPLIT_ROUNDING_TOLERANCE:
                splits.append(SplitEvent(date=curr.date.isoformat(), ratio=factor))
        elif REVERSE_SPLIT_RATIO_MIN < ratio < REVERSE_SPLIT_RATIO_MAX:
            inverse = 1 / ratio
            factor = round(inverse)
            if abs(inverse - factor) < SPLIT_ROUNDING_TOLERANCE:
                splits.append(SplitEvent(date=curr.date.isoformat(), ratio=-factor))
    return splits


def cross_validate_price(
    primary: float | None,
    secondary: float | None,
    tolerance: float = DEFAULT_PRICE_TOLERANCE,
) -> CrossValidation:
    """Compare two current-price readings.

    Prices agree when both deviate from their mean by at most *tolerance*
    (a fraction). A single usable price is accepted with reduced confidence.
    """
    prices = [p for p in (primary, secondary) if p is not None and p > 0]
    if not prices:
        return CrossValidation(agrees=False, confidence=0)
    if len(prices) == 1:
        return CrossValidation(
            agrees=True, confidence=CONFIDENCE_SINGLE_SOURCE, average_price=prices[0]
        )

    values = np.array(prices, dtype=float)
    average = float(values.mean())
    deviation = float(np.max(np.abs(values - average) / average))
    agrees = deviation <= tolerance
    return CrossValidation(
        agrees=agrees,
        deviation_pct=round(deviation * 100, 2),
        confidence=CONFIDENCE_AGREE if agrees else CONFIDENCE_DISAGREE,
        average_price=average,
    )
