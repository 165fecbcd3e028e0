"""Kuifje: deep decline from the all-time high plus repeated recoveries.

A Kuifje stock has lost most of its value (85-100% below its all-time high)
yet has recovered by 200% or more from a trough at least twice within the
growth lookback. Each recovery is a *growth event*: from a trough low, the
daily high must reach ``trough * (1 + threshold/100)`` before the close
collapses below half the trough.

Scoring uses triangular numbers over the event count, weighted by depth::

    score = clamp(n * (n + 1) / 2 * decline_pct / 100, 0, 10)
"""

import logging

import numpy as np
import pandas as pd

from Stock_Screener.analysis._series import bars_to_frame, lookback_start
from Stock_Screener.config import KuifjeSettings
from Stock_Screener.models.enums import ScannerId
from Stock_Screener.models.market_data import EnrichedSeries
from Stock_Screener.models.scan import GrowthEvent, ScoreResult

logger = logging.getLogger(__name__)

# --- Detection constants ---

MIN_BARS: int = 10
TROUGH_WINDOW: int = 7
COLLAPSE_FRACTION: float = 0.5
EVENT_TAIL_BARS: int = 5
MAX_SCORE: float = 10.0


def find_troughs(lows: np.ndarray, highs: np.ndarray, window: int = TROUGH_WINDOW) -> list[int]:
    """Candidate trough indices, ascending.

    Includes the first bar, the absolute minimum low, every bar whose low
    is the minimum of its ``±window`` neighborhood, and every bar whose low
    falls below half the running high (which then restarts from that bar).
    Non-positive lows are ignored.
    """
    n = len(lows)
    if n == 0:
        return []
    troughs: set[int] = {0}

    positive = lows > 0
    if positive.any():
        troughs.add(int(np.argmin(np.where(positive, lows, np.inf))))

    for i in range(window, n - window):
        current = lows[i]
        if current <= 0:
            continue
        neighborhood = lows[i - window : i + window + 1]
        if not np.any((neighborhood > 0) & (neighborhood < current)):
            troughs.add(i)

    recent_high = highs[0]
    for i in range(1, n):
        recent_high = max(recent_high, highs[i])
        if 0 < lows[i] < recent_high * COLLAPSE_FRACTION:
            troughs.add(i)
            recent_high = highs[i]

    return sorted(troughs)


def find_growth_events(
    frame: pd.DataFrame,
    threshold_pct: float,
    min_consecutive_days: int = 5,
) -> list[GrowthEvent]:
    """Detect non-overlapping trough-to-peak recoveries of at least *threshold_pct*.

    A single day above target is enough for an event; events that stayed
    above target for ``min(min_consecutive_days, 2)`` days are ``sustained``.
    """
    sustain_days = min(min_consecutive_days, 2)
    lows = frame["low"].to_numpy(dtype=float)
    highs = frame["high"].to_numpy(dtype=float)
    closes = frame["close"].to_numpy(dtype=float)
    dates = [ts.date() for ts in frame.index]
    n = len(lows)

    events: list[GrowthEvent] = []
    for trough_idx in find_troughs(lows, highs):
        trough_price = lows[trough_idx]
        if trough_price <= 0:
            continue
        target = trough_price * (1 + threshold_pct / 100)

        peak_price = trough_price
        peak_idx = trough_idx
        reached = False
        run = 0
        best_run = 0
        for j in range(trough_idx + 1, n):
            if highs[j] > peak_price:
                peak_price = highs[j]
                peak_idx = j
            if highs[j] >= target:
                reached = True
                run += 1
                best_run = max(best_run, run)
            else:
                run = 0
            if closes[j] < trough_price * COLLAPSE_FRACTION:
                break

        if not reached:
            continue
        growth_pct = (peak_price - trough_price) / trough_price * 100
        if growth_pct < threshold_pct:
            continue

        start = dates[trough_idx]
        end = dates[min(peak_idx + EVENT_TAIL_BARS, n - 1)]
        if any(start <= e.end_date and end >= e.start_date for e in events):
            continue

        events.append(
            GrowthEvent(
                start_date=start,
                peak_date=dates[peak_idx],
                end_date=end,
                trough_price=float(trough_price),
                peak_price=float(peak_price),
                growth_pct=round(float(growth_pct), 2),
                days_above_target=best_run,
                sustained=best_run >= sustain_days,
            )
        )
    return events


def kuifje_score(event_count: int, decline_pct: float) -> float:
    """Triangular event score weighted by decline depth, clamped to [0, 10]."""
    raw = event_count * (event_count + 1) / 2 * decline_pct / 100
    return round(max(0.0, min(MAX_SCORE, raw)), 2)


def classify_kuifje(
    series: EnrichedSeries,
    settings: KuifjeSettings,
    *,
    reference_high: float | None = None,
) -> ScoreResult:
    """Score *series* against the Kuifje pattern.

    Args:
        series: Enriched daily history, ascending.
        settings: Kuifje thresholds.
        reference_high: All-time high reported by discovery; used when the
            fetched history does not reach back to the real peak.

    Returns:
        A ScoreResult; ``matched`` requires the decline to fall inside
        ``[ath_decline_min, ath_decline_max]`` and at least
        ``min_growth_events`` growth events.
    """
    if len(series.bars) < MIN_BARS:
        return ScoreResult(symbol=series.symbol, scanner=ScannerId.KUIFJE, matched=False, score=0.0)

    frame = bars_to_frame(series.bars)
    start = lookback_start(frame.index[-1], years=settings.growth_lookback_years)
    window = frame.loc[frame.index >= start]

    ath = max(float(window["high"].max()), reference_high or 0.0)
    current = series.current_price
    decline_pct = (ath - current) / ath * 100 if ath > 0 else 0.0

    events = find_growth_events(
        window, settings.growth_threshold_pct, settings.min_consecutive_days
    )
    positive_lows = frame.loc[frame["low"] > 0, "low"]
    window_lows = window.loc[window["low"] > 0, "low"]
    five_year_low = float(positive_lows.min()) if not positive_lows.empty else None
    three_year_low = float(window_lows.min()) if not window_lows.empty else None

    matched = (
        settings.ath_decline_min <= decline_pct <= settings.ath_decline_max
        and len(events) >= settings.min_growth_events
    )
    score = kuifje_score(len(events), decline_pct)

    logger.debug(
        "Kuifje %s: decline=%.1f%% events=%d score=%.2f matched=%s",
        series.symbol,
        decline_pct,
        len(events),
        score,
        matched,
    )
    return ScoreResult(
        symbol=series.symbol,
        scanner=ScannerId.KUIFJE,
        matched=matched,
        score=score,
        metrics={
            "ath_price": round(ath, 4),
            "ath_decline_pct": round(decline_pct, 2),
            "growth_event_count": float(len(events)),
            "sustained_event_count": float(sum(e.sustained for e in events)),
            "highest_growth_pct": max((e.growth_pct for e in events), default=0.0),
            "five_year_low": five_year_low,
            "three_year_low": three_year_low,
            "purchase_limit": (
                round(five_year_low * settings.purchase_limit_multiplier, 4)
                if five_year_low is not None
                else None
            ),
            "current_price": current,
        },
        growth_events=events,
    )
