"""Zonnebloem: a stable price base interrupted by explosive spikes.

The base price at each bar is a rolling 60-bar median of closes that
ignores closes more than twice the window's rough median. A spike zone
opens when a close sits at least half the spike threshold above the base,
and stays open while closes remain at least a quarter of the threshold
above the base measured just before the zone opened. A zone counts as a
spike when it lasts long enough and its peak clears the full threshold.
"""

import logging

import numpy as np
import pandas as pd

from Stock_Screener.analysis._series import bars_to_frame, lookback_start
from Stock_Screener.config import ZonnebloemSettings
from Stock_Screener.models.enums import ScannerId
from Stock_Screener.models.market_data import EnrichedSeries
from Stock_Screener.models.scan import ScoreResult, SpikeEvent

logger = logging.getLogger(__name__)

# --- Detection constants ---

MIN_BARS: int = 60
MIN_WINDOW_BARS: int = 30
BASE_WINDOW: int = 60
BASE_OUTLIER_MULTIPLE: float = 2.0
ENTRY_FRACTION: float = 0.5
CONTINUE_FRACTION: float = 0.25
MIN_QUARTER_BARS: int = 5
RISING_BASE_BONUS: float = 1.2
MAX_SCORE: float = 10.0


def rolling_base(closes: np.ndarray, window: int = BASE_WINDOW) -> np.ndarray:
    """Rolling median of closes with obvious spike closes excluded."""
    base = np.empty(len(closes), dtype=float)
    for i in range(len(closes)):
        segment = closes[max(0, i - window) : i + 1]
        rough = float(np.median(segment))
        calm = segment[segment <= rough * BASE_OUTLIER_MULTIPLE]
        base[i] = float(np.median(calm)) if calm.size else rough
    return base


def find_spike_zones(
    frame: pd.DataFrame,
    base: np.ndarray,
    settings: ZonnebloemSettings,
) -> list[tuple[int, int, SpikeEvent]]:
    """Detect valid spikes as ``(start_idx, end_idx, event)`` triples."""
    closes = frame["close"].to_numpy(dtype=float)
    dates = [ts.date() for ts in frame.index]
    entry_pct = settings.spike_threshold_pct * ENTRY_FRACTION
    continue_pct = settings.spike_threshold_pct * CONTINUE_FRACTION

    zones: list[tuple[int, int, SpikeEvent]] = []
    n = len(closes)
    i = 0
    while i < n:
        if base[i] <= 0 or (closes[i] - base[i]) / base[i] * 100 < entry_pct:
            i += 1
            continue

        start = i
        zone_base = float(base[max(0, start - 1)])
        if zone_base <= 0:
            i += 1
            continue
        peak_price = closes[i]
        peak_idx = i
        j = i + 1
        while j < n:
            if closes[j] > peak_price:
                peak_price = closes[j]
                peak_idx = j
            if (closes[j] - zone_base) / zone_base * 100 < continue_pct:
                break
            j += 1

        end = j - 1
        duration = end - start + 1
        spike_pct = (peak_price - zone_base) / zone_base * 100
        overlaps = any(start <= z_end and end >= z_start for z_start, z_end, _ in zones)
        if (
            duration >= settings.min_spike_duration_days
            and spike_pct >= settings.spike_threshold_pct
            and not overlaps
        ):
            zones.append(
                (
                    start,
                    end,
                    SpikeEvent(
                        start_date=dates[start],
                        peak_date=dates[peak_idx],
                        end_date=dates[end],
                        base_price=round(zone_base, 6),
                        peak_price=float(peak_price),
                        spike_pct=round(float(spike_pct), 2),
                        duration_days=duration,
                    ),
                )
            )
        i = end + 1
    return zones


def _twelve_month_change(
    window: pd.DataFrame,
    spikes: list[SpikeEvent],
) -> float | None:
    cutoff = lookback_start(window.index[-1], months=12)
    after = window.loc[window.index >= cutoff, "close"]
    if after.empty or after.iloc[0] <= 0:
        return None

    reference = float(after.iloc[0])
    cutoff_date = cutoff.date()
    if any(s.start_date <= cutoff_date <= s.end_date for s in spikes):
        month_before = window.loc[
            (window.index >= lookback_start(cutoff, months=1)) & (window.index < cutoff),
            "close",
        ]
        if month_before.empty:
            return None
        reference = float(month_before.median())

    current = float(window["close"].iloc[-1])
    return (current - reference) / reference * 100


def _base_decline(base: np.ndarray) -> float | None:
    quarter = len(base) // 4
    if quarter <= MIN_QUARTER_BARS:
        return None
    first = float(np.median(base[:quarter]))
    last = float(np.median(base[-quarter:]))
    if first <= 0:
        return None
    return (last - first) / first * 100


def zonnebloem_score(
    spikes: list[SpikeEvent],
    *,
    min_duration: int,
    base_cv: float,
    max_base_cv: float,
    base_rising: bool,
) -> float:
    """Spike score scaled by base stability, clamped to [0, 10]."""
    spike_score = sum(s.spike_pct / 100 * s.duration_days / min_duration for s in spikes)
    if base_rising:
        spike_score *= RISING_BASE_BONUS
    stability = max(0.0, 1 - base_cv / max_base_cv) if max_base_cv > 0 else 0.0
    raw = spike_score * (0.5 + 0.5 * stability)
    return round(max(0.0, min(MAX_SCORE, raw)), 2)


def classify_zonnebloem(series: EnrichedSeries, settings: ZonnebloemSettings) -> ScoreResult:
    """Score *series* against the Zonnebloem pattern.

    Match requires a calm base (CV within ``max_base_cv``), at least
    ``min_spike_count`` spikes, a 12-month change no worse than
    ``-max_price_decline_12m_pct`` and a base decline no worse than
    ``-max_base_decline_pct``. Missing change figures do not block a match.
    """
    no_match = ScoreResult(
        symbol=series.symbol, scanner=ScannerId.ZONNEBLOEM, matched=False, score=0.0
    )
    if len(series.bars) < MIN_BARS:
        return no_match

    frame = bars_to_frame(series.bars)
    start = lookback_start(frame.index[-1], months=settings.lookback_months)
    window = frame.loc[frame.index >= start]
    if len(window) < MIN_WINDOW_BARS:
        return no_match

    closes = window["close"].to_numpy(dtype=float)
    base = rolling_base(closes)
    zones = find_spike_zones(window, base, settings)
    spikes = [event for _, _, event in zones]

    calm_mask = np.ones(len(closes), dtype=bool)
    for start, end, _ in zones:
        calm_mask[start : end + 1] = False
    calm = closes[calm_mask]
    base_cv = float(np.std(calm) / np.mean(calm)) if calm.size and np.mean(calm) > 0 else None

    change_12m = _twelve_month_change(window, spikes)
    base_decline = _base_decline(base)

    matched = (
        base_cv is not None
        and base_cv <= settings.max_base_cv
        and len(spikes) >= settings.min_spike_count
        and (change_12m is None or change_12m >= -settings.max_price_decline_12m_pct)
        and (base_decline is None or base_decline >= -settings.max_base_decline_pct)
    )
    score = (
        zonnebloem_score(
            spikes,
            min_duration=settings.min_spike_duration_days,
            base_cv=base_cv,
            max_base_cv=settings.max_base_cv,
            base_rising=base_decline is not None and base_decline > 0,
        )
        if base_cv is not None
        else 0.0
    )

    logger.debug(
        "Zonnebloem %s: spikes=%d cv=%s change12m=%s score=%.2f matched=%s",
        series.symbol,
        len(spikes),
        base_cv,
        change_12m,
        score,
        matched,
    )
    return ScoreResult(
        symbol=series.symbol,
        scanner=ScannerId.ZONNEBLOEM,
        matched=matched,
        score=score,
        metrics={
            "base_price_median": round(float(np.median(base)), 6),
            "base_cv": round(base_cv, 4) if base_cv is not None else None,
            "spike_count": float(len(spikes)),
            "highest_spike_pct": max((s.spike_pct for s in spikes), default=0.0),
            "price_change_12m_pct": round(change_12m, 2) if change_12m is not None else None,
            "base_decline_pct": round(base_decline, 2) if base_decline is not None else None,
            "current_price": series.current_price,
        },
        spike_events=spikes,
    )
