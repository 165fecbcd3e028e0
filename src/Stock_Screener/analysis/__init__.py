"""Pattern classifiers and price-history validation.

Re-exports all public functions so consumers can import directly:
    from Stock_Screener.analysis import classify_kuifje, classify_zonnebloem
"""

from Stock_Screener.analysis.kuifje import (
    classify_kuifje,
    find_growth_events,
    find_troughs,
    kuifje_score,
)
from Stock_Screener.analysis.validation import (
    CrossValidation,
    SplitEvent,
    ValidationResult,
    cross_validate_price,
    detect_stock_split,
    validate_price_history,
)
from Stock_Screener.analysis.zonnebloem import (
    classify_zonnebloem,
    find_spike_zones,
    rolling_base,
    zonnebloem_score,
)

__all__ = [
    # Kuifje
    "classify_kuifje",
    "find_growth_events",
    "find_troughs",
    "kuifje_score",
    # Zonnebloem
    "classify_zonnebloem",
    "find_spike_zones",
    "rolling_base",
    "zonnebloem_score",
    # Validation
    "CrossValidation",
    "SplitEvent",
    "ValidationResult",
    "cross_validate_price",
    "detect_stock_split",
    "validate_price_history",
]
