"""Ticker symbol normalization to the primary quote provider's conventions.

Discovery sources and user input use a mix of exchange-suffix styles
(``AAPL.LON``, ``SAP.STU``, ``XYZ.OTC``). Yahoo expects its own suffixes
(``.L``, ``.DE``, no suffix for US/OTC). Normalization is a pure string
transform: no I/O, total over all inputs, and idempotent.
"""

from __future__ import annotations

import logging
from typing import Final

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Suffix tables
# ---------------------------------------------------------------------------

# Suffixes Yahoo already understands; passed through unchanged.
NATIVE_SUFFIXES: Final[frozenset[str]] = frozenset(
    {
        # Europe
        "AS", "PA", "DE", "F", "L", "SW", "BR", "MI", "MC", "LS", "VI", "WA",
        "PR", "BE", "MU", "HM", "DU", "BD", "TL", "RG", "VS", "IS", "AT", "CO",
        "OL", "ST", "HE", "IR",
        # Asia-Pacific
        "HK", "T", "SS", "SZ", "SI", "KS", "KQ", "TW", "TWO", "AX", "NZ", "NS",
        "BO", "JK", "KL", "BK",
        # Americas
        "TO", "V", "CN", "SA", "MX",
        # Middle East / Africa
        "TA", "SR", "JO",
    }
)  # fmt: skip

# Discovery-source suffix -> Yahoo suffix ("" drops the suffix entirely).
SUFFIX_MAP: Final[dict[str, str]] = {
    "LON": ".L",
    "FRK": ".F",
    "TRV": ".V",
    "TRT": ".TO",
    "STU": ".DE",
    "BER": ".BE",
    "MUN": ".MU",
    "HAM": ".HM",
    "DUS": ".DU",
    "VIE": ".VI",
    "WAR": ".WA",
    "PRA": ".PR",
    "BUD": ".BD",
    "TAL": ".TL",
    "RIG": ".RG",
    "VIL": ".VS",
    "IST": ".IS",
    "ATH": ".AT",
    "OTC": "",
    "PNK": "",
    "OTCBB": "",
}

# Yahoo suffix -> Alpha Vantage venue code, for the secondary provider.
_SECONDARY_SUFFIXES: Final[dict[str, str]] = {
    "L": "LON",
    "TO": "TRT",
    "V": "TRV",
    "DE": "DEX",
    "F": "FRK",
    "BO": "BSE",
    "SS": "SHH",
    "SZ": "SHZ",
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def split_symbol(symbol: str) -> tuple[str, str | None]:
    """Split ``BASE.SUFFIX`` at the first dot.

    Returns:
        ``(base, suffix)``; suffix is None when the symbol has no dot.
    """
    base, sep, suffix = symbol.strip().partition(".")
    if not sep:
        return base, None
    return base, suffix


def is_native_suffix(suffix: str) -> bool:
    """Return True if Yahoo accepts this exchange suffix as-is."""
    return suffix.upper() in NATIVE_SUFFIXES


def normalize_symbol(symbol: str) -> str:
    """Map a symbol to the primary provider's exchange-suffix convention.

    - No suffix: returned unchanged (after trimming whitespace).
    - Native suffix: returned with the suffix upper-cased.
    - Known foreign suffix: substituted from ``SUFFIX_MAP``.
    - Unknown suffix: passed through unchanged with a structured warning.

    Examples::

        normalize_symbol("AAPL.LON")  # "AAPL.L"
        normalize_symbol("XYZ.OTC")   # "XYZ"
        normalize_symbol("SHOP.to")   # "SHOP.TO"
    """
    base, suffix = split_symbol(symbol)
    if suffix is None:
        return base

    upper = suffix.upper()
    if upper in NATIVE_SUFFIXES:
        return f"{base}.{upper}"

    mapped = SUFFIX_MAP.get(upper)
    if mapped is not None:
        return f"{base}{mapped}"

    logger.warning(
        "Unknown exchange suffix '%s' in %s, passing through",
        suffix,
        symbol,
        extra={"symbol": symbol, "suffix": suffix},
    )
    return f"{base}.{suffix}"


def to_secondary_symbol(symbol: str) -> str:
    """Translate a Yahoo-style symbol to Alpha Vantage's suffix convention.

    Alpha Vantage uses the three-letter venue codes that ``SUFFIX_MAP``
    translates from (``.LON``, ``.FRK``), plus a few of its own.
    """
    base, suffix = split_symbol(normalize_symbol(symbol))
    if suffix is None:
        return base
    secondary = _SECONDARY_SUFFIXES.get(suffix.upper())
    return f"{base}.{secondary}" if secondary else f"{base}.{suffix}"

