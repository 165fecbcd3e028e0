"""Shared helpers for the provider-facing service modules.

Consolidates safe numeric conversions for loosely-typed JSON payloads and
the construction of the shared httpx client used by the token cache, the
quote client and discovery.
"""

from __future__ import annotations

import math
from typing import Final

import httpx

EXTERNAL_CALL_TIMEOUT_SECONDS: Final[float] = 30.0
MAX_CONNECTIONS: Final[int] = 20
MAX_KEEPALIVE_CONNECTIONS: Final[int] = 10


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------


def safe_float(value: object) -> float:
    """Convert a numeric value to float, treating NaN/None/garbage as 0.0."""
    if value is None:
        return 0.0
    try:
        float_val = float(str(value))
        if math.isnan(float_val) or math.isinf(float_val):
            return 0.0
        return float_val
    except (ValueError, TypeError):
        return 0.0


def safe_int(value: object) -> int:
    """Convert a numeric value to int, treating NaN/None/garbage as 0."""
    return int(safe_float(value))


def optional_float(value: object) -> float | None:
    """Like safe_float, but missing or non-positive values become None.

    Scanner payloads use null and 0 interchangeably for "unknown".
    """
    result = safe_float(value)
    return result if result > 0 else None


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def build_http_client(
    *,
    timeout_seconds: float = EXTERNAL_CALL_TIMEOUT_SECONDS,
    user_agent: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared AsyncClient with explicit timeouts and pool limits.

    *transport* replaces the network layer, e.g. with httpx.MockTransport.
    """
    headers = {"User-Agent": user_agent} if user_agent else None
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=5.0,
            read=timeout_seconds,
            write=10.0,
            pool=5.0,
        ),
        limits=httpx.Limits(
            max_connections=MAX_CONNECTIONS,
            max_keepalive_connections=MAX_KEEPALIVE_CONNECTIONS,
        ),
        headers=headers,
        transport=transport,
    )
