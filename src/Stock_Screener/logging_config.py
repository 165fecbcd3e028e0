"""Logging setup shared by the ``screener`` CLI and the web app."""

from __future__ import annotations

import logging
import os

LOG_FORMAT: str = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_PACKAGE = "Stock_Screener"
_SUBPACKAGES: tuple[str, ...] = ("services", "web", "data", "analysis")


def _level_from_name(name: str | None) -> int | None:
    if not name:
        return None
    return logging.getLevelNamesMapping().get(name.upper())


def configure_logging(
    *,
    level: str = "",
    verbose: bool = False,
    quiet: bool = False,
) -> None:
    """Configure the root logger.

    Priority: verbose > quiet > level param > LOG_LEVEL env > INFO. Unknown
    level names fall back to INFO. ``force=True`` replaces whatever uvicorn
    installed first. ``LOG_LEVEL_<SUBPACKAGE>`` (SERVICES, WEB, DATA,
    ANALYSIS) sets one subpackage's level, e.g. ``LOG_LEVEL_SERVICES=DEBUG``
    to trace provider calls without the request noise.
    """
    if verbose:
        effective = logging.DEBUG
    elif quiet:
        effective = logging.WARNING
    else:
        effective = _level_from_name(level or os.environ.get("LOG_LEVEL")) or logging.INFO

    logging.basicConfig(level=effective, format=LOG_FORMAT, force=True)

    # RequestLoggingMiddleware replaces the access log; httpx logs each request at INFO.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(max(effective, logging.WARNING))

    for subpackage in _SUBPACKAGES:
        override = _level_from_name(os.environ.get(f"LOG_LEVEL_{subpackage.upper()}"))
        if override is not None:
            logging.getLogger(f"{_PACKAGE}.{subpackage}").setLevel(override)
