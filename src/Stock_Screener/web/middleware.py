"""Exception handlers and request logging middleware.

Provider exceptions that escape a route become JSON ``{"detail": ...}``
responses. Scans never surface these, the orchestrator records them on the
run instead, but direct provider calls from a route may.
"""

import logging
import time
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from Stock_Screener.utils.exceptions import (
    DataFetchError,
    InsufficientDataError,
    ProviderUnavailable,
    RateLimited,
    TickerNotFoundError,
)

logger = logging.getLogger(__name__)

# Subclasses before DataFetchError so the most specific handler wins.
_ERROR_STATUS: tuple[tuple[type[DataFetchError], int, int], ...] = (
    (TickerNotFoundError, 404, logging.WARNING),
    (InsufficientDataError, 422, logging.WARNING),
    (ProviderUnavailable, 503, logging.ERROR),
    (RateLimited, 429, logging.WARNING),
    (DataFetchError, 502, logging.ERROR),
)

_QUIET_PATHS: frozenset[str] = frozenset({"/api/health"})


def _handler(status: int, level: int) -> Callable[[Request, Exception], Awaitable[Response]]:
    async def handle(request: Request, exc: Exception) -> Response:
        source = getattr(exc, "source", "?")
        logger.log(level, "%s error on %s (%s): %s", source, request.url.path, status, exc)
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    return handle


def register_exception_handlers(app: FastAPI) -> None:
    """Install one handler per provider exception type on *app*."""
    for exc_type, status, level in _ERROR_STATUS:
        app.add_exception_handler(exc_type, _handler(status, level))


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status code and duration of every request.

    Health and progress polls go to DEBUG so they do not drown the scan log.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - started) * 1000

        path = request.url.path
        polled = path in _QUIET_PATHS or path.endswith("/progress")
        logger.log(
            logging.DEBUG if polled else logging.INFO,
            "%s %s -> %d (%.1fms)",
            request.method,
            path,
            response.status_code,
            elapsed_ms,
        )
        return response
