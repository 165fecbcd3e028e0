"""FastAPI app factory and application lifespan."""

import contextlib
import logging
from collections.abc import AsyncIterator

import httpx
from fastapi import FastAPI

from Stock_Screener.config import ScreenerSettings, get_settings
from Stock_Screener.logging_config import configure_logging
from Stock_Screener.runtime import open_runtime
from Stock_Screener.web.middleware import RequestLoggingMiddleware, register_exception_handlers

logger = logging.getLogger(__name__)


def create_app(
    settings: ScreenerSettings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The lifespan opens one runtime (database, HTTP client, budgets, token
    cache, orchestrator) and publishes it on ``app.state`` for the
    dependency providers in ``web.deps``.

    Args:
        settings: Settings to use instead of the environment-derived ones.
        transport: Optional httpx transport for every provider call.
    """
    configure_logging()
    resolved = settings or get_settings()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with open_runtime(resolved, transport=transport) as runtime:
            app.state.runtime = runtime
            app.state.database = runtime.database
            app.state.registry = runtime.registry
            app.state.orchestrator = runtime.orchestrator
            logger.info("Screener runtime ready (db=%s)", resolved.db_path)
            try:
                yield
            finally:
                from Stock_Screener.web.routes.scan import cancel_scan_tasks  # noqa: PLC0415

                await cancel_scan_tasks()

    app = FastAPI(title="Stock Screener", lifespan=lifespan)
    app.state.settings = resolved

    register_exception_handlers(app)
    app.add_middleware(RequestLoggingMiddleware)

    from Stock_Screener.web.routes import health_router, scan_router  # noqa: PLC0415

    app.include_router(scan_router, prefix="/api")
    app.include_router(health_router, prefix="/api")

    logger.info("Stock Screener web app created")
    return app
