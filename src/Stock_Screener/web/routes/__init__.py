"""FastAPI route modules for the screener API.

Re-exports all routers so the application factory can import them:
    from Stock_Screener.web.routes import health_router, scan_router
"""

from Stock_Screener.web.routes.health import router as health_router
from Stock_Screener.web.routes.scan import router as scan_router

__all__ = [
    "health_router",
    "scan_router",
]
