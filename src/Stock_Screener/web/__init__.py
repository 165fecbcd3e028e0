"""FastAPI web layer for the stock screener.

Re-exports the application factory so consumers can import directly:
    from Stock_Screener.web import create_app
"""

from Stock_Screener.web.app import create_app

__all__ = ["create_app"]
