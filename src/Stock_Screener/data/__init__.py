"""Persistence layer for the stock screener.

Re-exports the main public API: Database for connection management,
Repository for typed query operations.
"""

from Stock_Screener.data.database import Database
from Stock_Screener.data.repository import Repository

__all__ = ["Database", "Repository"]
