"""Repository layer for all database query operations.

Provides typed operations for scan runs, incrementally written matches, and
per-symbol scan history, backed by a Database instance. All queries use
parameterized SQL. JSON columns are serialized with json.dumps() and
deserialized with json.loads().
"""

import datetime
import json
import logging
import sqlite3
from collections.abc import Iterable

from Stock_Screener.data.database import Database
from Stock_Screener.models.enums import ScannerId
from Stock_Screener.models.scan import ScanRun, StockMatch

logger = logging.getLogger(__name__)

_SCAN_RUN_COLUMNS = (
    "id, scanner, status, started_at, completed_at, markets, markets_scanned, "
    "candidates_found, stocks_deep_scanned, stocks_matched, new_stocks_found, "
    "errors, api_calls"
)

_MATCH_COLUMNS = (
    "run_id, scanner, symbol, name, market, exchange, score, metrics, "
    "needs_review, review_reasons, detected_at"
)


class Repository:
    """Query interface for the screener's persistence layer.

    All methods operate through the provided Database instance's connection.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Scan runs
    # ------------------------------------------------------------------

    async def save_scan_run(self, run: ScanRun) -> None:
        """Insert or update a ScanRun snapshot.

        An upsert keeps the row (and its matches) in place while the
        orchestrator rewrites counters and status on every flush.
        """
        conn = self._db.connection
        await conn.execute(
            f"INSERT INTO scan_runs ({_SCAN_RUN_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET "
            "status = excluded.status, "
            "completed_at = excluded.completed_at, "
            "markets = excluded.markets, "
            "markets_scanned = excluded.markets_scanned, "
            "candidates_found = excluded.candidates_found, "
            "stocks_deep_scanned = excluded.stocks_deep_scanned, "
            "stocks_matched = excluded.stocks_matched, "
            "new_stocks_found = excluded.new_stocks_found, "
            "errors = excluded.errors, "
            "api_calls = excluded.api_calls",
            (
                run.id,
                run.scanner,
                run.status,
                run.started_at.isoformat(),
                run.completed_at.isoformat() if run.completed_at else None,
                json.dumps(run.markets),
                json.dumps(run.markets_scanned),
                run.candidates_found,
                run.stocks_deep_scanned,
                run.stocks_matched,
                run.new_stocks_found,
                json.dumps(run.errors),
                json.dumps({str(k): v for k, v in run.api_calls.items()}),
            ),
        )
        await conn.commit()

    async def get_scan_by_id(self, run_id: str) -> ScanRun | None:
        """Return a ScanRun by its ID, or None if not found."""
        conn = self._db.connection
        cursor = await conn.execute(
            f"SELECT {_SCAN_RUN_COLUMNS} FROM scan_runs WHERE id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_scan_run(row)

    async def get_latest_run(self, scanner: ScannerId) -> ScanRun | None:
        """Return the most recent run of *scanner* by started_at, or None."""
        conn = self._db.connection
        cursor = await conn.execute(
            f"SELECT {_SCAN_RUN_COLUMNS} FROM scan_runs WHERE scanner = ? "
            "ORDER BY started_at DESC LIMIT 1",
            (scanner.value,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_scan_run(row)

    async def list_scan_runs(
        self,
        scanner: ScannerId,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ScanRun]:
        """Return runs of *scanner* ordered by most recent, with pagination."""
        conn = self._db.connection
        cursor = await conn.execute(
            f"SELECT {_SCAN_RUN_COLUMNS} FROM scan_runs WHERE scanner = ? "
            "ORDER BY started_at DESC LIMIT ? OFFSET ?",
            (scanner.value, limit, offset),
        )
        rows = await cursor.fetchall()
        return [_row_to_scan_run(row) for row in rows]

    # ------------------------------------------------------------------
    # Matches
    # ------------------------------------------------------------------

    async def save_match(self, match: StockMatch) -> bool:
        """Persist a match and report whether the symbol is new for this scanner.

        Returns:
            True if no earlier run of the same scanner matched this symbol.
        """
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT 1 FROM stock_matches WHERE scanner = ? AND symbol = ? AND run_id != ? LIMIT 1",
            (match.scanner.value, match.symbol, match.run_id),
        )
        is_new = await cursor.fetchone() is None

        await conn.execute(
            f"INSERT INTO stock_matches ({_MATCH_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(run_id, symbol) DO UPDATE SET "
            "score = excluded.score, "
            "metrics = excluded.metrics, "
            "needs_review = excluded.needs_review, "
            "review_reasons = excluded.review_reasons, "
            "detected_at = excluded.detected_at",
            (
                match.run_id,
                match.scanner.value,
                match.symbol,
                match.name,
                match.market,
                match.exchange,
                match.score,
                json.dumps(match.metrics),
                int(match.needs_review),
                json.dumps(match.review_reasons),
                match.detected_at.isoformat(),
            ),
        )
        await conn.commit()
        return is_new

    async def list_matches(
        self,
        scanner: ScannerId,
        *,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[StockMatch]:
        """Return matches for *scanner*, highest score first.

        When *run_id* is given only that run's matches are returned.
        """
        conn = self._db.connection
        if run_id is not None:
            cursor = await conn.execute(
                f"SELECT {_MATCH_COLUMNS} FROM stock_matches "
                "WHERE scanner = ? AND run_id = ? ORDER BY score DESC LIMIT ?",
                (scanner.value, run_id, limit),
            )
        else:
            cursor = await conn.execute(
                f"SELECT {_MATCH_COLUMNS} FROM stock_matches "
                "WHERE scanner = ? ORDER BY detected_at DESC, score DESC LIMIT ?",
                (scanner.value, limit),
            )
        rows = await cursor.fetchall()
        return [_row_to_match(row) for row in rows]

    # ------------------------------------------------------------------
    # Scan history
    # ------------------------------------------------------------------

    async def get_last_scanned(
        self,
        scanner: ScannerId,
        symbols: Iterable[str],
    ) -> dict[str, datetime.datetime]:
        """Return the last deep-scan time for each of *symbols* that has one."""
        wanted = set(symbols)
        if not wanted:
            return {}
        conn = self._db.connection
        cursor = await conn.execute(
            "SELECT symbol, last_scanned_at FROM scan_history WHERE scanner = ?",
            (scanner.value,),
        )
        rows = await cursor.fetchall()
        return {
            row[0]: datetime.datetime.fromisoformat(row[1]) for row in rows if row[0] in wanted
        }

    async def mark_scanned(
        self,
        scanner: ScannerId,
        symbol: str,
        scanned_at: datetime.datetime,
    ) -> None:
        """Record that *symbol* was deep-scanned by *scanner* at *scanned_at*."""
        conn = self._db.connection
        await conn.execute(
            "INSERT INTO scan_history (scanner, symbol, last_scanned_at) VALUES (?, ?, ?) "
            "ON CONFLICT(scanner, symbol) DO UPDATE SET last_scanned_at = excluded.last_scanned_at",
            (scanner.value, symbol, scanned_at.isoformat()),
        )
        await conn.commit()


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _row_to_scan_run(row: sqlite3.Row) -> ScanRun:
    """Convert a database row tuple to a ScanRun model."""
    return ScanRun(
        id=row[0],
        scanner=row[1],
        status=row[2],
        started_at=datetime.datetime.fromisoformat(row[3]),
        completed_at=(datetime.datetime.fromisoformat(row[4]) if row[4] is not None else None),
        markets=json.loads(row[5]),
        markets_scanned=json.loads(row[6]),
        candidates_found=row[7],
        stocks_deep_scanned=row[8],
        stocks_matched=row[9],
        new_stocks_found=row[10],
        errors=json.loads(row[11]),
        api_calls=json.loads(row[12]),
    )


def _row_to_match(row: sqlite3.Row) -> StockMatch:
    """Convert a database row tuple to a StockMatch model."""
    return StockMatch(
        run_id=row[0],
        scanner=row[1],
        symbol=row[2],
        name=row[3],
        market=row[4],
        exchange=row[5],
        score=row[6],
        metrics=json.loads(row[7]),
        needs_review=bool(row[8]),
        review_reasons=json.loads(row[9]),
        detected_at=datetime.datetime.fromisoformat(row[10]),
    )
