"""SQLite connection lifecycle and the numbered-migration runner.

One aiosqlite connection per process, in WAL mode with foreign keys on.
Schema changes live in ``migrations/NNN_description.sql`` and are applied
in version order; ``schema_version`` records which ones already ran.
"""

import datetime
import logging
from pathlib import Path
from types import TracebackType

import aiosqlite

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).parent / "migrations"
_IN_MEMORY = ":memory:"
_PRAGMAS = ("PRAGMA journal_mode=WAL", "PRAGMA foreign_keys=ON", "PRAGMA busy_timeout=5000")


def _migration_files() -> list[tuple[int, Path]]:
    """Return ``(version, path)`` pairs sorted by version."""
    found = [(int(path.name.split("_", 1)[0]), path) for path in _MIGRATIONS_DIR.glob("*.sql")]
    return sorted(found)


class Database:
    """Async SQLite handle shared by the repository, the cache and health checks.

    Usage::

        async with Database("data/screener.db") as db:
            await db.connection.execute(...)
    """

    def __init__(self, db_path: str = "data/screener.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            msg = "Database is not connected. Call connect() or use 'async with'."
            raise RuntimeError(msg)
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the file (creating its directory if needed) and bring the schema up to date."""
        if self._db_path != _IN_MEMORY:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._db_path)
        for pragma in _PRAGMAS:
            await conn.execute(pragma)
        self._connection = conn
        applied = await self._migrate()
        logger.info("Database %s ready (%d migrations applied)", self._db_path, applied)

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info("Database %s closed", self._db_path)

    async def ping(self) -> bool:
        """Run ``SELECT 1``. False when closed or when the query fails."""
        if self._connection is None:
            return False
        try:
            cursor = await self._connection.execute("SELECT 1")
            await cursor.fetchone()
        except (aiosqlite.Error, ValueError) as exc:
            logger.warning("Database ping failed: %s", exc)
            return False
        return True

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def _migrate(self) -> int:
        """Apply every migration not yet in ``schema_version``; return how many ran."""
        conn = self.connection
        await conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version "
            "(version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )
        await conn.commit()

        cursor = await conn.execute("SELECT version FROM schema_version")
        done = {row[0] for row in await cursor.fetchall()}

        count = 0
        for version, path in _migration_files():
            if version in done:
                continue
            logger.info("Applying migration %s", path.name)
            # executescript() commits per statement, so the version row is
            # only recorded after the whole file went through.
            await conn.executescript(path.read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.datetime.now(datetime.UTC).isoformat()),
            )
            await conn.commit()
            count += 1
        return count
