"""Async SQLite database manager for the prediction ledger.

Uses aiosqlite for non-blocking database operations with WAL mode so a
scheduled run and the HTTP service can share one file.
"""

import os
from typing import Self

import aiosqlite

from predictor.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS predictions (
    id TEXT PRIMARY KEY,
    actor_id TEXT NOT NULL,
    made_on_date TEXT NOT NULL,
    target_date TEXT NOT NULL,
    predicted_price TEXT NOT NULL,
    confidence INTEGER NOT NULL,
    trend TEXT NOT NULL,
    reasoning TEXT NOT NULL DEFAULT '',
    action TEXT NOT NULL DEFAULT 'HOLD',
    entry_zone TEXT NOT NULL DEFAULT '',
    target TEXT NOT NULL DEFAULT '',
    stop_loss TEXT NOT NULL DEFAULT '',
    market_context TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    actual_price TEXT,
    difference TEXT,
    percentage_error TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER
);
"""

# At most one open forecast per target date
_CREATE_INDEXES_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS uq_predictions_pending_target
    ON predictions(target_date) WHERE status = 'pending';

CREATE INDEX IF NOT EXISTS idx_predictions_created
    ON predictions(created_at);

CREATE INDEX IF NOT EXISTS idx_predictions_made_on
    ON predictions(made_on_date);
"""


class PredictionDatabase:
    """Async SQLite connection manager for the prediction ledger.

    Usage:
        async with PredictionDatabase("data/predictions.db") as database:
            ledger = ReconciliationLedger(database, system_actor="system")
    """

    def __init__(self, db_path: str = "data/predictions.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open the connection, configure pragmas, and create the schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()
        await self._ensure_schema_version()

        logger.info("ledger_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("ledger_db_closed", db_path=self._db_path)

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
