"""SQLite persistence with serialized access.

Every unit of work goes through `Database.enqueue()`, which runs at most one
unit at a time. That keeps two logically concurrent flows (a reset detected by
the poller and an agent being added from the UI, say) from interleaving their
writes or from having a one-off statement land inside somebody else's
transaction.

A unit of work receives a `Transaction` handle. Helpers called from inside a
unit of work take that handle as `tx=` and run on it directly instead of
queueing, which would otherwise deadlock.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

META_INT_MODULE_VERSION = 1

_CREATE_META_INT = """
CREATE TABLE IF NOT EXISTS meta_int (
    key INTEGER PRIMARY KEY ASC,
    value INTEGER NOT NULL
)
"""


class DatabaseError(Exception):
    """Raised when the database can't be used by this version of the software."""


class SchemaDowngradeError(DatabaseError):
    """Stored schema is newer than the code that opened it."""


class MetaInt(Enum):
    """Keys of the integer settings table. Values are the stored keys and must be unique."""

    META_INT_MODULE_VERSION = 1
    SERVER_RESET_VERSION = 2
    AGENT_MODULE_VERSION = 3
    AGENT_SERVER_RESET_BEHAVIOR = 4
    STAR_CHART_MODULE_VERSION = 5


class Transaction:
    """Handle on the connection for the duration of one unit of work."""

    def __init__(self, conn: sqlite3.Connection, *, in_transaction: bool) -> None:
        self._conn = conn
        self.in_transaction = in_transaction

    def execute(self, sql: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> sqlite3.Cursor:
        return self._conn.execute(sql, params)

    def fetchone(
        self, sql: str, params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> sqlite3.Row | None:
        return self._conn.execute(sql, params).fetchone()

    def fetchall(
        self, sql: str, params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> list[sqlite3.Row]:
        return self._conn.execute(sql, params).fetchall()

    def scalar(self, sql: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> Any:
        """First column of the first row, or None."""
        row = self.fetchone(sql, params)
        return None if row is None else row[0]


class Database:
    """Single-owner queue in front of one sqlite3 connection."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError("Database is not open")
        return self._conn

    def open(self) -> None:
        """Connect and make sure the meta_int table exists at a supported version."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("BEGIN")
        try:
            conn.execute(_CREATE_META_INT)
            row = conn.execute(
                "SELECT value FROM meta_int WHERE key = ?",
                (MetaInt.META_INT_MODULE_VERSION.value,),
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO meta_int (key, value) VALUES (?, ?)",
                    (MetaInt.META_INT_MODULE_VERSION.value, META_INT_MODULE_VERSION),
                )
            elif row["value"] > META_INT_MODULE_VERSION:
                raise SchemaDowngradeError(
                    f"meta_int table is version {row['value']}, but the software only "
                    f"supports up to version {META_INT_MODULE_VERSION}"
                )
            elif row["value"] < META_INT_MODULE_VERSION:
                raise DatabaseError("meta_int table needs to be upgraded, which is not supported")
            conn.execute("COMMIT")
        except Exception:
            logger.error("Init transaction failed. Rolling back.")
            conn.execute("ROLLBACK")
            conn.close()
            raise
        self._conn = conn
        logger.info("Opened database %s", self.db_path)

    async def close(self) -> None:
        """Wait for queued units of work, then close the connection."""
        if self._conn is None:
            return
        logger.info("Waiting for pending db transactions to complete")
        async with self._lock:
            self._conn.close()
            self._conn = None
        logger.info("Database connection closed")

    async def enqueue(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        tx: Transaction | None = None,
        with_transaction: bool = False,
    ) -> T:
        """Run `fn` with exclusive access to the database.

        With `tx`, `fn` runs immediately on that handle. Otherwise it waits its
        turn, optionally wrapped in BEGIN/COMMIT; any exception rolls the
        transaction back and is re-raised to the caller.
        """
        if tx is not None:
            return await fn(tx)

        async with self._lock:
            conn = self.conn
            if not with_transaction:
                return await fn(Transaction(conn, in_transaction=False))

            conn.execute("BEGIN")
            try:
                result = await fn(Transaction(conn, in_transaction=True))
            except BaseException:
                logger.warning("Transaction failed. Rolling back.", exc_info=True)
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error:
                    logger.exception("Failed to roll back transaction")
                raise
            conn.execute("COMMIT")
            return result

    async def get_meta_int(self, key: MetaInt, *, tx: Transaction | None = None) -> int | None:
        """Value stored under `key`, or None if unset."""
        if not isinstance(key, MetaInt):
            raise ValueError(f"Invalid meta_int key: {key!r}")

        async def _get(t: Transaction) -> int | None:
            return t.scalar("SELECT value FROM meta_int WHERE key = ?", (key.value,))

        return await self.enqueue(_get, tx=tx)

    async def set_meta_int(
        self, key: MetaInt, value: int, *, tx: Transaction | None = None,
    ) -> None:
        if not isinstance(key, MetaInt):
            raise ValueError(f"Invalid meta_int key: {key!r}")
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"meta_int can only accept integer values but was given {value!r}")

        async def _set(t: Transaction) -> None:
            t.execute(
                "INSERT OR REPLACE INTO meta_int (key, value) VALUES (?, ?)", (key.value, value),
            )

        await self.enqueue(_set, tx=tx)

    async def module_version(
        self, key: MetaInt, current_version: int, *, tx: Transaction,
    ) -> int:
        """Stored schema version for a module (0 if never created).

        Raises SchemaDowngradeError when the stored version is newer than
        `current_version`.
        """
        version = await self.get_meta_int(key, tx=tx)
        if version is None:
            # 0 means the module's tables have never been created.
            version = 0
        if version > current_version:
            raise SchemaDowngradeError(
                f"{key.name} is version {version}, but the software only supports up to "
                f"version {current_version}"
            )
        return version
