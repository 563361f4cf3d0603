"""SQLite-backed key/value cache store with per-entry expiry."""

import logging
import sqlite3
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

PROXY_NAMESPACE = "proxy"
GEO_NAMESPACE = "geo"

_SCHEMA_VERSION = 1

_SCHEMA_V1 = """\
CREATE TABLE IF NOT EXISTS cache_entries (
    namespace   TEXT NOT NULL,
    key         TEXT NOT NULL,
    value       TEXT NOT NULL,
    expires_at  REAL,
    updated_at  REAL NOT NULL,
    PRIMARY KEY (namespace, key)
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_expires
    ON cache_entries (expires_at);
"""


class CacheStore(Protocol):
    """Interface the probe pipeline expects from a cache store."""

    async def get(self, key: str) -> str | None: ...

    async def put(
        self, key: str, value: str, ttl_seconds: int | None = None
    ) -> None: ...


def init_db(db_path: str) -> sqlite3.Connection:
    """Open (or create) the SQLite database and apply pending migrations.

    Args:
        db_path: Filesystem path for the database, or ``":memory:"`` for
            an in-memory database (useful in tests).

    Returns:
        An open ``sqlite3.Connection`` with WAL journal mode.
    """
    if db_path != ":memory:":
        path = Path(db_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(path)
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.row_factory = sqlite3.Row
    _migrate(conn)
    return conn


class SqliteStore:
    """One namespace of the ``cache_entries`` table.

    Entries written with a TTL read as absent once expired; expired rows are
    purged lazily on read.

    Args:
        conn: Open database connection (from ``init_db``).
        namespace: Logical cache name, e.g. ``"proxy"`` or ``"geo"``.
        clock: Returns the current epoch time in seconds.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        namespace: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._conn = conn
        self._namespace = namespace
        self._clock = clock

    async def get(self, key: str) -> str | None:
        row = self._conn.execute(
            "SELECT value, expires_at FROM cache_entries "
            "WHERE namespace = ? AND key = ?",
            (self._namespace, key),
        ).fetchone()
        if row is None:
            return None
        if row["expires_at"] is not None and row["expires_at"] <= self._clock():
            logger.debug("Cache entry %s/%s expired", self._namespace, key)
            await self.delete(key)
            return None
        return row["value"]

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        now = self._clock()
        expires_at = now + ttl_seconds if ttl_seconds is not None else None
        self._conn.execute(
            """\
            INSERT INTO cache_entries (namespace, key, value, expires_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (namespace, key) DO UPDATE SET
                value      = excluded.value,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            """,
            (self._namespace, key, value, expires_at, now),
        )
        self._conn.commit()

    async def delete(self, key: str) -> None:
        self._conn.execute(
            "DELETE FROM cache_entries WHERE namespace = ? AND key = ?",
            (self._namespace, key),
        )
        self._conn.commit()

    async def scan(self) -> list[tuple[str, str]]:
        """Return every live ``(key, value)`` pair in this namespace."""
        rows = self._conn.execute(
            "SELECT key, value FROM cache_entries "
            "WHERE namespace = ? AND (expires_at IS NULL OR expires_at > ?) "
            "ORDER BY key",
            (self._namespace, self._clock()),
        ).fetchall()
        return [(row["key"], row["value"]) for row in rows]


def _migrate(conn: sqlite3.Connection) -> None:
    """Apply database migrations up to ``_SCHEMA_VERSION``.

    Uses the SQLite ``user_version`` pragma to track the current schema
    version.
    """
    (current,) = conn.execute("PRAGMA user_version").fetchone()

    if current >= _SCHEMA_VERSION:
        return

    if current < 1:
        logger.debug("Applying schema migration v0 -> v1")
        conn.executescript(_SCHEMA_V1)

    conn.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
    conn.commit()
    logger.debug("Database schema at version %d", _SCHEMA_VERSION)
