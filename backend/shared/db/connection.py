"""SQLite database connection and schema management."""

from __future__ import annotations

import contextlib
import os
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from shared.dal.exceptions import PersistenceError

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = structlog.get_logger()

_DB_FILE_PERMISSIONS = 0o600

# Entity tables keep the full record as JSON in `data` and copy the fields used
# for filtering and ordering into indexed columns. `seq` preserves creation order.
_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS users (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    username TEXT NOT NULL,
    is_active INTEGER NOT NULL,
    score INTEGER NOT NULL,
    wins INTEGER NOT NULL,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_users_username
    ON users (username COLLATE NOCASE);

CREATE INDEX IF NOT EXISTS idx_users_leaderboard
    ON users (is_active, score DESC, wins DESC, seq);

CREATE TABLE IF NOT EXISTS games (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    is_active INTEGER NOT NULL,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_games_name
    ON games (name COLLATE NOCASE);

CREATE TABLE IF NOT EXISTS bots (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    owner_id TEXT NOT NULL,
    game_id TEXT NOT NULL,
    status TEXT NOT NULL,
    is_active INTEGER NOT NULL,
    score INTEGER NOT NULL,
    wins INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_bots_owner_game
    ON bots (owner_id, game_id);

CREATE INDEX IF NOT EXISTS idx_bots_leaderboard
    ON bots (status, is_active, score DESC, wins DESC, seq);

CREATE INDEX IF NOT EXISTS idx_bots_game
    ON bots (game_id);

CREATE TABLE IF NOT EXISTS settlements (
    match_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    PRIMARY KEY (match_id, kind, entity_id)
);

CREATE TABLE IF NOT EXISTS matches (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    game_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    duration INTEGER,
    total_moves INTEGER NOT NULL,
    settlement_pending INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_matches_game ON matches (game_id);
CREATE INDEX IF NOT EXISTS idx_matches_status ON matches (status, completed_at DESC);
CREATE INDEX IF NOT EXISTS idx_matches_created ON matches (created_at DESC);
CREATE INDEX IF NOT EXISTS idx_matches_settlement
    ON matches (settlement_pending) WHERE settlement_pending = 1;

CREATE TABLE IF NOT EXISTS match_moves (
    match_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (match_id, seq)
);
"""


class Database:
    """SQLite database wrapper with schema management and transaction helpers."""

    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        self._conn: sqlite3.Connection | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        """Return the active connection or raise if disconnected."""
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        return self._conn

    def connect(self) -> None:
        """Open the database, apply pragmas, create schema, and harden file permissions."""
        parent = Path(self._path).parent
        parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.executescript(_SCHEMA_SQL)

        self._harden_permissions()
        logger.info("database connected", path=self._path)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block inside a write transaction.

        Commits on normal exit and rolls back on any exception. Operational
        failures (locked or unavailable database, disk errors) surface as
        PersistenceError.
        """
        conn = self.connection
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
        except sqlite3.OperationalError as exc:
            if conn.in_transaction:
                conn.rollback()
            raise PersistenceError(f"write failed: {exc}") from exc
        except BaseException:
            if conn.in_transaction:
                conn.rollback()
            raise
        else:
            conn.commit()

    def fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> tuple[Any, ...] | None:
        try:
            return self.connection.execute(sql, params).fetchone()
        except sqlite3.OperationalError as exc:
            raise PersistenceError(f"read failed: {exc}") from exc

    def fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        try:
            return self.connection.execute(sql, params).fetchall()
        except sqlite3.OperationalError as exc:
            raise PersistenceError(f"read failed: {exc}") from exc

    def _harden_permissions(self) -> None:
        """Set restrictive file permissions on POSIX systems (best effort).

        Covers the WAL/SHM sibling files as well, since they hold database content.
        """
        if os.name != "posix":  # pragma: no cover
            return
        for suffix in ("", "-wal", "-shm"):
            p = Path(self._path + suffix)
            if p.exists():
                try:
                    p.chmod(_DB_FILE_PERMISSIONS)
                except OSError:
                    logger.warning("could not set file permissions", permissions=oct(_DB_FILE_PERMISSIONS), path=str(p))
