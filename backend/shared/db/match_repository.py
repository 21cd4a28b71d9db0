"""SQLite-backed match repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections import defaultdict
from typing import TYPE_CHECKING, Any

import structlog

from shared.dal.exceptions import DuplicateRecordError, VersionConflictError
from shared.dal.match_repository import MatchRepository
from shared.dal.models import MatchAggregate, MatchRecord, MatchStatus, MoveLogEntry

if TYPE_CHECKING:
    from datetime import datetime

    from shared.db.connection import Database

logger = structlog.get_logger()

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_AGGREGATE_SELECT = (
    "SELECT COUNT(*), "
    "SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), "
    "AVG(CASE WHEN status = 'completed' THEN duration END), "
    "SUM(CASE WHEN status = 'completed' THEN total_moves ELSE 0 END) "
    "FROM matches"
)

_HAS_USER = (
    "EXISTS (SELECT 1 FROM json_each(matches.data, '$.participants') AS p "
    "WHERE json_extract(p.value, '$.user_id') = ?)"
)
_HAS_BOT = (
    "EXISTS (SELECT 1 FROM json_each(matches.data, '$.participants') AS p "
    "WHERE json_extract(p.value, '$.bot_id') = ?)"
)


def _sortable(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so lexical order equals chronological order."""
    return None if value is None else value.strftime(_TIMESTAMP_FORMAT)


def _aggregate(game_id: str | None, row: tuple[Any, ...] | None) -> MatchAggregate:
    if row is None:
        return MatchAggregate(game_id=game_id)
    total, completed, avg_duration, total_moves = row
    return MatchAggregate(
        game_id=game_id,
        total_matches=total or 0,
        completed_matches=completed or 0,
        avg_duration=float(avg_duration or 0.0),
        total_moves=total_moves or 0,
    )


class SqliteMatchRepository(MatchRepository):
    """SQLite implementation of MatchRepository.

    The match row holds the record as JSON without its move log; moves live
    in `match_moves` keyed by (match_id, seq) so appends never rewrite
    earlier entries and a duplicate sequence number cannot be inserted.
    Uses json_each for participant-based lookups.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def create_match(self, match: MatchRecord) -> None:
        """Insert a match record. Raises DuplicateRecordError on duplicate match_id."""
        async with self._lock:
            try:
                with self._db.transaction() as conn:
                    conn.execute(
                        "INSERT INTO matches (id, game_id, status, created_at, completed_at, duration, "
                        "total_moves, settlement_pending, version, data) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (match.match_id, *self._columns(match), match.version, self._payload(match)),
                    )
                    for seq, entry in enumerate(match.moves):
                        self._insert_move(conn, match.match_id, seq, entry)
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError(f"Match '{match.match_id}' already exists") from exc

    async def get_match(self, match_id: str) -> MatchRecord | None:
        row = self._db.fetchone("SELECT data FROM matches WHERE id = ?", (match_id,))
        if row is None:
            return None
        moves = self._load_moves([match_id])
        return self._hydrate(row[0], moves[match_id])

    async def update_match(self, match: MatchRecord, expected_version: int) -> MatchRecord:
        stored = match.model_copy(update={"version": expected_version + 1})
        async with self._lock:
            with self._db.transaction() as conn:
                self._write_versioned(conn, stored, expected_version)
        return stored

    async def append_move(self, match: MatchRecord, entry: MoveLogEntry, expected_version: int) -> MatchRecord:
        stored = match.model_copy(update={"version": expected_version + 1})
        async with self._lock:
            with self._db.transaction() as conn:
                self._write_versioned(conn, stored, expected_version)
                self._insert_move(conn, match.match_id, match.total_moves - 1, entry)
        return stored

    # --- Queries ---

    async def list_user_history(self, user_id: str, limit: int, offset: int = 0) -> list[MatchRecord]:
        """Completed matches involving a user, newest first."""
        return self._query(
            f"SELECT id, data FROM matches WHERE status = ? AND {_HAS_USER} "  # noqa: S608
            "ORDER BY completed_at DESC, seq DESC LIMIT ? OFFSET ?",
            (MatchStatus.COMPLETED.value, user_id, limit, offset),
        )

    async def list_bot_history(self, bot_id: str, limit: int, offset: int = 0) -> list[MatchRecord]:
        """Completed matches involving a bot, newest first."""
        return self._query(
            f"SELECT id, data FROM matches WHERE status = ? AND {_HAS_BOT} "  # noqa: S608
            "ORDER BY completed_at DESC, seq DESC LIMIT ? OFFSET ?",
            (MatchStatus.COMPLETED.value, bot_id, limit, offset),
        )

    async def list_recent(self, game_id: str | None, limit: int) -> list[MatchRecord]:
        """Most recently completed matches, optionally for one game."""
        if game_id is None:
            return self._query(
                "SELECT id, data FROM matches WHERE status = ? ORDER BY completed_at DESC, seq DESC LIMIT ?",
                (MatchStatus.COMPLETED.value, limit),
            )
        return self._query(
            "SELECT id, data FROM matches WHERE status = ? AND game_id = ? "
            "ORDER BY completed_at DESC, seq DESC LIMIT ?",
            (MatchStatus.COMPLETED.value, game_id, limit),
        )

    async def list_pending_settlement(self, limit: int = 100) -> list[MatchRecord]:
        """Matches whose settlement marker still lists outstanding targets, oldest first."""
        return self._query(
            "SELECT id, data FROM matches WHERE settlement_pending = 1 ORDER BY seq LIMIT ?",
            (limit,),
        )

    async def aggregate(self, game_id: str | None = None) -> MatchAggregate:
        if game_id is None:
            row = self._db.fetchone(_AGGREGATE_SELECT)
        else:
            row = self._db.fetchone(f"{_AGGREGATE_SELECT} WHERE game_id = ?", (game_id,))
        return _aggregate(game_id, row)

    async def aggregate_by_game(self) -> list[MatchAggregate]:
        rows = self._db.fetchall(
            "SELECT game_id, COUNT(*), "
            "SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), "
            "AVG(CASE WHEN status = 'completed' THEN duration END), "
            "SUM(CASE WHEN status = 'completed' THEN total_moves ELSE 0 END) "
            "FROM matches GROUP BY game_id ORDER BY game_id",
        )
        return [_aggregate(row[0], row[1:]) for row in rows]

    # --- Internals ---

    @staticmethod
    def _columns(match: MatchRecord) -> tuple[Any, ...]:
        return (
            match.game_id,
            match.status.value,
            _sortable(match.created_at),
            _sortable(match.completed_at),
            match.duration,
            match.total_moves,
            int(bool(match.pending_settlement)),
        )

    @staticmethod
    def _payload(match: MatchRecord) -> str:
        return match.model_dump_json(exclude={"moves"})

    @staticmethod
    def _insert_move(conn: sqlite3.Connection, match_id: str, seq: int, entry: MoveLogEntry) -> None:
        conn.execute(
            "INSERT INTO match_moves (match_id, seq, data) VALUES (?, ?, ?)",
            (match_id, seq, entry.model_dump_json()),
        )

    def _write_versioned(self, conn: sqlite3.Connection, match: MatchRecord, expected_version: int) -> None:
        cursor = conn.execute(
            "UPDATE matches SET game_id = ?, status = ?, created_at = ?, completed_at = ?, duration = ?, "
            "total_moves = ?, settlement_pending = ?, version = ?, data = ? WHERE id = ? AND version = ?",
            (
                *self._columns(match),
                expected_version + 1,
                self._payload(match),
                match.match_id,
                expected_version,
            ),
        )
        if cursor.rowcount == 0:
            raise VersionConflictError(kind="match", record_id=match.match_id, expected_version=expected_version)

    def _load_moves(self, match_ids: list[str]) -> dict[str, list[dict[str, Any]]]:
        moves: dict[str, list[dict[str, Any]]] = defaultdict(list)
        if not match_ids:
            return moves
        placeholders = ", ".join("?" for _ in match_ids)
        rows = self._db.fetchall(
            f"SELECT match_id, data FROM match_moves WHERE match_id IN ({placeholders}) "  # noqa: S608
            "ORDER BY match_id, seq",
            tuple(match_ids),
        )
        for match_id, data in rows:
            moves[match_id].append(json.loads(data))
        return moves

    def _query(self, sql: str, params: tuple[Any, ...]) -> list[MatchRecord]:
        rows = self._db.fetchall(sql, params)
        moves = self._load_moves([row[0] for row in rows])
        return [self._hydrate(data, moves[match_id]) for match_id, data in rows]

    @staticmethod
    def _hydrate(data: str, moves: list[dict[str, Any]]) -> MatchRecord:
        return MatchRecord.model_validate({**json.loads(data), "moves": moves})
