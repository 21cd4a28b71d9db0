"""SQLite-backed entity repository for users, games, and bots."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from shared.dal.entity_repository import EntityRepository
from shared.dal.exceptions import DuplicateRecordError, VersionConflictError
from shared.dal.models import Bot, BotStatus, Difficulty, EntityKind, Game, User, utc_now

if TYPE_CHECKING:
    from pydantic import BaseModel

    from shared.dal.models import SettlementTarget
    from shared.db.connection import Database

logger = structlog.get_logger()

EntityT = TypeVar("EntityT", Bot, User, Game)

_TABLES: dict[EntityKind, str] = {
    EntityKind.USER: "users",
    EntityKind.GAME: "games",
    EntityKind.BOT: "bots",
}


def _kind_of(record: BaseModel) -> EntityKind:
    if isinstance(record, Bot):
        return EntityKind.BOT
    if isinstance(record, User):
        return EntityKind.USER
    if isinstance(record, Game):
        return EntityKind.GAME
    raise TypeError(f"Unsupported entity record: {type(record).__name__}")


def _record_id(record: BaseModel) -> str:
    if isinstance(record, Bot):
        return record.bot_id
    if isinstance(record, User):
        return record.user_id
    if isinstance(record, Game):
        return record.game_id
    raise TypeError(f"Unsupported entity record: {type(record).__name__}")


def _indexed_columns(record: BaseModel) -> dict[str, Any]:
    """Columns mirrored out of the JSON payload for filtering and ordering."""
    if isinstance(record, Bot):
        return {
            "owner_id": record.owner_id,
            "game_id": record.game_id,
            "status": record.status.value,
            "is_active": int(record.is_active),
            "score": record.stats.score,
            "wins": record.stats.wins,
            "updated_at": record.updated_at.isoformat(),
        }
    if isinstance(record, User):
        return {
            "username": record.username,
            "is_active": int(record.is_active),
            "score": record.stats.score,
            "wins": record.stats.wins,
        }
    if isinstance(record, Game):
        return {"name": record.name, "is_active": int(record.is_active)}
    raise TypeError(f"Unsupported entity record: {type(record).__name__}")


def _game_filter(*, active_only: bool, difficulty: Difficulty | None) -> tuple[str, tuple[str, ...]]:
    clauses = ["is_active = 1"] if active_only else []
    params: tuple[str, ...] = ()
    if difficulty is not None:
        clauses.append("json_extract(data, '$.difficulty') = ?")
        params = (Difficulty(difficulty).value,)
    return ("WHERE " + " AND ".join(clauses) if clauses else ""), params


class SqliteEntityRepository(EntityRepository):
    """SQLite implementation of EntityRepository.

    Records are stored as JSON with indexed columns for lookups and leaderboard
    ordering. Updates compare-and-swap on the `version` column; a mismatch
    raises VersionConflictError so the caller can re-read and retry.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    # --- Create ---

    async def create_user(self, user: User) -> None:
        """Insert a user. Raises DuplicateRecordError on duplicate id or username."""
        await self._insert(user)

    async def create_game(self, game: Game) -> None:
        """Insert a game. Raises DuplicateRecordError on duplicate id or name."""
        await self._insert(game)

    async def create_bot(self, bot: Bot) -> None:
        """Insert a bot. Raises DuplicateRecordError when the owner already has a bot for the game."""
        await self._insert(bot)

    async def _insert(self, record: BaseModel) -> None:
        kind = _kind_of(record)
        columns = {"id": _record_id(record), **_indexed_columns(record)}
        columns["version"] = record.version  # type: ignore[attr-defined]
        columns["data"] = record.model_dump_json()
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        async with self._lock:
            try:
                with self._db.transaction() as conn:
                    conn.execute(
                        f"INSERT INTO {_TABLES[kind]} ({names}) VALUES ({placeholders})",  # noqa: S608
                        tuple(columns.values()),
                    )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError(f"{kind} '{columns['id']}' conflicts with an existing record") from exc

    # --- Read ---

    async def get_user(self, user_id: str) -> User | None:
        row = self._db.fetchone("SELECT data FROM users WHERE id = ?", (user_id,))
        return None if row is None else User.model_validate(json.loads(row[0]))

    async def get_user_by_username(self, username: str) -> User | None:
        """Look up a user by username (case-insensitive)."""
        row = self._db.fetchone("SELECT data FROM users WHERE username = ? COLLATE NOCASE", (username,))
        return None if row is None else User.model_validate(json.loads(row[0]))

    async def get_game(self, game_id: str) -> Game | None:
        row = self._db.fetchone("SELECT data FROM games WHERE id = ?", (game_id,))
        return None if row is None else Game.model_validate(json.loads(row[0]))

    async def get_bot(self, bot_id: str) -> Bot | None:
        row = self._db.fetchone("SELECT data FROM bots WHERE id = ?", (bot_id,))
        return None if row is None else Bot.model_validate(json.loads(row[0]))

    async def get_bot_for_owner(self, owner_id: str, game_id: str) -> Bot | None:
        row = self._db.fetchone(
            "SELECT data FROM bots WHERE owner_id = ? AND game_id = ?",
            (owner_id, game_id),
        )
        return None if row is None else Bot.model_validate(json.loads(row[0]))

    async def list_games(self, *, active_only: bool = True, difficulty: Difficulty | None = None) -> list[Game]:
        """Games in creation order, optionally restricted to active ones and one difficulty."""
        where, params = _game_filter(active_only=active_only, difficulty=difficulty)
        rows = self._db.fetchall(f"SELECT data FROM games {where} ORDER BY seq", params)  # noqa: S608
        return [Game.model_validate(json.loads(row[0])) for row in rows]

    async def list_popular_games(self, limit: int, *, difficulty: Difficulty | None = None) -> list[Game]:
        """Active games with the most eligible bots first, then the most completed matches."""
        where, params = _game_filter(active_only=True, difficulty=difficulty)
        rows = self._db.fetchall(
            f"SELECT data FROM games {where} "  # noqa: S608
            "ORDER BY json_extract(data, '$.stats.active_bots') DESC, "
            "json_extract(data, '$.stats.total_matches') DESC, seq LIMIT ?",
            (*params, limit),
        )
        return [Game.model_validate(json.loads(row[0])) for row in rows]

    async def list_bots_by_owner(self, owner_id: str) -> list[Bot]:
        """Bots of one owner, most recently updated first."""
        rows = self._db.fetchall(
            "SELECT data FROM bots WHERE owner_id = ? ORDER BY updated_at DESC, seq DESC",
            (owner_id,),
        )
        return [Bot.model_validate(json.loads(row[0])) for row in rows]

    async def list_eligible_bots(self, game_id: str) -> list[Bot]:
        """Active bots of a game, highest score first."""
        rows = self._db.fetchall(
            "SELECT data FROM bots WHERE game_id = ? AND status = ? AND is_active = 1 ORDER BY score DESC, seq",
            (game_id, BotStatus.ACTIVE.value),
        )
        return [Bot.model_validate(json.loads(row[0])) for row in rows]

    # --- Versioned updates ---

    async def update_user(self, user: User, expected_version: int) -> User:
        return await self._update(user, expected_version)

    async def update_game(self, game: Game, expected_version: int) -> Game:
        return await self._update(game, expected_version)

    async def update_bot(self, bot: Bot, expected_version: int, *, game: Game | None = None) -> Bot:
        """Write a bot, and its game in the same transaction when `game` is given.

        The game is compared against its own `version`; a conflict on either
        record rolls back both.
        """
        stored = bot.model_copy(update={"version": expected_version + 1})
        async with self._lock:
            with self._db.transaction() as conn:
                self._write_versioned(conn, stored, expected_version)
                if game is not None:
                    self._write_versioned(conn, game.model_copy(update={"version": game.version + 1}), game.version)
        return stored

    async def _update(self, record: EntityT, expected_version: int) -> EntityT:
        stored = record.model_copy(update={"version": expected_version + 1})
        async with self._lock:
            with self._db.transaction() as conn:
                self._write_versioned(conn, stored, expected_version)
        return stored

    async def apply_settlement(
        self,
        target: SettlementTarget,
        match_id: str,
        record: Bot | User | Game,
        expected_version: int,
    ) -> bool:
        """Write a settled record and its journal entry atomically.

        Returns False, leaving the record untouched, when this (match, target)
        pair was already settled. Raises VersionConflictError when the record
        changed since it was read; the journal insert is rolled back with it.
        """
        stored = record.model_copy(update={"version": expected_version + 1})
        async with self._lock:
            with self._db.transaction() as conn:
                try:
                    conn.execute(
                        "INSERT INTO settlements (match_id, kind, entity_id, applied_at) VALUES (?, ?, ?, ?)",
                        (match_id, target.kind.value, target.entity_id, utc_now().isoformat()),
                    )
                except sqlite3.IntegrityError:
                    logger.info(
                        "settlement already applied, skipping",
                        match_id=match_id,
                        kind=target.kind,
                        entity_id=target.entity_id,
                    )
                    return False
                self._write_versioned(conn, stored, expected_version)
        return True

    async def is_settled(self, match_id: str, target: SettlementTarget) -> bool:
        row = self._db.fetchone(
            "SELECT 1 FROM settlements WHERE match_id = ? AND kind = ? AND entity_id = ?",
            (match_id, target.kind.value, target.entity_id),
        )
        return row is not None

    @staticmethod
    def _write_versioned(conn: sqlite3.Connection, record: BaseModel, expected_version: int) -> None:
        kind = _kind_of(record)
        record_id = _record_id(record)
        columns = _indexed_columns(record)
        assignments = ", ".join(f"{name} = ?" for name in columns)
        cursor = conn.execute(
            f"UPDATE {_TABLES[kind]} SET {assignments}, version = ?, data = ? WHERE id = ? AND version = ?",  # noqa: S608
            (
                *columns.values(),
                expected_version + 1,
                record.model_dump_json(),
                record_id,
                expected_version,
            ),
        )
        if cursor.rowcount == 0:
            raise VersionConflictError(kind=kind.value, record_id=record_id, expected_version=expected_version)

    # --- Leaderboards ---

    async def list_bot_leaderboard(self, game_id: str | None, limit: int, offset: int = 0) -> list[Bot]:
        """Eligible bots ordered by score, then wins, then creation order."""
        if game_id is None:
            rows = self._db.fetchall(
                "SELECT data FROM bots WHERE status = ? AND is_active = 1 "
                "ORDER BY score DESC, wins DESC, seq ASC LIMIT ? OFFSET ?",
                (BotStatus.ACTIVE.value, limit, offset),
            )
        else:
            rows = self._db.fetchall(
                "SELECT data FROM bots WHERE status = ? AND is_active = 1 AND game_id = ? "
                "ORDER BY score DESC, wins DESC, seq ASC LIMIT ? OFFSET ?",
                (BotStatus.ACTIVE.value, game_id, limit, offset),
            )
        return [Bot.model_validate(json.loads(row[0])) for row in rows]

    async def list_user_leaderboard(self, limit: int, offset: int = 0) -> list[User]:
        """Active users ordered by score, then wins, then creation order."""
        rows = self._db.fetchall(
            "SELECT data FROM users WHERE is_active = 1 ORDER BY score DESC, wins DESC, seq ASC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [User.model_validate(json.loads(row[0])) for row in rows]
