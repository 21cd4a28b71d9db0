"""Match lifecycle orchestration: load, transition, persist, settle."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from arena.logic import match as match_logic
from arena.logic.exceptions import EntityNotFound, MatchNotFound, RegistrationError, SettlementError
from arena.logic.outcome import SettlementPolicy
from shared.dal.exceptions import DuplicateRecordError, RepositoryError
from shared.dal.models import EntityKind, MatchRecord, MatchResult, MatchSettings, utc_now

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping
    from datetime import datetime

    from arena.session.settlement import SettlementService
    from shared.dal.entity_repository import EntityRepository
    from shared.dal.match_repository import MatchRepository
    from shared.dal.models import Bot, Game, User

logger = structlog.get_logger()


@dataclass
class _MatchLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0  # tasks holding or waiting for the lock


class MatchService:
    """Drive matches through their lifecycle.

    Every operation on a match runs under that match's lock, so transitions
    and the settlement they trigger are serialized per match while different
    matches proceed concurrently. A lock lives only while some task holds or
    waits for it, so failed calls and unknown match ids leave nothing behind.
    Entity counters are shared across matches and are protected by versioned
    writes in SettlementService instead.
    """

    def __init__(
        self,
        entities: EntityRepository,
        matches: MatchRepository,
        settlement: SettlementService,
        *,
        policy: SettlementPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._entities = entities
        self._matches = matches
        self._settlement = settlement
        self._policy = policy or SettlementPolicy()
        self._clock = clock
        self._match_locks: dict[str, _MatchLock] = {}  # match_id -> lock in use

    @contextlib.asynccontextmanager
    async def _locked(self, match_id: str) -> AsyncIterator[None]:
        entry = self._match_locks.setdefault(match_id, _MatchLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._match_locks[match_id]

    # --- Lookups ---

    async def get_match(self, match_id: str) -> MatchRecord:
        match = await self._matches.get_match(match_id)
        if match is None:
            raise MatchNotFound(match_id)
        return match

    async def _get_game(self, game_id: str) -> Game:
        game = await self._entities.get_game(game_id)
        if game is None:
            raise EntityNotFound(EntityKind.GAME.value, game_id)
        return game

    async def _get_bot(self, bot_id: str) -> Bot:
        bot = await self._entities.get_bot(bot_id)
        if bot is None:
            raise EntityNotFound(EntityKind.BOT.value, bot_id)
        return bot

    async def _get_user(self, user_id: str) -> User:
        user = await self._entities.get_user(user_id)
        if user is None:
            raise EntityNotFound(EntityKind.USER.value, user_id)
        return user

    # --- Lifecycle ---

    async def create_match(
        self,
        game_id: str,
        *,
        settings: MatchSettings | None = None,
        match_id: str | None = None,
        initial_state: Any = None,  # noqa: ANN401
    ) -> MatchRecord:
        """Create a pending match for an active game."""
        game = await self._get_game(game_id)
        if not game.is_active:
            raise RegistrationError(f"game {game_id} is not active")
        fields: dict[str, Any] = {
            "game_id": game_id,
            "settings": settings or MatchSettings(),
            "initial_state": initial_state,
            "created_at": self._clock(),
        }
        if match_id is not None:
            fields["match_id"] = match_id
        match = MatchRecord(**fields)
        try:
            await self._matches.create_match(match)
        except DuplicateRecordError as e:
            raise RegistrationError(f"match {match.match_id} already exists") from e
        logger.info("match created", match_id=match.match_id, game_id=game_id)
        return match

    async def add_participant(self, match_id: str, bot_id: str, user_id: str) -> MatchRecord:
        async with self._locked(match_id):
            match = await self.get_match(match_id)
            game = await self._get_game(match.game_id)
            bot = await self._get_bot(bot_id)
            user = await self._get_user(user_id)
            updated = match_logic.add_participant(match, game, bot, user)
            saved = await self._matches.update_match(updated, match.version)
        logger.info("participant added", match_id=match_id, bot_id=bot_id, user_id=user_id)
        return saved

    async def start(self, match_id: str, *, initial_state: Any = None) -> MatchRecord:  # noqa: ANN401
        async with self._locked(match_id):
            match = await self.get_match(match_id)
            game = await self._get_game(match.game_id)
            started = match_logic.start(
                match,
                now=self._clock(),
                min_players=game.min_players,
                initial_state=initial_state,
            )
            saved = await self._matches.update_match(started, match.version)
        logger.info("match started", match_id=match_id, participants=saved.participant_count)
        return saved

    async def record_move(
        self,
        match_id: str,
        bot_id: str,
        move: Any,  # noqa: ANN401
        resulting_state: Any = None,  # noqa: ANN401
        *,
        response_time: int = 0,
    ) -> MatchRecord:
        async with self._locked(match_id):
            match = await self.get_match(match_id)
            updated, entry = match_logic.record_move(
                match,
                bot_id,
                move,
                resulting_state,
                now=self._clock(),
                response_time=response_time,
            )
            return await self._matches.append_move(updated, entry, match.version)

    async def complete(
        self,
        match_id: str,
        *,
        winner_bot_id: str | None = None,
        result: MatchResult | str = MatchResult.COMPLETED,
        scores: Mapping[str, int] | None = None,
    ) -> MatchRecord:
        """Finalize a match and settle ratings.

        The completed match (with its pending-settlement marker) is persisted
        before any entity is touched. If settlement then fails part way,
        SettlementPartiallyApplied propagates and the match stays completed
        with the outstanding targets recorded for retry_settlement().
        """
        with structlog.contextvars.bound_contextvars(match_id=match_id):
            async with self._locked(match_id):
                match = await self.get_match(match_id)
                completed = match_logic.complete(
                    match,
                    winner_bot_id=winner_bot_id,
                    result=result,
                    scores=scores,
                    now=self._clock(),
                    policy=self._policy,
                )
                saved = await self._matches.update_match(completed, match.version)
                logger.info(
                    "match completed",
                    result=saved.result,
                    winner_bot_id=saved.winner_bot_id,
                    duration=saved.duration,
                )
                settled = await self._settlement.settle(saved)
            return settled

    async def set_error(self, match_id: str, message: str, detail: str | None = None) -> MatchRecord:
        async with self._locked(match_id):
            match = await self.get_match(match_id)
            failed = match_logic.set_error(match, message, detail, now=self._clock())
            saved = await self._matches.update_match(failed, match.version)
        logger.warning("match ended with error", match_id=match_id, error=message)
        return saved

    async def cancel(self, match_id: str, reason: str = "") -> MatchRecord:
        async with self._locked(match_id):
            match = await self.get_match(match_id)
            cancelled = match_logic.cancel(match, reason, now=self._clock())
            saved = await self._matches.update_match(cancelled, match.version)
        logger.info("match cancelled", match_id=match_id, reason=reason)
        return saved

    # --- Settlement recovery ---

    async def retry_settlement(self, match_id: str) -> MatchRecord:
        """Apply whatever the match's pending-settlement marker still lists."""
        with structlog.contextvars.bound_contextvars(match_id=match_id):
            async with self._locked(match_id):
                match = await self.get_match(match_id)
                settled = await self._settlement.settle(match)
            return settled

    async def repair_pending(self, limit: int = 100) -> int:
        """Retry settlement for matches left with a pending marker.

        Returns the number of matches fully settled by this pass. Failures
        are logged and left for the next pass.
        """
        repaired = 0
        for match in await self._matches.list_pending_settlement(limit):
            try:
                await self.retry_settlement(match.match_id)
            except (SettlementError, RepositoryError) as e:
                logger.warning("settlement repair failed", match_id=match.match_id, error=str(e))
                continue
            repaired += 1
        if repaired:
            logger.info("settlement repair pass finished", repaired=repaired)
        return repaired
