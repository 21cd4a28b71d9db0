"""Registration and status changes for users, games, and bots."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, NamedTuple

import structlog

from arena.logic.exceptions import EntityNotFound, RegistrationError
from arena.logic.rating import adjust_active_bots
from arena.session.versioning import update_with_retry
from shared.dal.exceptions import DuplicateRecordError
from shared.dal.models import (
    Bot,
    BotLanguage,
    BotStatus,
    Difficulty,
    EntityKind,
    Game,
    SettlementTarget,
    User,
    ValidationReport,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import datetime

    from shared.dal.entity_repository import EntityRepository

logger = structlog.get_logger()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class _BotChange(NamedTuple):
    bot: Bot
    game: Game
    moves_game: bool = False  # eligibility flipped; the game's counter is written with the bot

    @property
    def version(self) -> int:
        return self.bot.version


class EntityRegistry:
    """Create entities and apply non-match changes to them.

    A bot becoming eligible (active and enabled) or losing eligibility moves
    its game's active_bots counter by one. The bot and the counter are written
    in one transaction, so they never disagree.
    """

    def __init__(
        self,
        entities: EntityRepository,
        *,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._entities = entities
        self._max_attempts = max_attempts
        self._clock = clock

    # --- Users ---

    async def register_user(self, username: str, display_name: str | None = None, *, user_id: str | None = None) -> User:
        if await self._entities.get_user_by_username(username) is not None:
            raise RegistrationError(f"username {username!r} is already taken")
        user = User(
            user_id=user_id or _new_id("user"),
            username=username,
            display_name=display_name or username,
            created_at=self._clock(),
        )
        try:
            await self._entities.create_user(user)
        except DuplicateRecordError as e:
            raise RegistrationError(f"username {username!r} is already taken") from e
        logger.info("user registered", user_id=user.user_id, username=username)
        return user

    async def deactivate_user(self, user_id: str) -> User:
        async def load() -> User:
            user = await self._entities.get_user(user_id)
            if user is None:
                raise EntityNotFound(EntityKind.USER.value, user_id)
            return user

        user = await update_with_retry(
            SettlementTarget(kind=EntityKind.USER, entity_id=user_id),
            load,
            lambda u: u.model_copy(update={"is_active": False}),
            self._entities.update_user,
            attempts=self._max_attempts,
        )
        logger.info("user deactivated", user_id=user_id)
        return user

    # --- Games ---

    async def create_game(
        self,
        name: str,
        *,
        created_by: str,
        difficulty: Difficulty | str = Difficulty.MEDIUM,
        game_id: str | None = None,
        **fields: Any,  # noqa: ANN401
    ) -> Game:
        """Register a game. Extra fields (players, rules, tags...) pass through to Game."""
        if await self._entities.get_user(created_by) is None:
            raise EntityNotFound(EntityKind.USER.value, created_by)
        game = Game(
            game_id=game_id or _new_id("game"),
            name=name,
            difficulty=Difficulty(difficulty),
            created_by=created_by,
            created_at=self._clock(),
            **fields,
        )
        try:
            await self._entities.create_game(game)
        except DuplicateRecordError as e:
            raise RegistrationError(f"game name {name!r} is already taken") from e
        logger.info("game created", game_id=game.game_id, name=name)
        return game

    # --- Bots ---

    async def submit_bot(
        self,
        owner_id: str,
        game_id: str,
        name: str,
        language: BotLanguage | str,
        *,
        description: str = "",
        bot_version: str = "1.0.0",
        bot_id: str | None = None,
    ) -> Bot:
        """Register a bot in pending status. An owner has at most one bot per game."""
        owner = await self._entities.get_user(owner_id)
        if owner is None:
            raise EntityNotFound(EntityKind.USER.value, owner_id)
        if not owner.is_active:
            raise RegistrationError(f"user {owner_id} is inactive")
        game = await self._entities.get_game(game_id)
        if game is None:
            raise EntityNotFound(EntityKind.GAME.value, game_id)
        if not game.is_active:
            raise RegistrationError(f"game {game_id} is not active")
        if await self._entities.get_bot_for_owner(owner_id, game_id) is not None:
            raise RegistrationError(f"user {owner_id} already has a bot for game {game_id}")

        now = self._clock()
        bot = Bot(
            bot_id=bot_id or _new_id("bot"),
            name=name,
            description=description,
            owner_id=owner_id,
            game_id=game_id,
            language=BotLanguage(language),
            bot_version=bot_version,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._entities.create_bot(bot)
        except DuplicateRecordError as e:
            raise RegistrationError(f"user {owner_id} already has a bot for game {game_id}") from e
        logger.info("bot submitted", bot_id=bot.bot_id, owner_id=owner_id, game_id=game_id)
        return bot

    async def record_validation(
        self,
        bot_id: str,
        *,
        errors: Sequence[str] = (),
        warnings: Sequence[str] = (),
    ) -> Bot:
        """Store a validation report; the bot becomes active if it passed, error otherwise."""
        now = self._clock()
        report = ValidationReport(timestamp=now, passed=not errors, errors=tuple(errors), warnings=tuple(warnings))
        status = BotStatus.ACTIVE if report.passed else BotStatus.ERROR
        bot = await self._change_bot(
            bot_id,
            lambda b: b.model_copy(update={"status": status, "last_validation": report, "updated_at": now}),
        )
        logger.info("bot validated", bot_id=bot_id, passed=report.passed, errors=len(report.errors))
        return bot

    async def set_bot_status(self, bot_id: str, status: BotStatus | str) -> Bot:
        status = BotStatus(status)
        now = self._clock()
        bot = await self._change_bot(bot_id, lambda b: b.model_copy(update={"status": status, "updated_at": now}))
        logger.info("bot status changed", bot_id=bot_id, status=status)
        return bot

    async def deactivate_bot(self, bot_id: str) -> Bot:
        now = self._clock()
        bot = await self._change_bot(
            bot_id,
            lambda b: b.model_copy(update={"status": BotStatus.INACTIVE, "is_active": False, "updated_at": now}),
        )
        logger.info("bot deactivated", bot_id=bot_id)
        return bot

    async def _change_bot(self, bot_id: str, mutate: Callable[[Bot], Bot]) -> Bot:
        """Apply `mutate` with optimistic retry, moving the game's active_bots counter on eligibility change."""

        async def load() -> _BotChange:
            bot = await self._entities.get_bot(bot_id)
            if bot is None:
                raise EntityNotFound(EntityKind.BOT.value, bot_id)
            game = await self._entities.get_game(bot.game_id)
            if game is None:
                raise EntityNotFound(EntityKind.GAME.value, bot.game_id)
            return _BotChange(bot, game)

        def apply(change: _BotChange) -> _BotChange:
            after = mutate(change.bot)
            if after.is_eligible == change.bot.is_eligible:
                return _BotChange(after, change.game)
            delta = 1 if after.is_eligible else -1
            game = change.game.model_copy(update={"stats": adjust_active_bots(change.game.stats, delta)})
            return _BotChange(after, game, moves_game=True)

        async def write(change: _BotChange, expected_version: int) -> Bot:
            return await self._entities.update_bot(
                change.bot,
                expected_version,
                game=change.game if change.moves_game else None,
            )

        return await update_with_retry(
            SettlementTarget(kind=EntityKind.BOT, entity_id=bot_id),
            load,
            apply,
            write,
            attempts=self._max_attempts,
        )
