"""Abstract interface for bot, user, and game persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shared.dal.models import Bot, Difficulty, Game, SettlementTarget, User


class EntityRepository(ABC):
    """Abstract interface for the entity store.

    Every update is versioned: the caller passes the version it read and the
    write is rejected with VersionConflictError when the stored record has
    moved on. Successful updates return the record with its new version.
    """

    @abstractmethod
    async def create_user(self, user: User) -> None: ...

    @abstractmethod
    async def create_game(self, game: Game) -> None: ...

    @abstractmethod
    async def create_bot(self, bot: Bot) -> None: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> User | None: ...

    @abstractmethod
    async def get_game(self, game_id: str) -> Game | None: ...

    @abstractmethod
    async def get_bot(self, bot_id: str) -> Bot | None: ...

    @abstractmethod
    async def get_bot_for_owner(self, owner_id: str, game_id: str) -> Bot | None: ...

    @abstractmethod
    async def list_games(self, *, active_only: bool = True, difficulty: Difficulty | None = None) -> list[Game]: ...

    @abstractmethod
    async def list_popular_games(self, limit: int, *, difficulty: Difficulty | None = None) -> list[Game]: ...

    @abstractmethod
    async def list_bots_by_owner(self, owner_id: str) -> list[Bot]: ...

    @abstractmethod
    async def list_eligible_bots(self, game_id: str) -> list[Bot]: ...

    @abstractmethod
    async def update_user(self, user: User, expected_version: int) -> User: ...

    @abstractmethod
    async def update_game(self, game: Game, expected_version: int) -> Game: ...

    @abstractmethod
    async def update_bot(self, bot: Bot, expected_version: int, *, game: Game | None = None) -> Bot:
        """Versioned bot write; `game`, when given, is written atomically with it."""

    @abstractmethod
    async def apply_settlement(
        self,
        target: SettlementTarget,
        match_id: str,
        record: Bot | User | Game,
        expected_version: int,
    ) -> bool:
        """Write a settled record and journal (match_id, target) in one transaction.

        Returns False without writing when the journal already holds the entry.
        """

    @abstractmethod
    async def is_settled(self, match_id: str, target: SettlementTarget) -> bool: ...

    @abstractmethod
    async def list_bot_leaderboard(self, game_id: str | None, limit: int, offset: int = 0) -> list[Bot]: ...

    @abstractmethod
    async def list_user_leaderboard(self, limit: int, offset: int = 0) -> list[User]: ...
