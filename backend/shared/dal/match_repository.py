"""Abstract interface for match persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shared.dal.models import MatchAggregate, MatchRecord, MoveLogEntry


class MatchRepository(ABC):
    """Abstract interface for match records and their move logs."""

    @abstractmethod
    async def create_match(self, match: MatchRecord) -> None: ...

    @abstractmethod
    async def get_match(self, match_id: str) -> MatchRecord | None: ...

    @abstractmethod
    async def update_match(self, match: MatchRecord, expected_version: int) -> MatchRecord:
        """Persist every field except the move log. Raises VersionConflictError on a stale write."""

    @abstractmethod
    async def append_move(self, match: MatchRecord, entry: MoveLogEntry, expected_version: int) -> MatchRecord:
        """Append one move log entry and persist the updated match in one transaction.

        `match` already carries the entry as its last move.
        """

    @abstractmethod
    async def list_user_history(self, user_id: str, limit: int, offset: int = 0) -> list[MatchRecord]: ...

    @abstractmethod
    async def list_bot_history(self, bot_id: str, limit: int, offset: int = 0) -> list[MatchRecord]: ...

    @abstractmethod
    async def list_recent(self, game_id: str | None, limit: int) -> list[MatchRecord]: ...

    @abstractmethod
    async def list_pending_settlement(self, limit: int = 100) -> list[MatchRecord]: ...

    @abstractmethod
    async def aggregate(self, game_id: str | None = None) -> MatchAggregate: ...

    @abstractmethod
    async def aggregate_by_game(self) -> list[MatchAggregate]: ...
