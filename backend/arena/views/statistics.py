"""Match statistics over the whole arena or one game."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel

from arena.logic.rating import round_half_up

if TYPE_CHECKING:
    from shared.dal.match_repository import MatchRepository
    from shared.dal.models import MatchAggregate


class MatchStatistics(BaseModel, frozen=True):
    game_id: str | None = None
    total_matches: int = 0  # every status
    completed_matches: int = 0
    avg_duration: int = 0  # seconds, completed matches only
    total_moves: int = 0  # completed matches only


def _from_aggregate(aggregate: MatchAggregate) -> MatchStatistics:
    return MatchStatistics(
        game_id=aggregate.game_id,
        total_matches=aggregate.total_matches,
        completed_matches=aggregate.completed_matches,
        avg_duration=round_half_up(aggregate.avg_duration),
        total_moves=aggregate.total_moves,
    )


async def match_statistics(matches: MatchRepository, game_id: str | None = None) -> MatchStatistics:
    """Roll up matches, optionally restricted to one game. No matches reports zeros."""
    return _from_aggregate(await matches.aggregate(game_id))


async def statistics_by_game(matches: MatchRepository) -> list[MatchStatistics]:
    return [_from_aggregate(aggregate) for aggregate in await matches.aggregate_by_game()]
