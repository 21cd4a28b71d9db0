"""Leaderboard read path for bots and users."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel

from arena.logic.enums import RankTier
from arena.logic.rating import rank_tier

if TYPE_CHECKING:
    from shared.dal.entity_repository import EntityRepository
    from shared.dal.models import EntityStats


class LeaderboardEntry(BaseModel, frozen=True):
    rank: int  # 1-based, continuous across pages
    entity_id: str
    name: str
    score: int
    tier: RankTier
    matches: int
    wins: int
    losses: int
    draws: int
    win_rate: int
    owner_id: str | None = None  # bots only
    game_id: str | None = None  # bots only


def _entry(rank: int, entity_id: str, name: str, stats: EntityStats, **extra: str) -> LeaderboardEntry:
    return LeaderboardEntry(
        rank=rank,
        entity_id=entity_id,
        name=name,
        score=stats.score,
        tier=rank_tier(stats.score),
        matches=stats.matches,
        wins=stats.wins,
        losses=stats.losses,
        draws=stats.draws,
        win_rate=stats.win_rate,
        **extra,
    )


async def bot_leaderboard(
    entities: EntityRepository,
    *,
    game_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[LeaderboardEntry]:
    """Eligible bots ordered by score, then wins, then registration order."""
    bots = await entities.list_bot_leaderboard(game_id, limit, offset)
    return [
        _entry(offset + i, bot.bot_id, bot.name, bot.stats, owner_id=bot.owner_id, game_id=bot.game_id)
        for i, bot in enumerate(bots, start=1)
    ]


async def user_leaderboard(entities: EntityRepository, *, limit: int = 50, offset: int = 0) -> list[LeaderboardEntry]:
    users = await entities.list_user_leaderboard(limit, offset)
    return [_entry(offset + i, user.user_id, user.display_name, user.stats) for i, user in enumerate(users, start=1)]
