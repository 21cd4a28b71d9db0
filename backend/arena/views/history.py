"""Completed-match history, projected for public viewing."""

from __future__ import annotations

from typing import TYPE_CHECKING

from arena.logic.exceptions import MatchNotFound
from arena.logic.projection import PublicMatch, to_public

if TYPE_CHECKING:
    from shared.dal.match_repository import MatchRepository


async def user_history(matches: MatchRepository, user_id: str, *, limit: int = 50, offset: int = 0) -> list[PublicMatch]:
    """Completed matches any of the user's bots played, newest first."""
    return [to_public(m) for m in await matches.list_user_history(user_id, limit, offset)]


async def bot_history(matches: MatchRepository, bot_id: str, *, limit: int = 50, offset: int = 0) -> list[PublicMatch]:
    return [to_public(m) for m in await matches.list_bot_history(bot_id, limit, offset)]


async def recent_matches(matches: MatchRepository, *, game_id: str | None = None, limit: int = 50) -> list[PublicMatch]:
    return [to_public(m) for m in await matches.list_recent(game_id, limit)]


async def public_match(matches: MatchRepository, match_id: str) -> PublicMatch:
    match = await matches.get_match(match_id)
    if match is None:
        raise MatchNotFound(match_id)
    return to_public(match)
