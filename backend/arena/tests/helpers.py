"""Builders shared by arena integration tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from arena.session.match_service import MatchService
    from arena.session.registry import EntityRegistry
    from shared.dal.models import MatchRecord, MatchResult

T0 = datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; call it for the current time, advance() to move it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass(frozen=True)
class SeededArena:
    game_id: str = "chess"
    alice: str = "alice"
    bob: str = "bob"
    bot_a: str = "bot-a"
    bot_b: str = "bot-b"


async def seed_arena(registry: EntityRegistry) -> SeededArena:
    """Two users, one game, and one validated bot per user."""
    ids = SeededArena()
    await registry.register_user("alice", "Alice", user_id=ids.alice)
    await registry.register_user("bobby", "Bob", user_id=ids.bob)
    await registry.create_game("Chess", created_by=ids.alice, game_id=ids.game_id, max_players=4)
    await registry.submit_bot(ids.alice, ids.game_id, "Deep Alice", "python", bot_id=ids.bot_a)
    await registry.submit_bot(ids.bob, ids.game_id, "Bobinator", "rust", bot_id=ids.bot_b)
    await registry.record_validation(ids.bot_a)
    await registry.record_validation(ids.bot_b)
    return ids


async def start_match(service: MatchService, arena: SeededArena, *, match_id: str | None = None) -> MatchRecord:
    match = await service.create_match(arena.game_id, match_id=match_id)
    await service.add_participant(match.match_id, arena.bot_a, arena.alice)
    await service.add_participant(match.match_id, arena.bot_b, arena.bob)
    return await service.start(match.match_id)


async def play_match(
    service: MatchService,
    arena: SeededArena,
    *,
    winner_bot_id: str | None = None,
    result: MatchResult | str = "completed",
    match_id: str | None = None,
) -> MatchRecord:
    started = await start_match(service, arena, match_id=match_id)
    return await service.complete(started.match_id, winner_bot_id=winner_bot_id, result=result)
