"""Leaderboard, statistics, and history read paths."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from arena.logic.enums import RankTier
from arena.logic.exceptions import MatchNotFound
from arena.tests.helpers import play_match, start_match
from arena.views.history import bot_history, public_match, recent_matches, user_history
from arena.views.leaderboard import bot_leaderboard, user_leaderboard
from arena.views.statistics import MatchStatistics, match_statistics, statistics_by_game
from shared.dal.models import EntityStats, MatchResult

if TYPE_CHECKING:
    from arena.session.match_service import MatchService
    from arena.session.registry import EntityRegistry
    from arena.tests.helpers import FakeClock, SeededArena


class TestLeaderboard:
    async def test_ranks_by_score(self, match_service: MatchService, entities, arena: SeededArena) -> None:
        await play_match(match_service, arena, winner_bot_id=arena.bot_b)

        entries = await bot_leaderboard(entities, game_id=arena.game_id)

        assert [(e.rank, e.entity_id, e.score) for e in entries] == [(1, arena.bot_b, 1025), (2, arena.bot_a, 975)]
        assert entries[0].owner_id == arena.bob
        assert entries[0].win_rate == 100
        assert entries[0].tier == RankTier.IRON

    async def test_ties_keep_registration_order(self, entities, arena: SeededArena) -> None:
        entries = await bot_leaderboard(entities)
        assert [e.entity_id for e in entries] == [arena.bot_a, arena.bot_b]

    async def test_rank_continues_across_pages(self, entities, arena: SeededArena) -> None:
        (entry,) = await bot_leaderboard(entities, limit=1, offset=1)
        assert entry.rank == 2
        assert entry.entity_id == arena.bot_b

    async def test_ineligible_bots_hidden(self, registry: EntityRegistry, entities, arena: SeededArena) -> None:
        await registry.deactivate_bot(arena.bot_a)
        assert [e.entity_id for e in await bot_leaderboard(entities)] == [arena.bot_b]

    async def test_user_leaderboard_uses_display_name_and_tier(self, entities, arena: SeededArena) -> None:
        user = await entities.get_user(arena.bob)
        assert user is not None
        await entities.update_user(
            user.model_copy(update={"stats": EntityStats(matches=1, wins=1, score=1850, win_rate=100)}),
            user.version,
        )

        entries = await user_leaderboard(entities)

        assert [(e.entity_id, e.name, e.tier) for e in entries][0] == (arena.bob, "Bob", RankTier.DIAMOND)
        assert entries[0].owner_id is None


class TestStatistics:
    async def test_empty_reports_zeros(self, matches) -> None:
        assert await match_statistics(matches) == MatchStatistics()
        assert await statistics_by_game(matches) == []

    async def test_counts_every_status_but_averages_completed(
        self,
        match_service: MatchService,
        matches,
        arena: SeededArena,
        clock: FakeClock,
    ) -> None:
        first = await start_match(match_service, arena)
        await match_service.record_move(first.match_id, arena.bot_a, "e4")
        clock.advance(10)
        await match_service.complete(first.match_id, winner_bot_id=arena.bot_a)

        second = await start_match(match_service, arena)
        clock.advance(15)
        await match_service.complete(second.match_id, result=MatchResult.DRAW)

        errored = await start_match(match_service, arena)
        await match_service.record_move(errored.match_id, arena.bot_a, "e4")
        await match_service.set_error(errored.match_id, "crash")
        await match_service.create_match(arena.game_id)

        stats = await match_statistics(matches, arena.game_id)

        assert stats == MatchStatistics(
            game_id=arena.game_id,
            total_matches=4,
            completed_matches=2,
            avg_duration=13,
            total_moves=1,
        )
        assert await statistics_by_game(matches) == [stats]


class TestHistory:
    async def test_user_history_newest_first(
        self,
        match_service: MatchService,
        matches,
        arena: SeededArena,
        clock: FakeClock,
    ) -> None:
        older = await play_match(match_service, arena, winner_bot_id=arena.bot_a)
        clock.advance(60)
        newer = await play_match(match_service, arena, winner_bot_id=arena.bot_b)
        await start_match(match_service, arena)

        history = await user_history(matches, arena.alice)

        assert [m.match_id for m in history] == [newer.match_id, older.match_id]
        assert [m.winner_bot_id for m in history] == [arena.bot_b, arena.bot_a]

    async def test_bot_history_paged(self, match_service: MatchService, matches, arena: SeededArena, clock) -> None:
        played = []
        for _ in range(3):
            played.append(await play_match(match_service, arena, result=MatchResult.DRAW))
            clock.advance(1)

        page = await bot_history(matches, arena.bot_b, limit=1, offset=1)

        assert [m.match_id for m in page] == [played[1].match_id]

    async def test_recent_matches(self, match_service: MatchService, matches, arena: SeededArena) -> None:
        done = await play_match(match_service, arena, winner_bot_id=arena.bot_a)

        assert [m.match_id for m in await recent_matches(matches, game_id=arena.game_id)] == [done.match_id]
        assert await recent_matches(matches, game_id="other") == []

    async def test_public_match_hides_error_detail(
        self,
        match_service: MatchService,
        matches,
        arena: SeededArena,
    ) -> None:
        started = await start_match(match_service, arena)
        await match_service.set_error(started.match_id, "bot crashed\nsecret internals", "Traceback: secret")

        public = await public_match(matches, started.match_id)

        assert public.result == MatchResult.ERROR
        assert public.error is not None
        assert public.error.message == "bot crashed"
        assert "secret" not in public.model_dump_json()

    async def test_public_match_missing(self, matches) -> None:
        with pytest.raises(MatchNotFound):
            await public_match(matches, "nope")
