"""Settlement of completed matches against a real SQLite store."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from arena.logic.exceptions import SettlementPartiallyApplied
from arena.logic.outcome import SettlementPolicy
from arena.session.match_service import MatchService
from arena.session.settlement import SettlementService
from arena.tests.helpers import play_match, start_match
from shared.dal.exceptions import PersistenceError
from shared.dal.models import (
    Bot,
    EntityKind,
    EntityStats,
    Game,
    MatchResult,
    MatchSettings,
    SettlementTarget,
    User,
)
from shared.db import SqliteEntityRepository, SqliteMatchRepository

if TYPE_CHECKING:
    from arena.tests.helpers import FakeClock, SeededArena
    from shared.db import Database


class YieldingEntityRepository(SqliteEntityRepository):
    """Yields to the event loop after every read so concurrent settlements interleave."""

    async def get_bot(self, bot_id: str) -> Bot | None:
        bot = await super().get_bot(bot_id)
        await asyncio.sleep(0)
        return bot

    async def get_user(self, user_id: str) -> User | None:
        user = await super().get_user(user_id)
        await asyncio.sleep(0)
        return user

    async def get_game(self, game_id: str) -> Game | None:
        game = await super().get_game(game_id)
        await asyncio.sleep(0)
        return game


class FailingEntityRepository(SqliteEntityRepository):
    """Fails settlement writes for selected entity ids until `failing` is cleared."""

    def __init__(self, db: Database, failing: set[str]) -> None:
        super().__init__(db)
        self.failing = failing

    async def apply_settlement(
        self,
        target: SettlementTarget,
        match_id: str,
        record: Bot | User | Game,
        expected_version: int,
    ) -> bool:
        if target.entity_id in self.failing:
            raise PersistenceError("database is locked")
        return await super().apply_settlement(target, match_id, record, expected_version)


class UncheckedEntityRepository(SqliteEntityRepository):
    """Reports nothing as settled, leaving the journal insert as the only guard."""

    async def is_settled(self, match_id: str, target: SettlementTarget) -> bool:
        return False


def _service(
    entities: SqliteEntityRepository,
    matches: SqliteMatchRepository,
    clock: FakeClock,
    *,
    max_attempts: int = 5,
    policy: SettlementPolicy | None = None,
) -> MatchService:
    settlement = SettlementService(entities, matches, max_attempts=max_attempts, clock=clock)
    return MatchService(entities, matches, settlement, policy=policy, clock=clock)


async def _stats(entities: SqliteEntityRepository, bot_id: str) -> EntityStats:
    bot = await entities.get_bot(bot_id)
    assert bot is not None
    return bot.stats


class TestScenarios:
    async def test_decisive_match(self, match_service, entities, arena: SeededArena, clock: FakeClock) -> None:
        started = await start_match(match_service, arena)
        clock.advance(42)

        done = await match_service.complete(started.match_id, winner_bot_id=arena.bot_a)

        assert done.pending_settlement == ()
        winner = await entities.get_bot(arena.bot_a)
        loser = await entities.get_bot(arena.bot_b)
        assert winner is not None
        assert loser is not None
        assert (winner.stats.score, winner.stats.wins, winner.stats.win_rate) == (1025, 1, 100)
        assert (loser.stats.score, loser.stats.losses, loser.stats.win_rate) == (975, 1, 0)
        assert winner.last_run == done.completed_at

        alice = await entities.get_user(arena.alice)
        bob = await entities.get_user(arena.bob)
        assert alice is not None
        assert bob is not None
        assert (alice.stats.score, bob.stats.score) == (1025, 975)
        assert alice.last_active == done.completed_at

        game = await entities.get_game(arena.game_id)
        assert game is not None
        assert game.stats.total_matches == 1
        assert game.stats.avg_match_duration == 42

    async def test_draw(self, match_service, entities, arena: SeededArena) -> None:
        await play_match(match_service, arena, result=MatchResult.DRAW)

        for bot_id in (arena.bot_a, arena.bot_b):
            stats = await _stats(entities, bot_id)
            assert (stats.score, stats.draws, stats.matches) == (1005, 1, 1)

    async def test_loss_respects_floor(self, match_service, entities, arena: SeededArena) -> None:
        bot = await entities.get_bot(arena.bot_b)
        assert bot is not None
        await entities.update_bot(bot.model_copy(update={"stats": EntityStats(score=805)}), bot.version)

        await play_match(match_service, arena, winner_bot_id=arena.bot_a)

        assert (await _stats(entities, arena.bot_b)).score == 800

    async def test_response_time_reaches_bot_stats(self, match_service, entities, arena: SeededArena) -> None:
        started = await start_match(match_service, arena)
        await match_service.record_move(started.match_id, arena.bot_a, "e4", response_time=100)
        await match_service.record_move(started.match_id, arena.bot_b, "e5", response_time=300)
        await match_service.record_move(started.match_id, arena.bot_a, "Nf3", response_time=200)

        await match_service.complete(started.match_id, winner_bot_id=arena.bot_a)

        assert (await _stats(entities, arena.bot_a)).avg_response_time == 150
        assert (await _stats(entities, arena.bot_b)).avg_response_time == 300

    async def test_unranked_match_only_counts_for_game(self, match_service, entities, arena: SeededArena) -> None:
        match = await match_service.create_match(arena.game_id, settings=MatchSettings(ranked=False))
        await match_service.add_participant(match.match_id, arena.bot_a, arena.alice)
        await match_service.add_participant(match.match_id, arena.bot_b, arena.bob)
        await match_service.start(match.match_id)

        await match_service.complete(match.match_id, winner_bot_id=arena.bot_a)

        assert (await _stats(entities, arena.bot_a)).matches == 0
        game = await entities.get_game(arena.game_id)
        assert game is not None
        assert game.stats.total_matches == 1

    async def test_timeout_not_rated_by_default(self, match_service, entities, arena: SeededArena) -> None:
        await play_match(match_service, arena, winner_bot_id=arena.bot_a, result=MatchResult.TIMEOUT)

        assert (await _stats(entities, arena.bot_a)).matches == 0

    async def test_timeout_rated_when_enabled(self, entities, matches, clock, arena: SeededArena) -> None:
        service = _service(entities, matches, clock, policy=SettlementPolicy(settle_timeouts=True))

        await play_match(service, arena, winner_bot_id=arena.bot_b, result=MatchResult.TIMEOUT)

        assert (await _stats(entities, arena.bot_b)).score == 1025

    async def test_error_and_cancel_leave_ratings_and_counters_alone(
        self,
        match_service,
        entities,
        arena: SeededArena,
    ) -> None:
        first = await start_match(match_service, arena)
        await match_service.set_error(first.match_id, "runner crashed", "Traceback ...")
        second = await start_match(match_service, arena)
        await match_service.cancel(second.match_id, "maintenance")

        assert (await _stats(entities, arena.bot_a)).matches == 0
        game = await entities.get_game(arena.game_id)
        assert game is not None
        assert game.stats.total_matches == 0


class TestConcurrency:
    async def test_concurrent_completions_lose_no_updates(self, db, matches, clock, arena: SeededArena) -> None:
        entities = YieldingEntityRepository(db)
        service = _service(entities, matches, clock, max_attempts=5)
        count = 5
        started = [await start_match(service, arena) for _ in range(count)]

        await asyncio.gather(*(service.complete(m.match_id, winner_bot_id=arena.bot_a) for m in started))

        winner = await _stats(entities, arena.bot_a)
        loser = await _stats(entities, arena.bot_b)
        assert (winner.matches, winner.wins, winner.score) == (count, count, 1000 + 25 * count)
        assert (loser.matches, loser.losses, loser.score) == (count, count, 1000 - 25 * count)
        assert loser.wins + loser.losses + loser.draws == loser.matches
        game = await entities.get_game(arena.game_id)
        assert game is not None
        assert game.stats.total_matches == count
        assert await matches.list_pending_settlement() == []

    async def test_exhausted_retries_leave_marker_for_repair(self, db, matches, clock, arena: SeededArena) -> None:
        entities = YieldingEntityRepository(db)
        service = _service(entities, matches, clock, max_attempts=1)
        first, second = [await start_match(service, arena) for _ in range(2)]

        results = await asyncio.gather(
            service.complete(first.match_id, winner_bot_id=arena.bot_a),
            service.complete(second.match_id, winner_bot_id=arena.bot_a),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, SettlementPartiallyApplied)]
        assert failures
        assert await matches.list_pending_settlement() != []

        repaired = await service.repair_pending()

        assert repaired == len(failures)
        assert await matches.list_pending_settlement() == []
        assert (await _stats(entities, arena.bot_a)).matches == 2


class TestPartialSettlement:
    async def test_failed_target_stays_pending_and_retry_applies_only_it(
        self,
        db,
        matches,
        clock,
        arena: SeededArena,
    ) -> None:
        entities = FailingEntityRepository(db, failing={arena.bot_b})
        service = _service(entities, matches, clock)
        started = await start_match(service, arena)

        with pytest.raises(SettlementPartiallyApplied) as exc_info:
            await service.complete(started.match_id, winner_bot_id=arena.bot_a)

        outstanding = SettlementTarget(kind=EntityKind.BOT, entity_id=arena.bot_b)
        assert exc_info.value.outstanding == (outstanding,)
        stored = await service.get_match(started.match_id)
        assert stored.result == MatchResult.COMPLETED
        assert stored.pending_settlement == (outstanding,)
        assert (await _stats(entities, arena.bot_a)).matches == 1
        assert (await _stats(entities, arena.bot_b)).matches == 0

        entities.failing.clear()
        settled = await service.retry_settlement(started.match_id)

        assert settled.pending_settlement == ()
        assert (await _stats(entities, arena.bot_a)).matches == 1
        assert (await _stats(entities, arena.bot_b)).score == 975

    async def test_replayed_marker_does_not_double_apply(self, match_service, matches, entities, arena) -> None:
        done = await play_match(match_service, arena, winner_bot_id=arena.bot_a)
        # Simulate a crash after the entity writes but before the marker was cleared.
        replay = done.model_copy(
            update={
                "pending_settlement": (
                    SettlementTarget(kind=EntityKind.GAME, entity_id=arena.game_id),
                    SettlementTarget(kind=EntityKind.BOT, entity_id=arena.bot_a),
                ),
            },
        )
        await matches.update_match(replay, done.version)

        settled = await match_service.retry_settlement(done.match_id)

        assert settled.pending_settlement == ()
        assert (await _stats(entities, arena.bot_a)).score == 1025
        game = await entities.get_game(arena.game_id)
        assert game is not None
        assert game.stats.total_matches == 1

    async def test_journal_blocks_replay_when_precheck_misses(self, db, matches, clock, arena: SeededArena) -> None:
        entities = UncheckedEntityRepository(db)
        service = _service(entities, matches, clock)
        done = await play_match(service, arena, winner_bot_id=arena.bot_a)
        replay = done.model_copy(
            update={"pending_settlement": (SettlementTarget(kind=EntityKind.BOT, entity_id=arena.bot_a),)},
        )
        await matches.update_match(replay, done.version)

        settled = await service.retry_settlement(done.match_id)

        assert settled.pending_settlement == ()
        assert (await _stats(entities, arena.bot_a)).matches == 1

    async def test_retry_on_settled_match_is_noop(self, match_service, arena: SeededArena) -> None:
        done = await play_match(match_service, arena, winner_bot_id=arena.bot_a)

        again = await match_service.retry_settlement(done.match_id)

        assert again.version == done.version
