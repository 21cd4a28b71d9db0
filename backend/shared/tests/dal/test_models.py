"""Tests for DAL persistence models."""

import re
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from shared.dal.models import (
    DEFAULT_SCORE,
    Bot,
    BotStatus,
    DecisiveOutcome,
    Difficulty,
    DrawOutcome,
    EntityStats,
    Game,
    MatchParticipant,
    MatchRecord,
    MatchResult,
    MatchStatus,
    MoveLogEntry,
    TimeoutOutcome,
    new_match_id,
)

T0 = datetime(2025, 1, 1, tzinfo=UTC)


class TestEntityStats:
    def test_defaults(self):
        stats = EntityStats()
        assert stats.score == DEFAULT_SCORE
        assert stats.matches == 0
        assert stats.win_rate == 0

    def test_counters_must_sum_to_matches(self):
        with pytest.raises(ValidationError, match="!= matches"):
            EntityStats(matches=3, wins=1, losses=1, draws=0)

    def test_consistent_counters_accepted(self):
        stats = EntityStats(matches=3, wins=1, losses=1, draws=1, win_rate=33)
        assert stats.matches == 3


class TestGame:
    def test_min_players_cannot_exceed_max(self):
        with pytest.raises(ValidationError, match="exceeds max_players"):
            Game(game_id="g1", name="Chess", difficulty=Difficulty.HARD, created_by="u1", min_players=4, max_players=2)

    def test_player_bound_limit(self):
        with pytest.raises(ValidationError):
            Game(game_id="g1", name="Chess", difficulty=Difficulty.HARD, created_by="u1", max_players=9)


class TestBot:
    def _bot(self, **kwargs) -> Bot:
        return Bot(bot_id="b1", name="Bot", owner_id="u1", game_id="g1", language="python", **kwargs)

    def test_new_bot_is_pending_and_not_eligible(self):
        bot = self._bot()
        assert bot.status == BotStatus.PENDING
        assert not bot.is_eligible

    def test_active_enabled_bot_is_eligible(self):
        assert self._bot(status=BotStatus.ACTIVE).is_eligible

    def test_disabled_active_bot_is_not_eligible(self):
        assert not self._bot(status=BotStatus.ACTIVE, is_active=False).is_eligible


class TestMatchRecord:
    def test_generated_match_id_format(self):
        assert re.fullmatch(r"match_\d+_[0-9a-f]{9}", new_match_id())
        assert MatchRecord(game_id="g1").match_id.startswith("match_")

    def test_move_log_must_match_total_moves(self):
        with pytest.raises(ValidationError, match="total_moves"):
            MatchRecord(game_id="g1", total_moves=1)

    def test_terminal_status_requires_outcome(self):
        with pytest.raises(ValidationError, match="requires an outcome"):
            MatchRecord(game_id="g1", status=MatchStatus.COMPLETED)

    def test_outcome_must_agree_with_status(self):
        with pytest.raises(ValidationError, match="does not match status"):
            MatchRecord(game_id="g1", status=MatchStatus.ERROR, outcome=DrawOutcome())

    def test_derived_result_and_winner(self):
        decisive = MatchRecord(game_id="g1", status=MatchStatus.COMPLETED, outcome=DecisiveOutcome(winner_bot_id="a"))
        assert decisive.result == MatchResult.COMPLETED
        assert decisive.winner_bot_id == "a"

        timeout = MatchRecord(game_id="g1", status=MatchStatus.COMPLETED, outcome=TimeoutOutcome())
        assert timeout.result == MatchResult.TIMEOUT
        assert timeout.winner_bot_id is None

        assert MatchRecord(game_id="g1").result is None

    def test_outcome_discriminator_survives_json(self):
        match = MatchRecord(
            game_id="g1",
            status=MatchStatus.COMPLETED,
            outcome=TimeoutOutcome(winner_bot_id="a"),
            participants=(MatchParticipant(bot_id="a", user_id="u1"),),
            moves=(MoveLogEntry(participant="a", move="e4", timestamp=T0),),
            total_moves=1,
        )
        restored = MatchRecord.model_validate_json(match.model_dump_json())
        assert restored == match
        assert isinstance(restored.outcome, TimeoutOutcome)

    def test_get_participant(self):
        match = MatchRecord(game_id="g1", participants=(MatchParticipant(bot_id="a", user_id="u1"),))
        assert match.get_participant("a") is not None
        assert match.get_participant("zzz") is None
