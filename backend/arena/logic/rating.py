"""
Rating ledger: pure functions turning a match outcome into stats deltas.

Nothing here touches storage. Given the same prior stats, outcome and
response time, every function returns the same value, so settlement can
recompute a delta on each retry against the freshly read record.

Rounding is half-up to match the ratings already stored by the platform.
"""

import math

from pydantic import BaseModel

from arena.logic.enums import ParticipantOutcome, RankTier
from shared.dal.models import EntityStats, GameStats

WIN_POINTS = 25
LOSS_POINTS = 25
DRAW_POINTS = 5
SCORE_FLOOR = 800

# Lower score bound of each tier, highest first.
_RANK_THRESHOLDS: tuple[tuple[int, RankTier], ...] = (
    (2000, RankTier.MASTER),
    (1800, RankTier.DIAMOND),
    (1600, RankTier.GOLD),
    (1400, RankTier.SILVER),
    (1200, RankTier.BRONZE),
)


class StatsDelta(BaseModel, frozen=True):
    """Change to apply to one entity's stats for one settled match."""

    matches_delta: int = 1
    wins_delta: int = 0
    losses_delta: int = 0
    draws_delta: int = 0
    score_delta: int = 0
    new_avg_response_time: int = 0


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def rolling_average(old_avg: int, old_count: int, sample: int) -> int:
    """Fold one sample into a mean over `old_count` samples without keeping them.

    Non-positive samples are treated as "not measured" and leave the mean unchanged.
    """
    if sample <= 0:
        return old_avg
    return round_half_up((old_avg * old_count + sample) / (old_count + 1))


def win_rate(wins: int, matches: int) -> int:
    """Win percentage rounded to an integer; 0 before the first match."""
    if matches == 0:
        return 0
    return round_half_up(100 * wins / matches)


def compute_delta(prior: EntityStats, outcome: ParticipantOutcome, response_time: int = 0) -> StatsDelta:
    """
    Compute the stats delta for one participant.

    Args:
        prior: Stats as read from the store before this match
        outcome: The participant's classification for the match
        response_time: Mean response time in this match (ms); 0 if unmeasured

    Returns:
        StatsDelta with matches_delta=1 and exactly one of wins/losses/draws incremented

    """
    new_avg = rolling_average(prior.avg_response_time, prior.matches, response_time)
    if outcome == ParticipantOutcome.WIN:
        return StatsDelta(wins_delta=1, score_delta=WIN_POINTS, new_avg_response_time=new_avg)
    if outcome == ParticipantOutcome.LOSS:
        floored = max(SCORE_FLOOR, prior.score - LOSS_POINTS)
        return StatsDelta(losses_delta=1, score_delta=floored - prior.score, new_avg_response_time=new_avg)
    return StatsDelta(draws_delta=1, score_delta=DRAW_POINTS, new_avg_response_time=new_avg)


def apply_delta(prior: EntityStats, delta: StatsDelta) -> EntityStats:
    """Return new stats with `delta` applied and the win rate recomputed."""
    matches = prior.matches + delta.matches_delta
    wins = prior.wins + delta.wins_delta
    return EntityStats(
        matches=matches,
        wins=wins,
        losses=prior.losses + delta.losses_delta,
        draws=prior.draws + delta.draws_delta,
        score=prior.score + delta.score_delta,
        win_rate=win_rate(wins, matches),
        avg_response_time=delta.new_avg_response_time,
    )


def settle_stats(prior: EntityStats, outcome: ParticipantOutcome, response_time: int = 0) -> EntityStats:
    return apply_delta(prior, compute_delta(prior, outcome, response_time))


def record_match_duration(stats: GameStats, duration: int) -> GameStats:
    """Count one more completed match and fold its duration into the game's mean."""
    total = stats.total_matches + 1
    avg = round_half_up((stats.avg_match_duration * stats.total_matches + duration) / total)
    return stats.model_copy(update={"total_matches": total, "avg_match_duration": avg})


def adjust_active_bots(stats: GameStats, delta: int) -> GameStats:
    return stats.model_copy(update={"active_bots": max(0, stats.active_bots + delta)})


def rank_tier(score: int) -> RankTier:
    for threshold, tier in _RANK_THRESHOLDS:
        if score >= threshold:
            return tier
    return RankTier.IRON
