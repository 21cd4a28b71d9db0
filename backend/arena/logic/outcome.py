"""Terminal outcome classification and settlement policy."""

from pydantic import BaseModel

from arena.logic.enums import ParticipantOutcome
from shared.dal.models import (
    DecisiveOutcome,
    DrawOutcome,
    EntityKind,
    MatchOutcome,
    MatchRecord,
    MatchStatus,
    SettlementTarget,
    TimeoutOutcome,
)


class SettlementPolicy(BaseModel, frozen=True):
    """Which terminal outcomes move ratings.

    Decisive and drawn matches are always rated. Timeouts are rated only when
    `settle_timeouts` is set. Error and cancelled matches are never rated, and
    unranked matches only update game counters.
    """

    settle_timeouts: bool = False

    def is_rated(self, match: MatchRecord) -> bool:
        if match.status != MatchStatus.COMPLETED or not match.settings.ranked:
            return False
        if isinstance(match.outcome, TimeoutOutcome):
            return self.settle_timeouts
        return isinstance(match.outcome, (DecisiveOutcome, DrawOutcome))


def classify(outcome: MatchOutcome | None, bot_id: str) -> ParticipantOutcome:
    """Classify one participant of a completed match as win, loss, or draw."""
    if isinstance(outcome, DecisiveOutcome):
        return ParticipantOutcome.WIN if outcome.winner_bot_id == bot_id else ParticipantOutcome.LOSS
    if isinstance(outcome, DrawOutcome):
        return ParticipantOutcome.DRAW
    if isinstance(outcome, TimeoutOutcome):
        if outcome.winner_bot_id is None:
            return ParticipantOutcome.DRAW
        return ParticipantOutcome.WIN if outcome.winner_bot_id == bot_id else ParticipantOutcome.LOSS
    kind = outcome.kind if outcome is not None else None
    raise ValueError(f"Outcome {kind!r} has no per-participant classification")


def settlement_targets(match: MatchRecord, policy: SettlementPolicy) -> tuple[SettlementTarget, ...]:
    """Entities owed a delta by a completed match.

    The game's counters are updated for every completed match; bots and their
    owners only when the policy rates the match.
    """
    if match.status != MatchStatus.COMPLETED:
        return ()
    targets = [SettlementTarget(kind=EntityKind.GAME, entity_id=match.game_id)]
    if policy.is_rated(match):
        for participant in match.participants:
            targets.append(SettlementTarget(kind=EntityKind.BOT, entity_id=participant.bot_id))
            targets.append(SettlementTarget(kind=EntityKind.USER, entity_id=participant.user_id))
    return tuple(targets)
