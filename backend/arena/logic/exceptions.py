"""Typed domain exceptions for match lifecycle and settlement.

MatchRuleError subclasses are caller bugs: the request is rejected and the
match is left untouched. SettlementError subclasses are transient: the
caller should retry the settlement later.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shared.dal.models import MatchStatus, SettlementTarget


class ArenaError(Exception):
    """Base class for all arena domain errors."""


# --- Match rule violations ---


class MatchRuleError(ArenaError):
    """A match operation was requested that the match cannot accept."""


class InvalidTransition(MatchRuleError):  # noqa: N818
    """Illegal state machine edge.

    Attributes:
        match_id: The match the transition was attempted on.
        status: The match status at the time of the attempt.
        action: The requested operation (e.g. "start", "complete").

    """

    def __init__(self, *, match_id: str, status: MatchStatus, action: str) -> None:
        self.match_id = match_id
        self.status = status
        self.action = action
        super().__init__(f"cannot {action} match {match_id} in status {status}")


class AlreadyStarted(InvalidTransition):  # noqa: N818
    """start() on a match that is no longer pending."""

    def __init__(self, *, match_id: str, status: MatchStatus) -> None:
        super().__init__(match_id=match_id, status=status, action="start")


class InvalidParticipantCount(MatchRuleError):  # noqa: N818
    def __init__(self, *, match_id: str, count: int, minimum: int) -> None:
        self.match_id = match_id
        self.count = count
        self.minimum = minimum
        super().__init__(f"match {match_id} has {count} participants, needs at least {minimum}")


class UnknownWinner(MatchRuleError):  # noqa: N818
    def __init__(self, *, match_id: str, winner_bot_id: str) -> None:
        self.match_id = match_id
        self.winner_bot_id = winner_bot_id
        super().__init__(f"winner {winner_bot_id} is not a participant of match {match_id}")


class UnknownParticipant(MatchRuleError):  # noqa: N818
    def __init__(self, *, match_id: str, bot_id: str) -> None:
        self.match_id = match_id
        self.bot_id = bot_id
        super().__init__(f"bot {bot_id} is not a participant of match {match_id}")


class InvalidOutcome(MatchRuleError):  # noqa: N818
    """The requested result and winner do not describe a valid outcome."""


class MoveLimitReached(MatchRuleError):  # noqa: N818
    def __init__(self, *, match_id: str, max_moves: int) -> None:
        self.match_id = match_id
        self.max_moves = max_moves
        super().__init__(f"match {match_id} reached its move cap of {max_moves}")


class ParticipantRejected(MatchRuleError):  # noqa: N818
    """A bot/user pair cannot join the match (wrong game, not eligible, full, duplicate)."""


# --- Lookup and registration ---


class NotFoundError(ArenaError):
    pass


class MatchNotFound(NotFoundError):  # noqa: N818
    def __init__(self, match_id: str) -> None:
        self.match_id = match_id
        super().__init__(f"match {match_id} not found")


class EntityNotFound(NotFoundError):  # noqa: N818
    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")


class RegistrationError(ArenaError):
    """A user, game, or bot could not be registered (duplicate or invalid reference)."""


# --- Settlement ---


class SettlementError(ArenaError):
    """Transient failure while applying rating deltas."""


class ConcurrentUpdateExhausted(SettlementError):  # noqa: N818
    def __init__(self, *, target: SettlementTarget, attempts: int) -> None:
        self.target = target
        self.attempts = attempts
        super().__init__(f"{target.kind} {target.entity_id} still conflicting after {attempts} attempts")


class SettlementPartiallyApplied(SettlementError):  # noqa: N818
    """Some targets of a completed match did not receive their delta.

    The match keeps a pending-settlement marker listing `outstanding`; a
    retry applies only those targets.
    """

    def __init__(self, *, match_id: str, outstanding: Sequence[SettlementTarget]) -> None:
        self.match_id = match_id
        self.outstanding = tuple(outstanding)
        labels = ", ".join(f"{t.kind}:{t.entity_id}" for t in self.outstanding)
        super().__init__(f"match {match_id} settlement incomplete, outstanding: {labels}")
