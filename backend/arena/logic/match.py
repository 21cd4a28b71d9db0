"""
Match state machine.

    pending -> in_progress -> completed | error
    pending | in_progress -> cancelled | error

Every transition is a pure function from a frozen MatchRecord to a new one.
Rejected transitions raise a MatchRuleError and leave the input untouched,
so the caller only persists records returned from here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from arena.logic.exceptions import (
    AlreadyStarted,
    InvalidOutcome,
    InvalidParticipantCount,
    InvalidTransition,
    MoveLimitReached,
    ParticipantRejected,
    UnknownParticipant,
    UnknownWinner,
)
from arena.logic.outcome import settlement_targets
from arena.logic.rating import rolling_average, round_half_up
from shared.dal.models import (
    CancelledOutcome,
    DecisiveOutcome,
    DrawOutcome,
    ErrorOutcome,
    MatchError,
    MatchParticipant,
    MatchRecord,
    MatchResult,
    MatchStatus,
    MoveLogEntry,
    TimeoutOutcome,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from arena.logic.outcome import SettlementPolicy
    from shared.dal.models import Bot, Game, MatchOutcome, User

MIN_PARTICIPANTS = 2

_OPEN_STATUSES = frozenset({MatchStatus.PENDING, MatchStatus.IN_PROGRESS})
_COMPLETION_RESULTS = frozenset({MatchResult.COMPLETED, MatchResult.DRAW, MatchResult.TIMEOUT})


def _require_status(match: MatchRecord, allowed: frozenset[MatchStatus], action: str) -> None:
    if match.status not in allowed:
        raise InvalidTransition(match_id=match.match_id, status=match.status, action=action)


def _elapsed_seconds(started_at: datetime | None, now: datetime) -> int:
    if started_at is None:
        return 0
    return max(0, round_half_up((now - started_at).total_seconds()))


def add_participant(match: MatchRecord, game: Game, bot: Bot, user: User) -> MatchRecord:
    """Return a new pending match with the (bot, user) pair appended to the participants."""
    _require_status(match, frozenset({MatchStatus.PENDING}), "add participant to")
    if bot.game_id != match.game_id:
        raise ParticipantRejected(f"bot {bot.bot_id} plays {bot.game_id}, not {match.game_id}")
    if bot.owner_id != user.user_id:
        raise ParticipantRejected(f"bot {bot.bot_id} is not owned by user {user.user_id}")
    if not bot.is_eligible:
        raise ParticipantRejected(f"bot {bot.bot_id} is not eligible (status {bot.status})")
    if not user.is_active:
        raise ParticipantRejected(f"user {user.user_id} is inactive")
    if match.get_participant(bot.bot_id) is not None:
        raise ParticipantRejected(f"bot {bot.bot_id} already joined match {match.match_id}")
    if match.participant_count >= game.max_players:
        raise ParticipantRejected(f"match {match.match_id} is full ({game.max_players} players)")
    participant = MatchParticipant(bot_id=bot.bot_id, user_id=user.user_id)
    return match.model_copy(update={"participants": (*match.participants, participant)})


def start(
    match: MatchRecord,
    *,
    now: datetime,
    min_players: int = MIN_PARTICIPANTS,
    initial_state: Any = None,  # noqa: ANN401
) -> MatchRecord:
    """Move a pending match to in_progress and record its start time."""
    if match.status != MatchStatus.PENDING:
        raise AlreadyStarted(match_id=match.match_id, status=match.status)
    minimum = max(MIN_PARTICIPANTS, min_players)
    if match.participant_count < minimum:
        raise InvalidParticipantCount(match_id=match.match_id, count=match.participant_count, minimum=minimum)
    update: dict[str, Any] = {"status": MatchStatus.IN_PROGRESS, "started_at": now}
    if initial_state is not None:
        update["initial_state"] = initial_state
    return match.model_copy(update=update)


def record_move(
    match: MatchRecord,
    bot_id: str,
    move: Any,  # noqa: ANN401
    resulting_state: Any,  # noqa: ANN401
    *,
    now: datetime,
    response_time: int = 0,
) -> tuple[MatchRecord, MoveLogEntry]:
    """
    Append one move to an in-progress match.

    Args:
        match: Current match record
        bot_id: Acting participant
        move: Opaque move payload from the game runner
        resulting_state: Game state after the move; becomes the final state pointer
        now: Time the move was accepted
        response_time: How long the bot took to answer (ms); 0 if unmeasured

    Returns:
        The updated match and the appended log entry

    """
    _require_status(match, frozenset({MatchStatus.IN_PROGRESS}), "record move in")
    participant = match.get_participant(bot_id)
    if participant is None:
        raise UnknownParticipant(match_id=match.match_id, bot_id=bot_id)
    max_moves = match.settings.max_moves
    if max_moves is not None and match.total_moves >= max_moves:
        raise MoveLimitReached(match_id=match.match_id, max_moves=max_moves)

    entry = MoveLogEntry(participant=bot_id, move=move, timestamp=now, game_state=resulting_state)
    updated_participant = participant.model_copy(
        update={
            "moves": participant.moves + 1,
            "avg_response_time": rolling_average(participant.avg_response_time, participant.moves, response_time),
        },
    )
    participants = tuple(updated_participant if p.bot_id == bot_id else p for p in match.participants)
    updated = match.model_copy(
        update={
            "participants": participants,
            "moves": (*match.moves, entry),
            "total_moves": match.total_moves + 1,
            "final_state": resulting_state,
        },
    )
    return updated, entry


def _build_outcome(match: MatchRecord, winner_bot_id: str | None, result: MatchResult) -> MatchOutcome:
    if result not in _COMPLETION_RESULTS:
        raise InvalidOutcome(f"result {result!r} cannot complete a match; use set_error or cancel")
    if winner_bot_id is not None and match.get_participant(winner_bot_id) is None:
        raise UnknownWinner(match_id=match.match_id, winner_bot_id=winner_bot_id)
    if result == MatchResult.DRAW:
        if winner_bot_id is not None:
            raise InvalidOutcome(f"draw in match {match.match_id} cannot have a winner")
        return DrawOutcome()
    if result == MatchResult.TIMEOUT:
        return TimeoutOutcome(winner_bot_id=winner_bot_id)
    # A completed match without a winner is recorded as a draw.
    if winner_bot_id is None:
        return DrawOutcome()
    return DecisiveOutcome(winner_bot_id=winner_bot_id)


def _final_participants(
    participants: tuple[MatchParticipant, ...],
    winner_bot_id: str | None,
    scores: Mapping[str, int],
) -> tuple[MatchParticipant, ...]:
    result = []
    for participant in participants:
        position = 1 if winner_bot_id is None or participant.bot_id == winner_bot_id else 2
        update: dict[str, Any] = {"position": position}
        if participant.bot_id in scores:
            update["score"] = scores[participant.bot_id]
        result.append(participant.model_copy(update=update))
    return tuple(result)


def complete(
    match: MatchRecord,
    *,
    winner_bot_id: str | None = None,
    result: MatchResult | str = MatchResult.COMPLETED,
    scores: Mapping[str, int] | None = None,
    now: datetime,
    policy: SettlementPolicy,
) -> MatchRecord:
    """
    Finalize an in-progress match and mark the entities owed a settlement.

    Returns:
        Completed match with outcome, positions, completed_at, duration and
        the pending-settlement marker set

    Raises:
        InvalidTransition: Match is not in progress
        UnknownWinner: Winner is not a participant
        InvalidOutcome: Result/winner combination is not a completion outcome

    """
    _require_status(match, frozenset({MatchStatus.IN_PROGRESS}), "complete")
    try:
        result = MatchResult(result)
    except ValueError as exc:
        raise InvalidOutcome(f"unknown result {result!r}") from exc
    outcome = _build_outcome(match, winner_bot_id, result)
    winner = outcome.winner_bot_id if isinstance(outcome, (DecisiveOutcome, TimeoutOutcome)) else None
    finalized = match.model_copy(
        update={
            "status": MatchStatus.COMPLETED,
            "outcome": outcome,
            "participants": _final_participants(match.participants, winner, scores or {}),
            "completed_at": now,
            "duration": _elapsed_seconds(match.started_at, now),
        },
    )
    return finalized.model_copy(update={"pending_settlement": settlement_targets(finalized, policy)})


def set_error(match: MatchRecord, message: str, detail: str | None = None, *, now: datetime) -> MatchRecord:
    """Terminate a pending or in-progress match with an error. Never rated."""
    _require_status(match, _OPEN_STATUSES, "set error on")
    return match.model_copy(
        update={
            "status": MatchStatus.ERROR,
            "outcome": ErrorOutcome(message=message),
            "error": MatchError(message=message, detail=detail, timestamp=now),
            "completed_at": now,
            "duration": _elapsed_seconds(match.started_at, now),
        },
    )


def cancel(match: MatchRecord, reason: str = "", *, now: datetime) -> MatchRecord:
    """Terminate a pending or in-progress match without a result. Never rated."""
    _require_status(match, _OPEN_STATUSES, "cancel")
    return match.model_copy(
        update={
            "status": MatchStatus.CANCELLED,
            "outcome": CancelledOutcome(reason=reason),
            "completed_at": now,
            "duration": _elapsed_seconds(match.started_at, now),
        },
    )
