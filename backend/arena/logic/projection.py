"""Public projection of match records for external consumers."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from shared.dal.models import MatchParticipant, MatchRecord, MatchResult, MatchSettings, MatchStatus

MAX_PUBLIC_ERROR_LENGTH = 200
_GENERIC_ERROR_MESSAGE = "Match ended with an error"


class PublicMove(BaseModel, frozen=True):
    """Move log entry without the embedded game-state snapshot."""

    participant: str
    timestamp: datetime
    move: Any = None


class PublicError(BaseModel, frozen=True):
    message: str
    timestamp: datetime


class PublicMatch(BaseModel, frozen=True):
    match_id: str
    game_id: str
    status: MatchStatus
    result: MatchResult | None = None
    winner_bot_id: str | None = None
    participants: tuple[MatchParticipant, ...] = ()
    duration: int | None = None
    total_moves: int = 0
    moves: tuple[PublicMove, ...] = ()
    error: PublicError | None = None
    settings: MatchSettings
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


def sanitize_error_message(message: str) -> str:
    """Keep the first line of an error message, truncated for display."""
    first_line = message.strip().splitlines()[0].strip() if message.strip() else ""
    if not first_line:
        return _GENERIC_ERROR_MESSAGE
    return first_line[:MAX_PUBLIC_ERROR_LENGTH]


def to_public(match: MatchRecord) -> PublicMatch:
    """Project a match for public viewing.

    Drops the error stack/detail, game-state snapshots (per move, initial and
    final) and settlement bookkeeping.
    """
    error = None
    if match.error is not None:
        error = PublicError(message=sanitize_error_message(match.error.message), timestamp=match.error.timestamp)
    return PublicMatch(
        match_id=match.match_id,
        game_id=match.game_id,
        status=match.status,
        result=match.result,
        winner_bot_id=match.winner_bot_id,
        participants=match.participants,
        duration=match.duration,
        total_moves=match.total_moves,
        moves=tuple(PublicMove(participant=m.participant, timestamp=m.timestamp, move=m.move) for m in match.moves),
        error=error,
        settings=match.settings,
        created_at=match.created_at,
        started_at=match.started_at,
        completed_at=match.completed_at,
    )
