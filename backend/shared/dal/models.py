"""Persistence models for the data access layer.

Every record is a frozen pydantic model. Updates go through
``model_copy(update=...)`` and are written back with the version that was
read, so the store can reject stale writes.
"""

import time
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Self

from pydantic import BaseModel, Field, model_validator

DEFAULT_SCORE = 1000
MAX_PLAYERS_LIMIT = 8


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_match_id() -> str:
    """Generate a match id in the ``match_<epoch ms>_<suffix>`` format."""
    return f"match_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class EntityKind(StrEnum):
    BOT = "bot"
    USER = "user"
    GAME = "game"


class BotStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    BANNED = "banned"


class BotLanguage(StrEnum):
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    JAVA = "java"
    CPP = "cpp"
    RUST = "rust"
    GO = "go"


class Difficulty(StrEnum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"
    EXPERT = "Expert"


class MatchStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({MatchStatus.COMPLETED, MatchStatus.ERROR, MatchStatus.CANCELLED})


class MatchResult(StrEnum):
    COMPLETED = "completed"
    DRAW = "draw"
    TIMEOUT = "timeout"
    ERROR = "error"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class EntityStats(BaseModel, frozen=True):
    """Cumulative competitive statistics shared by bots and users."""

    matches: int = Field(default=0, ge=0)
    wins: int = Field(default=0, ge=0)
    losses: int = Field(default=0, ge=0)
    draws: int = Field(default=0, ge=0)
    score: int = DEFAULT_SCORE
    win_rate: int = Field(default=0, ge=0, le=100)  # percent
    avg_response_time: int = Field(default=0, ge=0)  # milliseconds

    @model_validator(mode="after")
    def _check_counters(self) -> Self:
        if self.wins + self.losses + self.draws != self.matches:
            raise ValueError(
                f"wins + losses + draws ({self.wins + self.losses + self.draws}) != matches ({self.matches})",
            )
        return self


class GameStats(BaseModel, frozen=True):
    """Denormalized per-game counters, changed only by explicit deltas."""

    total_matches: int = Field(default=0, ge=0)
    active_bots: int = Field(default=0, ge=0)
    avg_match_duration: int = Field(default=0, ge=0)  # seconds


class ValidationReport(BaseModel, frozen=True):
    timestamp: datetime
    passed: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


class User(BaseModel, frozen=True):
    user_id: str
    username: str = Field(min_length=3, max_length=30)
    display_name: str = Field(min_length=1, max_length=50)
    is_active: bool = True
    stats: EntityStats = Field(default_factory=EntityStats)
    last_active: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    version: int = 0


class Game(BaseModel, frozen=True):
    game_id: str
    name: str = Field(min_length=1, max_length=50)
    description: str = Field(default="", max_length=500)
    difficulty: Difficulty
    min_players: int = Field(default=2, ge=1, le=MAX_PLAYERS_LIMIT)
    max_players: int = Field(default=2, ge=1, le=MAX_PLAYERS_LIMIT)
    time_limit: int = Field(default=10, ge=1)  # minutes
    rules: str = Field(default="", max_length=2000)
    created_by: str
    is_active: bool = True
    tags: tuple[str, ...] = ()
    stats: GameStats = Field(default_factory=GameStats)
    created_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    @model_validator(mode="after")
    def _check_player_bounds(self) -> Self:
        if self.min_players > self.max_players:
            raise ValueError(f"min_players ({self.min_players}) exceeds max_players ({self.max_players})")
        return self


class Bot(BaseModel, frozen=True):
    """One bot per (owner, game) pair."""

    bot_id: str
    name: str = Field(min_length=1, max_length=50)
    description: str = Field(default="", max_length=500)
    owner_id: str
    game_id: str
    language: BotLanguage
    bot_version: str = "1.0.0"
    status: BotStatus = BotStatus.PENDING
    is_active: bool = True
    stats: EntityStats = Field(default_factory=EntityStats)
    last_validation: ValidationReport | None = None
    last_run: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    @property
    def is_eligible(self) -> bool:
        """Whether the bot may be matched and shown on leaderboards."""
        return self.status == BotStatus.ACTIVE and self.is_active


# ---------------------------------------------------------------------------
# Matches
# ---------------------------------------------------------------------------


class SettlementTarget(BaseModel, frozen=True):
    """One entity that still has to receive a match's settlement delta."""

    kind: EntityKind
    entity_id: str


class DecisiveOutcome(BaseModel, frozen=True):
    kind: Literal["decisive"] = "decisive"
    winner_bot_id: str


class DrawOutcome(BaseModel, frozen=True):
    kind: Literal["draw"] = "draw"


class TimeoutOutcome(BaseModel, frozen=True):
    kind: Literal["timeout"] = "timeout"
    winner_bot_id: str | None = None


class ErrorOutcome(BaseModel, frozen=True):
    kind: Literal["error"] = "error"
    message: str


class CancelledOutcome(BaseModel, frozen=True):
    kind: Literal["cancelled"] = "cancelled"
    reason: str = ""


MatchOutcome = Annotated[
    DecisiveOutcome | DrawOutcome | TimeoutOutcome | ErrorOutcome | CancelledOutcome,
    Field(discriminator="kind"),
]

_RESULT_BY_KIND: dict[str, MatchResult] = {
    "decisive": MatchResult.COMPLETED,
    "draw": MatchResult.DRAW,
    "timeout": MatchResult.TIMEOUT,
    "error": MatchResult.ERROR,
    "cancelled": MatchResult.CANCELLED,
}

_STATUS_BY_KIND: dict[str, MatchStatus] = {
    "decisive": MatchStatus.COMPLETED,
    "draw": MatchStatus.COMPLETED,
    "timeout": MatchStatus.COMPLETED,
    "error": MatchStatus.ERROR,
    "cancelled": MatchStatus.CANCELLED,
}


class MatchParticipant(BaseModel, frozen=True):
    bot_id: str
    user_id: str
    position: int | None = None  # 1 for winners and draws, set at completion
    score: int | None = None  # game score reported at completion
    moves: int = 0
    avg_response_time: int = 0  # milliseconds, rolling mean over this match's moves
    errors: int = 0


class MoveLogEntry(BaseModel, frozen=True):
    participant: str  # bot_id of the acting participant
    move: Any
    timestamp: datetime
    game_state: Any = None


class MatchError(BaseModel, frozen=True):
    message: str
    detail: str | None = None  # internal stack/diagnostics, never exposed publicly
    timestamp: datetime


class MatchSettings(BaseModel, frozen=True):
    time_per_move: int | None = Field(default=None, ge=1)  # milliseconds
    max_moves: int | None = Field(default=None, ge=1)
    ranked: bool = True


class MatchRecord(BaseModel, frozen=True):
    """One contest attempt between bots of the same game."""

    match_id: str = Field(default_factory=new_match_id)
    game_id: str
    participants: tuple[MatchParticipant, ...] = ()
    status: MatchStatus = MatchStatus.PENDING
    outcome: MatchOutcome | None = None
    duration: int | None = None  # seconds, set once by the finalizing transition
    total_moves: int = Field(default=0, ge=0)
    initial_state: Any = None
    final_state: Any = None
    moves: tuple[MoveLogEntry, ...] = ()
    error: MatchError | None = None
    settings: MatchSettings = Field(default_factory=MatchSettings)
    pending_settlement: tuple[SettlementTarget, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    version: int = 0

    @model_validator(mode="after")
    def _check_consistency(self) -> Self:
        if len(self.moves) != self.total_moves:
            raise ValueError(f"move log has {len(self.moves)} entries but total_moves is {self.total_moves}")
        if self.outcome is None:
            if self.status in TERMINAL_STATUSES:
                raise ValueError(f"terminal status {self.status} requires an outcome")
        elif _STATUS_BY_KIND[self.outcome.kind] != self.status:
            raise ValueError(f"outcome {self.outcome.kind!r} does not match status {self.status}")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def result(self) -> MatchResult | None:
        if self.outcome is None:
            return None
        return _RESULT_BY_KIND[self.outcome.kind]

    @property
    def winner_bot_id(self) -> str | None:
        if isinstance(self.outcome, (DecisiveOutcome, TimeoutOutcome)):
            return self.outcome.winner_bot_id
        return None

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    def get_participant(self, bot_id: str) -> MatchParticipant | None:
        for participant in self.participants:
            if participant.bot_id == bot_id:
                return participant
        return None


class MatchAggregate(BaseModel, frozen=True):
    """Raw match roll-up; `game_id` is None for the all-games aggregate."""

    game_id: str | None = None
    total_matches: int = 0
    completed_matches: int = 0
    avg_duration: float = 0.0  # over completed matches, seconds
    total_moves: int = 0  # over completed matches
