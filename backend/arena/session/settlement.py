"""Apply rating ledger deltas for completed matches."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from arena.logic.exceptions import EntityNotFound, SettlementError, SettlementPartiallyApplied
from arena.logic.outcome import classify
from arena.logic.rating import record_match_duration, settle_stats
from arena.session.versioning import update_with_retry
from shared.dal.exceptions import RepositoryError
from shared.dal.models import Bot, EntityKind, Game, User, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from shared.dal.entity_repository import EntityRepository
    from shared.dal.match_repository import MatchRepository
    from shared.dal.models import MatchParticipant, MatchRecord, SettlementTarget

logger = structlog.get_logger()


class SettlementService:
    """Drain a completed match's pending-settlement marker.

    Each target (game counters, every participating bot and its owner) is
    updated through the optimistic retry loop. The entity write and its
    journal entry share one transaction, so a target that was already
    settled is skipped rather than applied twice. Targets that fail stay on
    the marker; the match is then persisted with only those targets and
    SettlementPartiallyApplied is raised.

    Callers must hold the match's lock; the service itself does not
    serialize settlements of the same match.
    """

    def __init__(
        self,
        entities: EntityRepository,
        matches: MatchRepository,
        *,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._entities = entities
        self._matches = matches
        self._max_attempts = max_attempts
        self._clock = clock

    async def settle(self, match: MatchRecord) -> MatchRecord:
        """Apply every outstanding target and persist the reduced marker.

        Returns the persisted match with an empty marker. Raises
        SettlementPartiallyApplied when any target could not be applied.
        """
        if not match.pending_settlement:
            return match

        outstanding: list[SettlementTarget] = []
        first_error: Exception | None = None
        for target in match.pending_settlement:
            try:
                await self._settle_target(match, target)
            except (SettlementError, EntityNotFound, RepositoryError) as exc:
                logger.warning(
                    "settlement target failed",
                    match_id=match.match_id,
                    kind=target.kind,
                    entity_id=target.entity_id,
                    error=str(exc),
                )
                outstanding.append(target)
                first_error = first_error or exc

        remaining = match.model_copy(update={"pending_settlement": tuple(outstanding)})
        persisted = await self._matches.update_match(remaining, match.version)
        if outstanding:
            raise SettlementPartiallyApplied(match_id=match.match_id, outstanding=outstanding) from first_error
        logger.info("match settled", match_id=match.match_id, targets=len(match.pending_settlement))
        return persisted

    async def _settle_target(self, match: MatchRecord, target: SettlementTarget) -> None:
        if await self._entities.is_settled(match.match_id, target):
            logger.info("target already settled", match_id=match.match_id, kind=target.kind, entity_id=target.entity_id)
            return

        async def write(record: Bot | User | Game, expected_version: int) -> bool:
            return await self._entities.apply_settlement(target, match.match_id, record, expected_version)

        applied = await update_with_retry(
            target,
            lambda: self._load(target),
            lambda record: self._settled(match, target, record),
            write,
            attempts=self._max_attempts,
        )
        if not applied:
            logger.info(
                "target already settled",
                match_id=match.match_id,
                kind=target.kind,
                entity_id=target.entity_id,
            )

    async def _load(self, target: SettlementTarget) -> Bot | User | Game:
        record: Bot | User | Game | None
        if target.kind == EntityKind.BOT:
            record = await self._entities.get_bot(target.entity_id)
        elif target.kind == EntityKind.USER:
            record = await self._entities.get_user(target.entity_id)
        else:
            record = await self._entities.get_game(target.entity_id)
        if record is None:
            raise EntityNotFound(target.kind.value, target.entity_id)
        return record

    def _settled(self, match: MatchRecord, target: SettlementTarget, record: Bot | User | Game) -> Bot | User | Game:
        """Return `record` with this match's delta applied. Pure in (match, record)."""
        if isinstance(record, Game):
            return record.model_copy(update={"stats": record_match_duration(record.stats, match.duration or 0)})

        participant = _participant_for(match, target)
        outcome = classify(match.outcome, participant.bot_id)
        stats = settle_stats(record.stats, outcome, participant.avg_response_time)
        if isinstance(record, Bot):
            return record.model_copy(update={"stats": stats, "last_run": match.completed_at, "updated_at": self._clock()})
        return record.model_copy(update={"stats": stats, "last_active": match.completed_at})


def _participant_for(match: MatchRecord, target: SettlementTarget) -> MatchParticipant:
    for participant in match.participants:
        if target.kind == EntityKind.BOT and participant.bot_id == target.entity_id:
            return participant
        if target.kind == EntityKind.USER and participant.user_id == target.entity_id:
            return participant
    raise ValueError(f"{target.kind} {target.entity_id} is not a participant of match {match.match_id}")
