"""Optimistic read-compute-write loop over versioned entity records."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, TypeVar

import structlog

from arena.logic.exceptions import ConcurrentUpdateExhausted
from shared.dal.exceptions import VersionConflictError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from shared.dal.models import SettlementTarget

logger = structlog.get_logger()


class Versioned(Protocol):
    @property
    def version(self) -> int: ...


RecordT = TypeVar("RecordT", bound=Versioned)
ResultT = TypeVar("ResultT")


async def update_with_retry(
    target: SettlementTarget,
    load: Callable[[], Awaitable[RecordT]],
    mutate: Callable[[RecordT], RecordT],
    write: Callable[[RecordT, int], Awaitable[ResultT]],
    *,
    attempts: int,
) -> ResultT:
    """Re-run load -> mutate -> write until the write sees the version it read.

    `mutate` must be a pure function of the loaded record: it is called again
    against the fresh record after every conflict. Raises
    ConcurrentUpdateExhausted once `attempts` writes have conflicted.
    """
    for attempt in range(1, attempts + 1):
        current = await load()
        try:
            return await write(mutate(current), current.version)
        except VersionConflictError:
            logger.debug(
                "version conflict, retrying",
                kind=target.kind,
                entity_id=target.entity_id,
                attempt=attempt,
            )
    logger.warning("update retries exhausted", kind=target.kind, entity_id=target.entity_id, attempts=attempts)
    raise ConcurrentUpdateExhausted(target=target, attempts=attempts)
