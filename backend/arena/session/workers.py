"""Background completion workers and the settlement repair loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel

from arena.logic.exceptions import ArenaError, SettlementPartiallyApplied
from shared.dal.exceptions import RepositoryError
from shared.dal.models import MatchResult

if TYPE_CHECKING:
    from arena.session.match_service import MatchService

logger = logging.getLogger(__name__)


class MatchCompletionEvent(BaseModel, frozen=True):
    """A game runner's report that a match has finished."""

    match_id: str
    winner_bot_id: str | None = None
    result: MatchResult = MatchResult.COMPLETED
    scores: dict[str, int] = {}


class SettlementWorkerPool:
    """Complete and settle matches off the caller's path.

    Completion events are queued and drained by a fixed number of worker
    tasks. Events for different matches settle concurrently; events for the
    same match serialize on the match lock in MatchService. A separate
    repair loop periodically retries matches whose settlement was left
    incomplete.
    """

    def __init__(
        self,
        matches: MatchService,
        *,
        workers: int = 4,
        repair_interval: float = 30,
        repair_batch_size: int = 100,
    ) -> None:
        self._matches = matches
        self._worker_count = workers
        self._repair_interval = repair_interval
        self._repair_batch_size = repair_batch_size
        self._queue: asyncio.Queue[MatchCompletionEvent] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._repair_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def start(self) -> None:
        """Start worker and repair tasks. Idempotent."""
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"settlement-worker-{i}") for i in range(self._worker_count)
        ]
        self._repair_task = asyncio.create_task(self._repair_loop(), name="settlement-repair")
        logger.info("settlement workers started, workers=%d", self._worker_count)

    async def stop(self) -> None:
        """Cancel all tasks. Queued events that were not picked up are dropped."""
        tasks = [*self._workers]
        if self._repair_task is not None:
            tasks.append(self._repair_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        self._repair_task = None

    async def submit(self, event: MatchCompletionEvent) -> None:
        await self._queue.put(event)

    async def join(self) -> None:
        """Wait until every submitted event has been processed."""
        await self._queue.join()

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._matches.complete(
                    event.match_id,
                    winner_bot_id=event.winner_bot_id,
                    result=event.result,
                    scores=event.scores,
                )
            except SettlementPartiallyApplied as e:
                logger.warning("worker %d: settlement incomplete, left for repair: %s", worker_id, e)
            except (ArenaError, RepositoryError) as e:
                logger.warning("worker %d: completion of %s rejected: %s", worker_id, event.match_id, e)
            except Exception:
                logger.exception("worker %d: unexpected error completing %s", worker_id, event.match_id)
            finally:
                self._queue.task_done()

    async def _repair_loop(self) -> None:
        """Periodically retry matches that still carry a pending-settlement marker."""
        while True:
            await asyncio.sleep(self._repair_interval)
            try:
                await self._matches.repair_pending(self._repair_batch_size)
            except Exception:
                logger.exception("settlement repair loop encountered an error")
