"""Resume enrollments whose wait or retry delay has elapsed."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .contracts import Enrollment, EnrollmentStatus, WorkflowStatus, utcnow
from .engine import EnrollmentEngine
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


class Scheduler:
    """Polls the repository for due enrollments and hands them to the engine.

    Several schedulers may poll the same store. An enrollment is claimed by
    flipping it to ``active`` with a revision compare-and-set; only the
    instance whose write lands resumes it, so each due time is acted on once.
    Claimed enrollments are marked ``active`` with no ``resume_at`` and are
    picked up again by the stale sweep if the claiming process dies.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        engine: EnrollmentEngine,
        poll_interval: float = 5.0,
        batch_size: int = 100,
        stale_after: float = 600.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.stale_after = stale_after
        self._clock = clock

    async def tick(self) -> int:
        """Process one batch of due enrollments; returns how many were resumed."""
        now = self._clock()
        due = await self._repository.due_enrollments(
            now, now - timedelta(seconds=self.stale_after), limit=self.batch_size
        )
        resumed = 0
        for enrollment in due:
            try:
                if await self._resume_one(enrollment):
                    resumed += 1
            except Exception:
                logger.exception(f"Failed to resume enrollment {enrollment.id}")
        if resumed:
            logger.info(f"Resumed {resumed} of {len(due)} due enrollment(s)")
        return resumed

    async def recover(self, max_batches: int = 10) -> int:
        """Catch up on enrollments that fell due while no scheduler ran."""
        total = 0
        for _ in range(max_batches):
            resumed = await self.tick()
            total += resumed
            if resumed < self.batch_size:
                break
        if total:
            logger.info(f"Recovered {total} enrollment(s) on startup")
        return total

    async def claim(self, enrollment: Enrollment) -> bool:
        """Take ownership of a due enrollment."""
        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.resume_at = None
        enrollment.updated_at = self._clock()
        return await self._repository.save_enrollment(enrollment)

    async def _resume_one(self, enrollment: Enrollment) -> bool:
        from_wait = enrollment.status is EnrollmentStatus.WAITING
        if not await self.claim(enrollment):
            logger.debug(f"Enrollment {enrollment.id} already claimed elsewhere")
            return False

        workflow = await self._repository.get_workflow(enrollment.workflow_id)
        if (
            workflow is not None
            and workflow.status is WorkflowStatus.ARCHIVED
            and workflow.cancel_on_archive
        ):
            await self._engine.cancel(enrollment.id, reason="workflow archived")
            return True

        await self._engine.resume(enrollment, from_wait=from_wait)
        return True

    async def run(
        self,
        lifespan: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Poll until ``lifespan`` seconds pass or ``stop_event`` is set."""
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None
        await self.recover()
        logger.info(f"Scheduler polling every {self.poll_interval}s")

        while True:
            if stop_event is not None and stop_event.is_set():
                break
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")

            if stop_event is not None:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(self.poll_interval)
        logger.info("Scheduler stopped")
