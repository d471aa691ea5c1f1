"""Per-workflow enrollment counters."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .contracts import Enrollment, EnrollmentStatus, WorkflowStats, utcnow
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

TRIGGERED = "triggered"


class Analytics:
    """Counts triggered and terminal enrollments.

    Counts are backed by a ledger keyed on (enrollment, kind), so each
    enrollment is counted at most once per kind however many times an
    observation is replayed.
    """

    def __init__(
        self, repository: WorkflowRepository, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self._repository = repository
        self._clock = clock

    async def record_triggered(self, enrollment: Enrollment) -> bool:
        return await self._repository.record_stat_event(
            enrollment.workflow_id, enrollment.id, TRIGGERED, enrollment.enrolled_at
        )

    async def observe(self, enrollment: Enrollment) -> bool:
        """Count a terminal transition; non-terminal enrollments are ignored."""
        if not enrollment.is_terminal:
            return False
        occurred_at = enrollment.finished_at or self._clock()
        recorded = await self._repository.record_stat_event(
            enrollment.workflow_id, enrollment.id, enrollment.status.value, occurred_at
        )
        if not recorded:
            logger.debug(
                f"Enrollment {enrollment.id} already counted as {enrollment.status.value}"
            )
        return recorded

    async def summary(
        self,
        workflow_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> WorkflowStats:
        counts = await self._repository.count_stat_events(workflow_id, since, until)
        active = 0
        for status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.WAITING):
            active += len(
                await self._repository.list_enrollments(
                    workflow_id=workflow_id,
                    status=status,
                    enrolled_after=since,
                    enrolled_before=until,
                )
            )
        return WorkflowStats(
            workflow_id=workflow_id,
            triggered=counts.get(TRIGGERED, 0),
            completed=counts.get(EnrollmentStatus.COMPLETED.value, 0),
            failed=counts.get(EnrollmentStatus.FAILED.value, 0),
            cancelled=counts.get(EnrollmentStatus.CANCELLED.value, 0),
            active=active,
            since=since,
            until=until,
        )

    async def rebuild(self, workflow_id: str) -> int:
        """Backfill the ledger from stored enrollments; returns new entries."""
        added = 0
        for enrollment in await self._repository.list_enrollments(workflow_id=workflow_id):
            if await self.record_triggered(enrollment):
                added += 1
            if await self.observe(enrollment):
                added += 1
        if added:
            logger.info(f"Backfilled {added} stat event(s) for workflow {workflow_id}")
        return added
