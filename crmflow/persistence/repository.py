"""Repository abstraction for workflow and enrollment persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..contracts import Enrollment, EnrollmentStatus, Workflow, WorkflowStatus


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Enrollment writes are compare-and-set on ``Enrollment.revision``: a save
    only lands when the stored revision equals the in-memory one, and bumps
    it on success. This is the single concurrency primitive the engine,
    scheduler and management service rely on.
    """

    async def save_workflow(self, workflow: Workflow) -> None:
        """Upsert the workflow and snapshot its current version."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Return the latest state of a workflow."""

    async def get_workflow_version(
        self, workflow_id: str, version: int
    ) -> Workflow | None:
        """Return the snapshot of a specific workflow version."""

    async def list_workflows(
        self,
        tenant_id: str | None = None,
        status: WorkflowStatus | None = None,
    ) -> list[Workflow]:
        """Return workflows, optionally filtered."""

    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> bool:
        """Insert a new enrollment.

        With ``exclusive`` the insert is refused (returns ``False``) when the
        contact already has a non-terminal enrollment in the same workflow.
        Check and insert are atomic per (workflow, contact).
        """

    async def save_enrollment(self, enrollment: Enrollment) -> bool:
        """Compare-and-set write; ``False`` when the stored revision moved on."""

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        """Retrieve an enrollment by id."""

    async def list_enrollments(
        self,
        workflow_id: str | None = None,
        status: EnrollmentStatus | None = None,
        contact_id: str | None = None,
        enrolled_after: datetime | None = None,
        enrolled_before: datetime | None = None,
    ) -> list[Enrollment]:
        """Return enrollments ordered by enrollment time."""

    async def due_enrollments(
        self, now: datetime, stale_before: datetime, limit: int = 100
    ) -> list[Enrollment]:
        """Enrollments the scheduler should pick up.

        Waiting ones with ``resume_at <= now``, active ones with a due retry,
        and active ones without ``resume_at`` last written before
        ``stale_before`` (runs interrupted by a crash).
        """

    async def record_stat_event(
        self, workflow_id: str, enrollment_id: str, kind: str, occurred_at: datetime
    ) -> bool:
        """Record a counter event once per (enrollment, kind)."""

    async def count_stat_events(
        self,
        workflow_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, int]:
        """Count recorded events per kind for a workflow."""
