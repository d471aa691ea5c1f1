"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Tuple

from ..contracts import (
    Enrollment,
    EnrollmentStatus,
    Workflow,
    WorkflowStatus,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied in and out so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._versions: Dict[Tuple[str, int], Workflow] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._stat_events: Dict[Tuple[str, str], Tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        snapshot = workflow.model_copy(deep=True)
        self._workflows[workflow.id] = snapshot
        self._versions[(workflow.id, workflow.version)] = snapshot.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def get_workflow_version(
        self, workflow_id: str, version: int
    ) -> Workflow | None:
        wf = self._versions.get((workflow_id, version))
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self,
        tenant_id: str | None = None,
        status: WorkflowStatus | None = None,
    ) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (tenant_id is None or wf.tenant_id == tenant_id)
            and (status is None or wf.status == status)
        ]

    # ------------------------------------------------------------------
    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> bool:
        async with self._lock:
            if exclusive:
                for existing in self._enrollments.values():
                    if (
                        existing.workflow_id == enrollment.workflow_id
                        and existing.contact_id == enrollment.contact_id
                        and not existing.is_terminal
                    ):
                        return False
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
            return True

    async def save_enrollment(self, enrollment: Enrollment) -> bool:
        async with self._lock:
            stored = self._enrollments.get(enrollment.id)
            if stored is None or stored.revision != enrollment.revision:
                return False
            enrollment.revision += 1
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
            return True

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        e = self._enrollments.get(enrollment_id)
        return e.model_copy(deep=True) if e else None

    async def list_enrollments(
        self,
        workflow_id: str | None = None,
        status: EnrollmentStatus | None = None,
        contact_id: str | None = None,
        enrolled_after: datetime | None = None,
        enrolled_before: datetime | None = None,
    ) -> list[Enrollment]:
        matches = [
            e
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
            and (contact_id is None or e.contact_id == contact_id)
            and (enrolled_after is None or e.enrolled_at >= enrolled_after)
            and (enrolled_before is None or e.enrolled_at < enrolled_before)
        ]
        matches.sort(key=lambda e: e.enrolled_at)
        return [e.model_copy(deep=True) for e in matches]

    async def due_enrollments(
        self, now: datetime, stale_before: datetime, limit: int = 100
    ) -> list[Enrollment]:
        due = []
        for e in self._enrollments.values():
            if e.status == EnrollmentStatus.WAITING:
                ready = e.resume_at is not None and e.resume_at <= now
            elif e.status == EnrollmentStatus.ACTIVE:
                if e.resume_at is not None:
                    ready = e.resume_at <= now
                else:
                    ready = e.updated_at <= stale_before
            else:
                ready = False
            if ready:
                due.append(e)
        due.sort(key=lambda e: e.resume_at or e.updated_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    # ------------------------------------------------------------------
    async def record_stat_event(
        self, workflow_id: str, enrollment_id: str, kind: str, occurred_at: datetime
    ) -> bool:
        async with self._lock:
            key = (enrollment_id, kind)
            if key in self._stat_events:
                return False
            self._stat_events[key] = (workflow_id, occurred_at)
            return True

    async def count_stat_events(
        self,
        workflow_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, int]:
        counts: dict[str, int] = {}
        for (_, kind), (wf_id, occurred_at) in self._stat_events.items():
            if wf_id != workflow_id:
                continue
            if since is not None and occurred_at < since:
                continue
            if until is not None and occurred_at >= until:
                continue
            counts[kind] = counts.get(kind, 0) + 1
        return counts
