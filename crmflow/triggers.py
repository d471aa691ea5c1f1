"""Turn domain events into enrollments."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .analytics import Analytics
from .constants import DEFAULT_EVENT_TOPIC
from .contracts import (
    DomainEvent,
    Enrollment,
    EnrollmentResult,
    ReentryPolicy,
    Workflow,
    WorkflowStatus,
    utcnow,
)
from .engine import EnrollmentEngine
from .errors import WorkflowNotFound
from .persistence.repository import WorkflowRepository
from .transports.base import BaseTransport

logger = logging.getLogger(__name__)


class TriggerIndex:
    """(tenant_id, event_type) -> ids of active workflows listening for it.

    Derived from persisted workflows and never authoritative: the dispatcher
    reloads each candidate before enrolling anyone.
    """

    def __init__(self) -> None:
        self._index: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        self._keys: Dict[str, Tuple[str, str]] = {}

    async def rebuild(self, repository: WorkflowRepository) -> int:
        self._index.clear()
        self._keys.clear()
        for workflow in await repository.list_workflows(status=WorkflowStatus.ACTIVE):
            self.refresh(workflow)
        logger.info(f"Trigger index holds {len(self._keys)} active workflow(s)")
        return len(self._keys)

    def refresh(self, workflow: Workflow) -> None:
        """Re-index one workflow after its status or trigger changed."""
        old_key = self._keys.pop(workflow.id, None)
        if old_key is not None:
            self._index[old_key].discard(workflow.id)
        if workflow.status is WorkflowStatus.ACTIVE:
            key = (workflow.tenant_id, workflow.trigger.event_type)
            self._index[key].add(workflow.id)
            self._keys[workflow.id] = key

    def lookup(self, tenant_id: str, event_type: str) -> List[str]:
        return sorted(self._index.get((tenant_id, event_type), ()))

    def __len__(self) -> int:
        return len(self._keys)


class TriggerDispatcher:
    """Matches events against active workflows and starts enrollments."""

    def __init__(
        self,
        repository: WorkflowRepository,
        engine: EnrollmentEngine,
        index: Optional[TriggerIndex] = None,
        analytics: Optional[Analytics] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self.index = index or TriggerIndex()
        self._analytics = analytics
        self._clock = clock

    async def start(self) -> None:
        await self.index.rebuild(self._repository)

    async def handle_event(self, event: DomainEvent) -> List[EnrollmentResult]:
        results = []
        for workflow_id in self.index.lookup(event.tenant_id, event.event_type):
            workflow = await self._repository.get_workflow(workflow_id)
            if workflow is None or workflow.status is not WorkflowStatus.ACTIVE:
                if workflow is not None:
                    self.index.refresh(workflow)
                continue
            if not workflow.trigger.matches(event.event_type, event.payload):
                continue
            try:
                result = await self.enroll(
                    workflow, event.contact_id, event.payload, source="event"
                )
            except Exception as e:
                logger.exception(
                    f"Enrolling contact {event.contact_id} in workflow {workflow.id} "
                    f"failed for event {event.event_id}"
                )
                result = EnrollmentResult(
                    contact_id=event.contact_id, status="error", reason=str(e)
                )
            results.append(result)
        if not results:
            logger.debug(
                f"Event {event.event_id} ({event.event_type}) matched no workflow"
            )
        return results

    async def enroll(
        self,
        workflow: Workflow,
        contact_id: str,
        payload: Optional[Dict[str, Any]] = None,
        source: str = "manual",
    ) -> EnrollmentResult:
        """Enroll one contact at the workflow's entry step."""
        if workflow.status is not WorkflowStatus.ACTIVE:
            return EnrollmentResult(
                contact_id=contact_id,
                status="error",
                reason=f"workflow is {workflow.status.value}",
            )
        entry = workflow.entry_step()
        if entry is None:
            return EnrollmentResult(
                contact_id=contact_id, status="error", reason="workflow has no entry step"
            )

        now = self._clock()
        enrollment = Enrollment(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            tenant_id=workflow.tenant_id,
            contact_id=contact_id,
            current_step_id=workflow.next_step_id(entry.id),
            trigger_payload=dict(payload or {}),
            source=source,
            enrolled_at=now,
            updated_at=now,
        )
        enrollment.record(entry.id, "triggered", now, now, detail=source)

        exclusive = workflow.trigger.reentry is ReentryPolicy.SKIP
        if not await self._repository.create_enrollment(enrollment, exclusive=exclusive):
            logger.info(
                f"Contact {contact_id} already enrolled in workflow {workflow.id}; skipped"
            )
            return EnrollmentResult(
                contact_id=contact_id, status="skipped", reason="already enrolled"
            )
        logger.info(
            f"Enrolled contact {contact_id} in workflow {workflow.id} "
            f"v{workflow.version} ({source})"
        )

        if self._analytics is not None:
            await self._analytics.record_triggered(enrollment)
        try:
            await self._engine.run(enrollment)
        except Exception:
            # left active; the scheduler's stale sweep picks it up again
            logger.exception(f"Enrollment {enrollment.id} stopped unexpectedly")
        return EnrollmentResult(
            contact_id=contact_id, status="enrolled", enrollment_id=enrollment.id
        )

    async def enroll_many(
        self,
        workflow_id: str,
        contact_ids: Iterable[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> List[EnrollmentResult]:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return [
            await self.enroll(workflow, contact_id, payload, source="manual")
            for contact_id in contact_ids
        ]

    async def listen(
        self,
        transport: BaseTransport,
        topic: str = DEFAULT_EVENT_TOPIC,
        lifespan: Optional[float] = None,
    ) -> None:
        """Consume events from ``transport`` until ``lifespan`` expires."""
        logger.info(f"Listening for events on {topic}")
        async for raw_message, event in transport.subscribe(topic, lifespan=lifespan):
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception(f"Failed to handle event {event.event_id}")
                await transport.nack(raw_message, requeue=False)
                continue
            await transport.ack(raw_message)
