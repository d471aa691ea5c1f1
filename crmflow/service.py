"""Management operations over workflows and enrollments."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from . import definition
from .analytics import Analytics
from .catalog import ACTIONS, TRIGGERS, ActionDescriptor, TriggerDescriptor
from .contracts import (
    Connection,
    Enrollment,
    EnrollmentResult,
    EnrollmentStatus,
    Step,
    TriggerSpec,
    Workflow,
    WorkflowStats,
    WorkflowStatus,
)
from .engine import EnrollmentEngine
from .errors import EnrollmentNotFound, WorkflowNotFound, WorkflowStateError
from .persistence.repository import WorkflowRepository
from .triggers import TriggerDispatcher

logger = logging.getLogger(__name__)


class WorkflowService:
    """Facade used by the CLI and any API layer in front of crmflow.

    Every mutation is persisted before returning and keeps the trigger
    index in step with workflow status.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        triggers: TriggerDispatcher,
        engine: EnrollmentEngine,
        analytics: Analytics,
    ) -> None:
        self._repository = repository
        self._triggers = triggers
        self._engine = engine
        self._analytics = analytics

    # ------------------------------------------------------------------
    # Workflows

    async def create_workflow(
        self,
        tenant_id: str,
        name: str,
        trigger: Union[TriggerSpec, Dict[str, Any]],
        description: Optional[str] = None,
        steps: Sequence[Union[Step, Dict[str, Any]]] = (),
        connections: Sequence[Union[Connection, Dict[str, Any]]] = (),
    ) -> Workflow:
        workflow = Workflow(
            tenant_id=tenant_id,
            name=name,
            description=description,
            trigger=trigger,
            steps=list(steps),
            connections=list(connections),
        )
        await self._repository.save_workflow(workflow)
        logger.info(f"Created workflow {workflow.id} for tenant {tenant_id}")
        return workflow

    async def import_workflow(self, document: Dict[str, Any]) -> Workflow:
        """Store a workflow document as-is; active documents must validate."""
        workflow = Workflow.model_validate(document)
        if workflow.status is WorkflowStatus.ACTIVE:
            definition.validate(workflow)
        existing = await self._repository.get_workflow(workflow.id)
        if existing is not None and existing.version >= workflow.version:
            workflow.version = existing.version + 1
        await self._save(workflow)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    async def list_workflows(
        self, tenant_id: Optional[str] = None, status: Optional[WorkflowStatus] = None
    ) -> List[Workflow]:
        return await self._repository.list_workflows(tenant_id=tenant_id, status=status)

    async def update_workflow(
        self,
        workflow_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        trigger: Union[TriggerSpec, Dict[str, Any], None] = None,
    ) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        if workflow.status is WorkflowStatus.ARCHIVED:
            raise WorkflowStateError(f"workflow {workflow_id} is archived")
        if trigger is not None:
            edited = workflow.model_copy(deep=True)
            edited.trigger = TriggerSpec.model_validate(trigger)
            workflow = definition.apply_structural_edit(workflow, edited)
        if name is not None:
            workflow.name = name
        if description is not None:
            workflow.description = description
        await self._save(workflow)
        return workflow

    async def add_step(
        self,
        workflow_id: str,
        step_type: str,
        config: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> Step:
        workflow = await self.get_workflow(workflow_id)
        step = definition.add_step(workflow, step_type, config, name=name, step_id=step_id)
        await self._save(workflow)
        return step

    async def update_step(
        self,
        workflow_id: str,
        step_id: str,
        config: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> Step:
        workflow = await self.get_workflow(workflow_id)
        step = definition.update_step(workflow, step_id, config, name=name)
        await self._save(workflow)
        return step

    async def remove_step(self, workflow_id: str, step_id: str) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        definition.remove_step(workflow, step_id)
        await self._save(workflow)
        return workflow

    async def connect_steps(
        self,
        workflow_id: str,
        from_step_id: str,
        to_step_id: str,
        branch: Optional[str] = None,
    ) -> Connection:
        workflow = await self.get_workflow(workflow_id)
        conn = definition.connect_steps(workflow, from_step_id, to_step_id, branch)
        await self._save(workflow)
        return conn

    async def disconnect_steps(
        self, workflow_id: str, from_step_id: str, branch: Optional[str] = None
    ) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        definition.disconnect_steps(workflow, from_step_id, branch)
        await self._save(workflow)
        return workflow

    async def duplicate_workflow(self, workflow_id: str, name: Optional[str] = None) -> Workflow:
        copy = definition.duplicate(await self.get_workflow(workflow_id), name)
        await self._repository.save_workflow(copy)
        logger.info(f"Duplicated workflow {workflow_id} as {copy.id}")
        return copy

    async def activate_workflow(self, workflow_id: str) -> Workflow:
        workflow = definition.activate(await self.get_workflow(workflow_id))
        await self._save(workflow)
        return workflow

    async def pause_workflow(self, workflow_id: str) -> Workflow:
        workflow = definition.pause(await self.get_workflow(workflow_id))
        await self._save(workflow)
        return workflow

    async def archive_workflow(
        self, workflow_id: str, cancel_in_flight: bool = False
    ) -> Workflow:
        workflow = definition.archive(await self.get_workflow(workflow_id), cancel_in_flight)
        await self._save(workflow)
        return workflow

    async def _save(self, workflow: Workflow) -> None:
        await self._repository.save_workflow(workflow)
        self._triggers.index.refresh(workflow)

    # ------------------------------------------------------------------
    # Enrollments

    async def enroll_contacts(
        self,
        workflow_id: str,
        contact_ids: Iterable[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> List[EnrollmentResult]:
        return await self._triggers.enroll_many(workflow_id, contact_ids, payload)

    async def list_enrollments(
        self,
        workflow_id: str,
        status: Optional[EnrollmentStatus] = None,
        contact_id: Optional[str] = None,
        enrolled_after: Optional[datetime] = None,
        enrolled_before: Optional[datetime] = None,
    ) -> List[Enrollment]:
        await self.get_workflow(workflow_id)
        return await self._repository.list_enrollments(
            workflow_id=workflow_id,
            status=status,
            contact_id=contact_id,
            enrolled_after=enrolled_after,
            enrolled_before=enrolled_before,
        )

    async def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = await self._repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        return enrollment

    async def cancel_enrollment(
        self, enrollment_id: str, reason: str = "cancelled by user"
    ) -> Enrollment:
        """Cancel an enrollment; already-terminal ones are returned unchanged."""
        enrollment = await self._engine.cancel(enrollment_id, reason)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        return enrollment

    # ------------------------------------------------------------------
    # Analytics and catalog

    async def get_analytics(
        self,
        workflow_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> WorkflowStats:
        await self.get_workflow(workflow_id)
        return await self._analytics.summary(workflow_id, since, until)

    def list_triggers(self) -> List[TriggerDescriptor]:
        return list(TRIGGERS)

    def list_actions(self) -> List[ActionDescriptor]:
        return list(ACTIONS)
