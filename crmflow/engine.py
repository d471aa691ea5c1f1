"""Enrollment state machine.

Each call to :meth:`EnrollmentEngine.advance` executes exactly one step of
one enrollment and persists the result. Waits never sleep: they record
``resume_at`` and hand the enrollment to the scheduler. Every write is a
compare-and-set on ``Enrollment.revision``; when a write is lost (a
cancellation or another worker got there first) the stored state wins and
the run stops.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .actions import ActionDispatcher
from .capabilities.base import ContactDirectory
from .conditions import build_context, evaluate, is_satisfied
from .config import RetryConfig
from .constants import BRANCH_FALSE, BRANCH_NO_VALUE, DEFAULT_MAX_STEPS_PER_RUN
from .contracts import (
    Enrollment,
    EnrollmentStatus,
    Step,
    StepType,
    Workflow,
    utcnow,
)
from .errors import ConcurrentModification
from .persistence.repository import WorkflowRepository
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

TerminalListener = Callable[[Enrollment], Awaitable[None]]


def select_branch(workflow: Workflow, step_id: str, label: str) -> Optional[str]:
    """Pick the edge for ``label``; ``no_value`` falls back to ``false``,
    then any label falls back to the default edge."""
    candidates: List[Optional[str]] = [label]
    if label == BRANCH_NO_VALUE:
        candidates.append(BRANCH_FALSE)
    candidates.append(None)
    for branch in candidates:
        target = workflow.next_step_id(step_id, branch)
        if target is not None:
            return target
    return None


class EnrollmentEngine:
    """Advances enrollments through their pinned workflow version."""

    def __init__(
        self,
        repository: WorkflowRepository,
        dispatcher: ActionDispatcher,
        contacts: Optional[ContactDirectory] = None,
        retry: Optional[RetryConfig] = None,
        max_steps_per_run: int = DEFAULT_MAX_STEPS_PER_RUN,
        clock: Callable[[], datetime] = utcnow,
        listeners: Sequence[TerminalListener] = (),
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._contacts = contacts
        self._retry = retry or RetryConfig()
        self._max_steps = max_steps_per_run
        self._clock = clock
        self._listeners: List[TerminalListener] = list(listeners)
        self._versions: Dict[Tuple[str, int], Workflow] = {}

    def add_listener(self, listener: TerminalListener) -> None:
        """Register a coroutine called once per terminal transition."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Public API

    async def run(self, enrollment: Enrollment) -> Enrollment:
        """Advance until the enrollment stops being runnable right now."""
        current = enrollment
        steps = 0
        while current.status is EnrollmentStatus.ACTIVE and current.resume_at is None:
            if steps >= self._max_steps:
                logger.warning(
                    f"Enrollment {current.id} hit {self._max_steps} steps in one run; "
                    "re-queueing"
                )
                current.resume_at = self._clock()
                return await self._persist(current)
            result = await self.advance(current)
            steps += 1
            if result is not current:
                return result
        return current

    async def resume(self, enrollment: Enrollment, from_wait: bool) -> Enrollment:
        """Continue a claimed enrollment.

        ``from_wait`` means the scheduler woke it from a wait step, which is
        then left along its outgoing edge; otherwise the current step runs
        again (a retry or an interrupted run). An interrupted run that stopped
        on a wait already entered also leaves it, see :meth:`_run_wait`.
        """
        if from_wait:
            workflow = await self.load_workflow(enrollment)
            step = workflow.get_step(enrollment.current_step_id) if workflow else None
            if workflow is not None and step is not None and step.type is StepType.WAIT:
                enrollment = await self._leave_wait(enrollment, workflow, step, self._clock())
        return await self.run(enrollment)

    async def advance(self, enrollment: Enrollment) -> Enrollment:
        """Execute exactly one step transition.

        Returns the same object, mutated, unless the write was lost; then
        the stored enrollment is returned instead.
        """
        if enrollment.status is not EnrollmentStatus.ACTIVE:
            return enrollment
        now = self._clock()

        workflow = await self.load_workflow(enrollment)
        if workflow is None:
            return await self._finish(
                enrollment,
                EnrollmentStatus.FAILED,
                now,
                detail=f"workflow {enrollment.workflow_id} v{enrollment.workflow_version} not found",
            )
        if enrollment.current_step_id is None:
            return await self._finish(
                enrollment, EnrollmentStatus.COMPLETED, now, detail="end of workflow"
            )
        step = workflow.get_step(enrollment.current_step_id)
        if step is None:
            return await self._finish(
                enrollment,
                EnrollmentStatus.FAILED,
                now,
                detail=f"unknown step {enrollment.current_step_id}",
            )

        if step.type is StepType.ACTION:
            return await self._run_action(enrollment, workflow, step, now)
        if step.type is StepType.CONDITION:
            return await self._run_condition(enrollment, workflow, step, now)
        if step.type is StepType.WAIT:
            return await self._run_wait(enrollment, workflow, step, now)
        if step.type is StepType.GOAL:
            return await self._run_goal(enrollment, workflow, step, now)
        enrollment.record(step.id, "passed", now, now)
        return await self._move_on(enrollment, workflow, step.id, now)

    async def cancel(self, enrollment_id: str, reason: str = "cancelled") -> Optional[Enrollment]:
        """Cancel a non-terminal enrollment; returns ``None`` if unknown."""
        for _ in range(5):
            enrollment = await self._repository.get_enrollment(enrollment_id)
            if enrollment is None or enrollment.is_terminal:
                return enrollment
            now = self._clock()
            enrollment.status = EnrollmentStatus.CANCELLED
            enrollment.resume_at = None
            enrollment.finished_at = now
            enrollment.updated_at = now
            enrollment.record(enrollment.current_step_id, "cancelled", now, now, reason)
            if await self._repository.save_enrollment(enrollment):
                logger.info(f"Cancelled enrollment {enrollment.id}: {reason}")
                await self._notify(enrollment)
                return enrollment
        raise ConcurrentModification(f"could not cancel enrollment {enrollment_id}")

    async def load_workflow(self, enrollment: Enrollment) -> Optional[Workflow]:
        key = (enrollment.workflow_id, enrollment.workflow_version)
        if key not in self._versions:
            workflow = await self._repository.get_workflow_version(*key)
            if workflow is None:
                return None
            # versions are immutable once enrollments point at them
            self._versions[key] = workflow
        return self._versions[key]

    async def context_for(self, enrollment: Enrollment) -> Dict[str, Any]:
        contact = None
        if self._contacts is not None:
            contact = await self._contacts.get_contact(enrollment.contact_id)
        return build_context(
            contact,
            enrollment.trigger_payload,
            {
                "id": enrollment.id,
                "workflow_id": enrollment.workflow_id,
                "contact_id": enrollment.contact_id,
                "source": enrollment.source,
            },
        )

    # ------------------------------------------------------------------
    # Step handlers

    async def _run_action(
        self, enrollment: Enrollment, workflow: Workflow, step: Step, now: datetime
    ) -> Enrollment:
        action = step.config
        context = await self.context_for(enrollment)
        outcome = await self._dispatcher.dispatch(action, enrollment.contact_id, context)
        exited = self._clock()

        if outcome.succeeded:
            enrollment.attempts = 0
            enrollment.record(step.id, outcome.status.value, now, exited)
            return await self._move_on(enrollment, workflow, step.id, exited)

        enrollment.attempts += 1
        enrollment.last_error = outcome.reason
        max_attempts = self._retry.attempts_for(action.kind.value, action.max_attempts)
        if outcome.retryable and enrollment.attempts < max_attempts:
            delay = compute_backoff(
                enrollment.attempts,
                base=self._retry.base_delay_seconds,
                factor=self._retry.factor,
                max_delay=self._retry.max_delay_seconds,
                jitter=self._retry.jitter_seconds,
            )
            enrollment.resume_at = exited + timedelta(seconds=delay)
            enrollment.record(
                step.id,
                "retry",
                now,
                exited,
                f"attempt {enrollment.attempts}/{max_attempts}: {outcome.reason}",
            )
            logger.warning(
                f"Enrollment {enrollment.id} step {step.id} failed "
                f"(attempt {enrollment.attempts}/{max_attempts}), retry at "
                f"{enrollment.resume_at.isoformat()}: {outcome.reason}"
            )
            return await self._persist(enrollment)

        logger.error(
            f"Enrollment {enrollment.id} failed at step {step.id} after "
            f"{enrollment.attempts} attempt(s): {outcome.reason}"
        )
        return await self._finish(
            enrollment,
            EnrollmentStatus.FAILED,
            exited,
            step_id=step.id,
            detail=outcome.reason,
            entered_at=now,
        )

    async def _run_condition(
        self, enrollment: Enrollment, workflow: Workflow, step: Step, now: datetime
    ) -> Enrollment:
        context = await self.context_for(enrollment)
        label = evaluate(step.config.expression, context)
        enrollment.record(step.id, label, now, now)
        target = select_branch(workflow, step.id, label)
        if target is None:
            return await self._finish(
                enrollment,
                EnrollmentStatus.COMPLETED,
                now,
                detail=f"dead end: no edge for branch {label!r} at {step.id}",
            )
        enrollment.current_step_id = target
        return await self._persist(enrollment)

    async def _run_wait(
        self, enrollment: Enrollment, workflow: Workflow, step: Step, now: datetime
    ) -> Enrollment:
        last = enrollment.history[-1] if enrollment.history else None
        if last is not None and last.step_id == step.id and last.outcome == "waiting":
            # claimed after its due time, then the claiming run was lost
            return await self._leave_wait(enrollment, workflow, step, now)
        enrollment.resume_at = now + step.config.as_timedelta()
        enrollment.status = EnrollmentStatus.WAITING
        enrollment.record(
            step.id, "waiting", now, detail=f"until {enrollment.resume_at.isoformat()}"
        )
        return await self._persist(enrollment)

    async def _leave_wait(
        self, enrollment: Enrollment, workflow: Workflow, step: Step, now: datetime
    ) -> Enrollment:
        enrollment.record(step.id, "resumed", now, now)
        return await self._move_on(enrollment, workflow, step.id, now)

    async def _run_goal(
        self, enrollment: Enrollment, workflow: Workflow, step: Step, now: datetime
    ) -> Enrollment:
        context = await self.context_for(enrollment)
        if is_satisfied(step.config.expression, context):
            return await self._finish(
                enrollment,
                EnrollmentStatus.COMPLETED,
                now,
                step_id=step.id,
                outcome="goal_met",
            )
        enrollment.record(step.id, "goal_pending", now, now)
        return await self._move_on(enrollment, workflow, step.id, now)

    # ------------------------------------------------------------------
    # Transitions

    async def _move_on(
        self, enrollment: Enrollment, workflow: Workflow, step_id: str, now: datetime
    ) -> Enrollment:
        target = workflow.next_step_id(step_id)
        if target is None:
            return await self._finish(
                enrollment, EnrollmentStatus.COMPLETED, now, detail="end of workflow"
            )
        enrollment.current_step_id = target
        return await self._persist(enrollment)

    async def _finish(
        self,
        enrollment: Enrollment,
        status: EnrollmentStatus,
        now: datetime,
        step_id: Optional[str] = None,
        detail: Optional[str] = None,
        outcome: Optional[str] = None,
        entered_at: Optional[datetime] = None,
    ) -> Enrollment:
        enrollment.status = status
        enrollment.resume_at = None
        enrollment.finished_at = now
        enrollment.record(step_id, outcome or status.value, entered_at or now, now, detail)
        result = await self._persist(enrollment)
        if result is enrollment:
            logger.info(f"Enrollment {enrollment.id} {status.value}")
            await self._notify(enrollment)
        return result

    async def _persist(self, enrollment: Enrollment) -> Enrollment:
        enrollment.updated_at = self._clock()
        if await self._repository.save_enrollment(enrollment):
            return enrollment
        stored = await self._repository.get_enrollment(enrollment.id)
        logger.info(
            f"Enrollment {enrollment.id} changed concurrently "
            f"(stored status={stored.status.value if stored else 'missing'}); stopping"
        )
        return stored if stored is not None else enrollment

    async def _notify(self, enrollment: Enrollment) -> None:
        for listener in self._listeners:
            try:
                await listener(enrollment)
            except Exception:
                logger.exception(
                    f"Terminal listener failed for enrollment {enrollment.id}"
                )
