"""Workflow counters."""

import pytest

from crmflow.analytics import Analytics
from crmflow.contracts import DomainEvent, Enrollment, EnrollmentStatus
from crmflow.errors import WorkflowNotFound


def _signup(contact_id):
    return DomainEvent(event_type="contact_created", tenant_id="t1", contact_id=contact_id)


@pytest.mark.asyncio
async def test_summary_counts_each_outcome(runtime, capabilities, clock, lead_workflow):
    await runtime.repository.save_workflow(lead_workflow)
    await runtime.start()

    capabilities.add_contact("c3", first_name="Cy")
    for contact_id in ("c1", "c2", "c3"):
        await runtime.triggers.handle_event(_signup(contact_id))

    stats = await runtime.service.get_analytics(lead_workflow.id)
    assert (stats.triggered, stats.active, stats.completed) == (3, 3, 0)

    (c3,) = await runtime.repository.list_enrollments(contact_id="c3")
    await runtime.service.cancel_enrollment(c3.id)
    clock.advance(days=1)
    await runtime.scheduler.tick()

    stats = await runtime.service.get_analytics(lead_workflow.id)
    assert stats.triggered == 3
    assert stats.completed == 2
    assert stats.cancelled == 1
    assert stats.failed == 0
    assert stats.active == 0
    assert stats.completion_rate == pytest.approx(2 / 3, abs=1e-4)


@pytest.mark.asyncio
async def test_summary_window(runtime, clock, lead_workflow):
    await runtime.repository.save_workflow(lead_workflow)
    await runtime.start()
    start = clock.now

    await runtime.triggers.handle_event(_signup("c1"))
    clock.advance(days=3)
    await runtime.triggers.handle_event(_signup("c2"))

    stats = await runtime.analytics.summary(lead_workflow.id, since=start, until=start.replace(day=5))
    assert stats.triggered == 1
    assert stats.active == 1
    assert stats.since == start


@pytest.mark.asyncio
async def test_observe_is_idempotent(repository, clock):
    analytics = Analytics(repository, clock=clock)
    enrollment = Enrollment(
        workflow_id="wf",
        workflow_version=1,
        tenant_id="t1",
        contact_id="c1",
        enrolled_at=clock.now,
    )
    assert await analytics.record_triggered(enrollment)
    assert not await analytics.observe(enrollment)

    enrollment.status = EnrollmentStatus.FAILED
    assert await analytics.observe(enrollment)
    assert not await analytics.observe(enrollment)
    assert not await analytics.record_triggered(enrollment)

    stats = await analytics.summary("wf")
    assert (stats.triggered, stats.failed) == (1, 1)
    assert stats.completion_rate == 0.0


@pytest.mark.asyncio
async def test_rebuild_backfills_missing_events(repository, clock):
    analytics = Analytics(repository, clock=clock)
    for contact_id, status in (("c1", EnrollmentStatus.COMPLETED), ("c2", EnrollmentStatus.WAITING)):
        await repository.create_enrollment(
            Enrollment(
                workflow_id="wf",
                workflow_version=1,
                tenant_id="t1",
                contact_id=contact_id,
                status=status,
                enrolled_at=clock.now,
                finished_at=clock.now if status is EnrollmentStatus.COMPLETED else None,
            )
        )

    assert await analytics.rebuild("wf") == 3
    assert await analytics.rebuild("wf") == 0
    stats = await analytics.summary("wf")
    assert (stats.triggered, stats.completed, stats.active) == (2, 1, 1)
    assert stats.completion_rate == 0.5


@pytest.mark.asyncio
async def test_analytics_for_unknown_workflow(runtime):
    with pytest.raises(WorkflowNotFound):
        await runtime.service.get_analytics("missing")
