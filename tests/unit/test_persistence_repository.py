from datetime import datetime, timedelta, timezone

import pytest

from crmflow.contracts import Enrollment, EnrollmentStatus, WorkflowStatus
from crmflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "crmflow.db")
    return InMemoryWorkflowRepository()


def _enrollment(workflow, contact_id="c1", **kwargs):
    kwargs.setdefault("enrolled_at", T0)
    kwargs.setdefault("updated_at", T0)
    return Enrollment(
        workflow_id=workflow.id,
        workflow_version=workflow.version,
        tenant_id=workflow.tenant_id,
        contact_id=contact_id,
        current_step_id="tag",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_workflow_versions_are_snapshots(repo, lead_workflow):
    await repo.save_workflow(lead_workflow)
    lead_workflow.steps = lead_workflow.steps[:1]
    lead_workflow.connections = []
    lead_workflow.version = 2
    await repo.save_workflow(lead_workflow)

    latest = await repo.get_workflow(lead_workflow.id)
    assert latest.version == 2
    assert len(latest.steps) == 1

    v1 = await repo.get_workflow_version(lead_workflow.id, 1)
    assert len(v1.steps) == 5
    assert v1.get_step("delay").config.as_timedelta() == timedelta(days=1)
    assert await repo.get_workflow_version(lead_workflow.id, 3) is None
    assert await repo.get_workflow("missing") is None


@pytest.mark.asyncio
async def test_list_workflows_filters(repo, make_workflow, lead_workflow):
    other = make_workflow(steps=[], connections=[], tenant_id="t2", status=WorkflowStatus.DRAFT)
    await repo.save_workflow(lead_workflow)
    await repo.save_workflow(other)

    assert {w.id for w in await repo.list_workflows()} == {lead_workflow.id, other.id}
    assert [w.id for w in await repo.list_workflows(tenant_id="t2")] == [other.id]
    assert [w.id for w in await repo.list_workflows(status=WorkflowStatus.ACTIVE)] == [
        lead_workflow.id
    ]


@pytest.mark.asyncio
async def test_exclusive_create(repo, lead_workflow):
    first = _enrollment(lead_workflow)
    assert await repo.create_enrollment(first, exclusive=True)
    assert not await repo.create_enrollment(_enrollment(lead_workflow), exclusive=True)
    # re-entry allowed
    assert await repo.create_enrollment(_enrollment(lead_workflow), exclusive=False)
    # another contact is unaffected
    assert await repo.create_enrollment(_enrollment(lead_workflow, "c2"), exclusive=True)

    for e in await repo.list_enrollments(workflow_id=lead_workflow.id, contact_id="c1"):
        e.status = EnrollmentStatus.COMPLETED
        assert await repo.save_enrollment(e)
    assert await repo.create_enrollment(_enrollment(lead_workflow), exclusive=True)


@pytest.mark.asyncio
async def test_save_is_compare_and_set(repo, lead_workflow):
    enrollment = _enrollment(lead_workflow)
    await repo.create_enrollment(enrollment)

    copy_a = await repo.get_enrollment(enrollment.id)
    copy_b = await repo.get_enrollment(enrollment.id)

    copy_a.status = EnrollmentStatus.CANCELLED
    assert await repo.save_enrollment(copy_a)
    assert copy_a.revision == 1

    copy_b.current_step_id = "delay"
    assert not await repo.save_enrollment(copy_b)
    assert copy_b.revision == 0

    stored = await repo.get_enrollment(enrollment.id)
    assert stored.status is EnrollmentStatus.CANCELLED
    assert stored.current_step_id == "tag"
    assert stored.revision == 1


@pytest.mark.asyncio
async def test_history_round_trips(repo, lead_workflow):
    enrollment = _enrollment(lead_workflow, trigger_payload={"form_id": "f1"})
    enrollment.record("entry", "triggered", T0, T0, "event")
    enrollment.record("delay", "waiting", T0 + timedelta(seconds=1))
    await repo.create_enrollment(enrollment)

    stored = await repo.get_enrollment(enrollment.id)
    assert stored.trigger_payload == {"form_id": "f1"}
    assert [(h.step_id, h.outcome) for h in stored.history] == [
        ("entry", "triggered"),
        ("delay", "waiting"),
    ]
    assert stored.history[1].exited_at is None
    assert stored.enrolled_at == T0


@pytest.mark.asyncio
async def test_due_enrollments(repo, lead_workflow):
    now = T0 + timedelta(hours=1)
    waiting_due = _enrollment(
        lead_workflow, "c1", status=EnrollmentStatus.WAITING, resume_at=now - timedelta(minutes=1)
    )
    waiting_later = _enrollment(
        lead_workflow, "c2", status=EnrollmentStatus.WAITING, resume_at=now + timedelta(minutes=1)
    )
    retry_due = _enrollment(lead_workflow, "c3", resume_at=now)
    stale = _enrollment(lead_workflow, "c4", updated_at=T0)
    fresh = _enrollment(lead_workflow, "c5", updated_at=now)
    done = _enrollment(
        lead_workflow, "c6", status=EnrollmentStatus.COMPLETED, resume_at=T0
    )
    for e in (waiting_due, waiting_later, retry_due, stale, fresh, done):
        await repo.create_enrollment(e)

    due = await repo.due_enrollments(now, stale_before=now - timedelta(minutes=30))
    assert {e.contact_id for e in due} == {"c1", "c3", "c4"}

    limited = await repo.due_enrollments(now, stale_before=now - timedelta(minutes=30), limit=1)
    assert len(limited) == 1


@pytest.mark.asyncio
async def test_list_enrollments_filters(repo, lead_workflow):
    early = _enrollment(lead_workflow, "c1", enrolled_at=T0)
    late = _enrollment(
        lead_workflow, "c2", enrolled_at=T0 + timedelta(days=2), status=EnrollmentStatus.WAITING
    )
    await repo.create_enrollment(early)
    await repo.create_enrollment(late)

    assert [e.id for e in await repo.list_enrollments(workflow_id=lead_workflow.id)] == [
        early.id,
        late.id,
    ]
    assert [
        e.id for e in await repo.list_enrollments(status=EnrollmentStatus.WAITING)
    ] == [late.id]
    window = await repo.list_enrollments(
        enrolled_after=T0 + timedelta(days=1), enrolled_before=T0 + timedelta(days=3)
    )
    assert [e.id for e in window] == [late.id]


@pytest.mark.asyncio
async def test_stat_events_are_idempotent(repo):
    assert await repo.record_stat_event("wf", "e1", "triggered", T0)
    assert not await repo.record_stat_event("wf", "e1", "triggered", T0)
    assert await repo.record_stat_event("wf", "e1", "completed", T0 + timedelta(hours=1))
    assert await repo.record_stat_event("wf", "e2", "triggered", T0 + timedelta(days=1))
    assert await repo.record_stat_event("other", "e3", "triggered", T0)

    assert await repo.count_stat_events("wf") == {"triggered": 2, "completed": 1}
    assert await repo.count_stat_events("wf", since=T0 + timedelta(minutes=30)) == {
        "triggered": 1,
        "completed": 1,
    }
    assert await repo.count_stat_events("wf", until=T0 + timedelta(minutes=30)) == {
        "triggered": 1
    }
