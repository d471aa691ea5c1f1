"""WorkflowService end to end."""

import pytest

from crmflow.contracts import DomainEvent, EnrollmentStatus, StepType, WorkflowStatus
from crmflow.errors import (
    EnrollmentNotFound,
    MissingEntry,
    Unreachable,
    WorkflowNotFound,
    WorkflowStateError,
)


async def _build_welcome(service):
    workflow = await service.create_workflow(
        "t1", "Welcome", {"event_type": "contact_created"}, description="New contacts"
    )
    await service.add_step(workflow.id, "trigger", step_id="entry")
    await service.add_step(
        workflow.id, "action", {"kind": "add_tag", "params": {"tag": "new"}}, step_id="tag"
    )
    await service.add_step(workflow.id, "wait", {"duration": 3, "unit": "hours"}, step_id="wait")
    await service.connect_steps(workflow.id, "entry", "tag")
    await service.connect_steps(workflow.id, "tag", "wait")
    return await service.get_workflow(workflow.id)


@pytest.mark.asyncio
async def test_author_activate_and_enroll(runtime, capabilities):
    service = runtime.service
    await runtime.start()
    workflow = await _build_welcome(service)
    assert workflow.status is WorkflowStatus.DRAFT
    assert workflow.version == 6
    assert [s.type for s in workflow.steps] == [StepType.TRIGGER, StepType.ACTION, StepType.WAIT]

    # drafts never enroll
    assert await runtime.triggers.handle_event(
        DomainEvent(event_type="contact_created", tenant_id="t1", contact_id="c1")
    ) == []

    await service.activate_workflow(workflow.id)
    (result,) = await runtime.triggers.handle_event(
        DomainEvent(event_type="contact_created", tenant_id="t1", contact_id="c1")
    )
    assert result.status == "enrolled"
    assert (await capabilities.get_contact("c1"))["tags"] == ["new"]

    (enrollment,) = await service.list_enrollments(workflow.id)
    assert enrollment.status is EnrollmentStatus.WAITING
    assert enrollment.workflow_version == 6
    assert await service.list_enrollments(workflow.id, status=EnrollmentStatus.COMPLETED) == []
    assert [e.id for e in await service.list_enrollments(workflow.id, contact_id="c1")] == [
        enrollment.id
    ]


@pytest.mark.asyncio
async def test_editing_active_workflow(runtime):
    service = runtime.service
    workflow = await _build_welcome(service)
    await service.activate_workflow(workflow.id)

    step = await service.update_step(workflow.id, "wait", {"duration": 5})
    assert step.config.duration == 5
    assert step.config.unit.value == "hours"

    # an edit that would strand a step is refused and nothing is saved
    with pytest.raises(Unreachable):
        await service.add_step(
            workflow.id, "action", {"kind": "add_tag", "params": {"tag": "x"}}, step_id="orphan"
        )
    stored = await service.get_workflow(workflow.id)
    assert stored.get_step("orphan") is None
    assert stored.version == 7

    with pytest.raises(MissingEntry):
        await service.remove_step(workflow.id, "entry")


@pytest.mark.asyncio
async def test_trigger_change_reindexes(runtime):
    service = runtime.service
    await runtime.start()
    workflow = await _build_welcome(service)
    await service.activate_workflow(workflow.id)
    assert runtime.triggers.index.lookup("t1", "contact_created") == [workflow.id]

    updated = await service.update_workflow(
        workflow.id, name="Form follow-up", trigger={"event_type": "form_submitted"}
    )
    assert updated.name == "Form follow-up"
    assert updated.version == workflow.version + 1
    assert runtime.triggers.index.lookup("t1", "contact_created") == []
    assert runtime.triggers.index.lookup("t1", "form_submitted") == [workflow.id]

    renamed = await service.update_workflow(workflow.id, description="only a label")
    assert renamed.version == updated.version


@pytest.mark.asyncio
async def test_pause_duplicate_and_archive(runtime):
    service = runtime.service
    workflow = await _build_welcome(service)

    with pytest.raises(WorkflowStateError):
        await service.pause_workflow(workflow.id)
    await service.activate_workflow(workflow.id)
    paused = await service.pause_workflow(workflow.id)
    assert paused.status is WorkflowStatus.PAUSED

    copy = await service.duplicate_workflow(workflow.id)
    assert copy.id != workflow.id
    assert copy.name == "Welcome (Copy)"
    assert copy.status is WorkflowStatus.DRAFT
    assert len(await service.list_workflows(tenant_id="t1")) == 2

    archived = await service.archive_workflow(workflow.id, cancel_in_flight=True)
    assert archived.cancel_on_archive
    with pytest.raises(WorkflowStateError):
        await service.activate_workflow(workflow.id)
    with pytest.raises(WorkflowStateError):
        await service.update_workflow(workflow.id, name="again")
    assert [w.id for w in await service.list_workflows(status=WorkflowStatus.ARCHIVED)] == [
        workflow.id
    ]


@pytest.mark.asyncio
async def test_disconnect_on_draft(runtime):
    service = runtime.service
    workflow = await _build_welcome(service)

    await service.disconnect_steps(workflow.id, "tag")
    stored = await service.get_workflow(workflow.id)
    assert stored.next_step_id("tag") is None
    with pytest.raises(Unreachable):
        await service.activate_workflow(workflow.id)


@pytest.mark.asyncio
async def test_cancel_enrollment(runtime, clock):
    service = runtime.service
    workflow = await _build_welcome(service)
    await service.activate_workflow(workflow.id)
    (result,) = await service.enroll_contacts(workflow.id, ["c2"])

    cancelled = await service.cancel_enrollment(result.enrollment_id)
    assert cancelled.status is EnrollmentStatus.CANCELLED
    assert cancelled.finished_at == clock.now
    assert cancelled.history[-1].detail == "cancelled by user"

    # already terminal: returned unchanged
    again = await service.cancel_enrollment(result.enrollment_id, reason="twice")
    assert again.revision == cancelled.revision
    assert (await service.get_enrollment(result.enrollment_id)).history[-1].detail == (
        "cancelled by user"
    )


@pytest.mark.asyncio
async def test_not_found(runtime):
    service = runtime.service
    with pytest.raises(WorkflowNotFound):
        await service.get_workflow("missing")
    with pytest.raises(WorkflowNotFound):
        await service.list_enrollments("missing")
    with pytest.raises(EnrollmentNotFound):
        await service.get_enrollment("missing")
    with pytest.raises(EnrollmentNotFound):
        await service.cancel_enrollment("missing")


@pytest.mark.asyncio
async def test_import_bumps_version(runtime, lead_workflow):
    service = runtime.service
    document = lead_workflow.model_dump(mode="json")

    first = await service.import_workflow(document)
    assert first.version == 1
    again = await service.import_workflow(document)
    assert again.version == 2
    assert runtime.triggers.index.lookup("t1", "contact_created") == [lead_workflow.id]

    broken = dict(document, id="broken", steps=document["steps"][1:])
    with pytest.raises(MissingEntry):
        await service.import_workflow(broken)
    draft = await service.import_workflow(dict(broken, status="draft"))
    assert draft.status is WorkflowStatus.DRAFT


def test_catalog(runtime):
    triggers = runtime.service.list_triggers()
    actions = runtime.service.list_actions()
    assert "contact_created" in {t.type for t in triggers}
    assert "send_email" in {a.kind.value for a in actions}
