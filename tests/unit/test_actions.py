"""Action dispatcher tests."""

import asyncio

import pytest

from crmflow.actions import ActionDispatcher, OutcomeStatus, render
from crmflow.capabilities import InMemoryCapabilities
from crmflow.catalog import describe_action, missing_params
from crmflow.conditions import build_context
from crmflow.contracts import ActionConfig, ActionKind, CapabilityResult


def _action(kind, **params):
    return ActionConfig(kind=kind, params=params)


@pytest.fixture
def context():
    return build_context({"id": "c1", "first_name": "Ada"}, {"form_id": "f1"})


def test_render_merge_fields(context):
    assert render("Hi {{ first_name }}!", context) == "Hi Ada!"
    assert render({"a": ["{{event.form_id}}"]}, context) == {"a": ["f1"]}
    assert render("{{ missing }}", context) == ""
    assert render(5, context) == 5


def test_catalog_required_params():
    assert describe_action(ActionKind.SEND_EMAIL).required == ["subject", "body"]
    assert missing_params(ActionKind.MOVE_PIPELINE, {"pipeline_id": "p"}) == ["stage_id"]


@pytest.mark.asyncio
async def test_dispatch_delivered_and_deferred(capabilities, context):
    dispatcher = ActionDispatcher(capabilities)

    outcome = await dispatcher.dispatch(
        _action("send_email", subject="Hi {{ first_name }}", body="Welcome"), "c1", context
    )
    assert outcome.status is OutcomeStatus.DELIVERED
    assert capabilities.calls_for("send_email") == [
        {"contact_id": "c1", "subject": "Hi Ada", "body": "Welcome"}
    ]

    outcome = await dispatcher.dispatch(_action("send_sms", message="Hello"), "c1", context)
    assert outcome.status is OutcomeStatus.DEFERRED
    assert outcome.succeeded


@pytest.mark.asyncio
async def test_dispatch_tags_and_pipeline(capabilities, context):
    dispatcher = ActionDispatcher(capabilities)
    await dispatcher.dispatch(_action("add_tag", tag="lead"), "c1", context)
    await dispatcher.dispatch(
        _action("move_pipeline", pipeline_id="sales", stage_id="qualified"), "c1", context
    )
    contact = await capabilities.get_contact("c1")
    assert contact["tags"] == ["lead"]
    assert contact["pipelines"] == {"sales": "qualified"}

    await dispatcher.dispatch(_action("remove_tag", tag="lead"), "c1", context)
    assert (await capabilities.get_contact("c1"))["tags"] == []


@pytest.mark.asyncio
async def test_dispatch_task_webhook_and_appointment(capabilities, context):
    dispatcher = ActionDispatcher(capabilities)

    outcome = await dispatcher.dispatch(
        _action("create_task", title="Call {{ first_name }}", due_in_hours=24), "c1", context
    )
    assert outcome.succeeded
    (task,) = capabilities.calls_for("create_task")
    assert task["title"] == "Call Ada"
    assert task["due_at"] is not None

    await dispatcher.dispatch(_action("webhook", url="https://hooks.example.com/x"), "c1", context)
    (hook,) = capabilities.calls_for("call_webhook")
    assert hook["method"] == "POST"
    assert hook["payload"]["contact_id"] == "c1"
    assert hook["payload"]["event"] == {"form_id": "f1"}

    await dispatcher.dispatch(
        _action("book_appointment", calendar_id="cal", start_at="2024-05-01T10:00:00"),
        "c1",
        context,
    )
    (booking,) = capabilities.calls_for("book_appointment")
    assert booking["start_at"].tzinfo is not None
    assert booking["duration_minutes"] == 30


@pytest.mark.asyncio
async def test_missing_params_fail_permanently(capabilities, context):
    outcome = await ActionDispatcher(capabilities).dispatch(
        _action("send_email", subject="No body"), "c1", context
    )
    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.retryable is False
    assert "body" in outcome.reason
    assert capabilities.calls_for("send_email") == []


@pytest.mark.asyncio
async def test_bad_param_values_fail_permanently(capabilities, context):
    outcome = await ActionDispatcher(capabilities).dispatch(
        _action("book_appointment", calendar_id="cal", start_at="next tuesday"), "c1", context
    )
    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.retryable is False


@pytest.mark.asyncio
async def test_capability_failures_are_retryable(capabilities, context):
    dispatcher = ActionDispatcher(capabilities)
    capabilities.fail("send_sms", reason="carrier down")
    capabilities.fail("send_sms", reason="socket closed", raise_error=True)

    first = await dispatcher.dispatch(_action("send_sms", message="x"), "c1", context)
    assert first.status is OutcomeStatus.FAILED
    assert first.retryable
    assert first.reason == "carrier down"

    second = await dispatcher.dispatch(_action("send_sms", message="x"), "c1", context)
    assert second.retryable
    assert "ConnectionError" in second.reason


class _SlowCapabilities(InMemoryCapabilities):
    async def send_email(self, contact_id, subject, body):
        await asyncio.sleep(1)
        return CapabilityResult()


class _RejectingCapabilities(InMemoryCapabilities):
    async def add_tag(self, contact_id, tag):
        return CapabilityResult(success=False, retryable=False, detail="tag not allowed")


@pytest.mark.asyncio
async def test_timeout_is_retryable_failure(context):
    dispatcher = ActionDispatcher(_SlowCapabilities(), timeout=0.01)
    outcome = await dispatcher.dispatch(
        _action("send_email", subject="s", body="b"), "c1", context
    )
    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.retryable
    assert "timed out" in outcome.reason


@pytest.mark.asyncio
async def test_permanent_rejection_is_not_retryable(context):
    outcome = await ActionDispatcher(_RejectingCapabilities()).dispatch(
        _action("add_tag", tag="x"), "c1", context
    )
    assert outcome.retryable is False
    assert outcome.reason == "tag not allowed"
