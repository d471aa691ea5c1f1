"""Shared fixtures: a controllable clock and an in-process runtime."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from crmflow.capabilities import InMemoryCapabilities
from crmflow.config import CrmflowConfig, RetryConfig, SchedulerConfig
from crmflow.contracts import Workflow, WorkflowStatus
from crmflow.persistence import InMemoryWorkflowRepository
from crmflow.runtime import build_runtime


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def capabilities() -> InMemoryCapabilities:
    caps = InMemoryCapabilities()
    caps.add_contact("c1", email="ada@example.com", first_name="Ada", score=42)
    caps.add_contact("c2", email="bob@example.com", first_name="Bob")
    return caps


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def config() -> CrmflowConfig:
    return CrmflowConfig(
        retry=RetryConfig(jitter_seconds=0),
        scheduler=SchedulerConfig(poll_interval_seconds=0.01),
    )


@pytest.fixture
def runtime(config, capabilities, repository, clock):
    return build_runtime(config, capabilities=capabilities, repository=repository, clock=clock)


def _workflow(
    steps: List[Dict[str, Any]],
    connections: List[Dict[str, Any]],
    event_type: str = "contact_created",
    status: WorkflowStatus = WorkflowStatus.ACTIVE,
    **kwargs: Any,
) -> Workflow:
    return Workflow(
        tenant_id=kwargs.pop("tenant_id", "t1"),
        name=kwargs.pop("name", "Test workflow"),
        status=status,
        trigger={"event_type": event_type, **kwargs.pop("trigger", {})},
        steps=steps,
        connections=connections,
        **kwargs,
    )


@pytest.fixture
def make_workflow():
    """Build a workflow from plain step and connection dicts."""
    return _workflow


@pytest.fixture
def lead_workflow(make_workflow) -> Workflow:
    """entry -> tag lead -> wait 1 day -> email -> goal(customer)."""
    return make_workflow(
        steps=[
            {"id": "entry", "type": "trigger"},
            {
                "id": "tag",
                "type": "action",
                "config": {"kind": "add_tag", "params": {"tag": "lead"}},
            },
            {"id": "delay", "type": "wait", "config": {"duration": 1, "unit": "days"}},
            {
                "id": "email",
                "type": "action",
                "config": {
                    "kind": "send_email",
                    "params": {"subject": "Hi {{ first_name }}", "body": "Welcome"},
                },
            },
            {
                "id": "goal",
                "type": "goal",
                "config": {
                    "expression": {
                        "conditions": [
                            {"field": "tags", "operator": "has_tag", "value": "customer"}
                        ]
                    }
                },
            },
        ],
        connections=[
            {"from_step_id": "entry", "to_step_id": "tag"},
            {"from_step_id": "tag", "to_step_id": "delay"},
            {"from_step_id": "delay", "to_step_id": "email"},
            {"from_step_id": "email", "to_step_id": "goal"},
        ],
    )
