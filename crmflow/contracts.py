"""Core data contracts for crmflow workflows and enrollments."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from .constants import BRANCH_FALSE, BRANCH_NO_VALUE, BRANCH_TRUE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class StepType(str, Enum):
    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"
    WAIT = "wait"
    GOAL = "goal"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.FAILED, EnrollmentStatus.CANCELLED}
)


class ActionKind(str, Enum):
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    MOVE_PIPELINE = "move_pipeline"
    CREATE_TASK = "create_task"
    WEBHOOK = "webhook"
    BOOK_APPOINTMENT = "book_appointment"


class TimeUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class ReentryPolicy(str, Enum):
    """Whether a contact may hold two live enrollments in one workflow."""

    SKIP = "skip"
    ALLOW = "allow"


class ComparisonOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    HAS_TAG = "has_tag"
    NOT_HAS_TAG = "not_has_tag"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class Comparison(BaseModel):
    """Single test against a context field."""

    field: str
    operator: ComparisonOperator = ComparisonOperator.EQ
    value: Any = None


class Expression(BaseModel):
    """Boolean combination of comparisons."""

    operator: Literal["and", "or"] = "and"
    conditions: List[Comparison] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Step configuration, discriminated on ``type``


class TriggerConfig(BaseModel):
    type: Literal["trigger"] = "trigger"


class ActionConfig(BaseModel):
    type: Literal["action"] = "action"
    kind: ActionKind
    params: Dict[str, Any] = Field(default_factory=dict)
    max_attempts: Optional[int] = Field(default=None, ge=1)


class WaitConfig(BaseModel):
    type: Literal["wait"] = "wait"
    duration: int = Field(gt=0)
    unit: TimeUnit = TimeUnit.HOURS

    def as_timedelta(self) -> timedelta:
        if self.unit is TimeUnit.WEEKS:
            return timedelta(weeks=self.duration)
        return timedelta(**{self.unit.value: self.duration})


class ConditionConfig(BaseModel):
    type: Literal["condition"] = "condition"
    expression: Expression = Field(default_factory=Expression)
    branches: List[str] = Field(default_factory=lambda: [BRANCH_TRUE, BRANCH_FALSE])

    @field_validator("branches")
    @classmethod
    def _known_labels(cls, value: List[str]) -> List[str]:
        unknown = [b for b in value if b not in (BRANCH_TRUE, BRANCH_FALSE, BRANCH_NO_VALUE)]
        if unknown:
            raise ValueError(f"unsupported branch labels: {', '.join(unknown)}")
        return value


class GoalConfig(BaseModel):
    type: Literal["goal"] = "goal"
    expression: Expression = Field(default_factory=Expression)


StepConfig = Annotated[
    Union[TriggerConfig, ActionConfig, WaitConfig, ConditionConfig, GoalConfig],
    Field(discriminator="type"),
]


class Step(BaseModel):
    """One node of a workflow graph."""

    id: str
    type: StepType
    name: Optional[str] = None
    config: StepConfig

    @model_validator(mode="before")
    @classmethod
    def _inherit_config_type(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        step_type = data.get("type")
        config = data.get("config")
        if config is None:
            config = {}
        if isinstance(config, dict) and "type" not in config and step_type is not None:
            data = {
                **data,
                "config": {**config, "type": getattr(step_type, "value", step_type)},
            }
        return data

    @model_validator(mode="after")
    def _check_config_type(self) -> "Step":
        if self.config.type != self.type.value:
            raise ValueError(
                f"step {self.id!r} has type {self.type.value!r} "
                f"but config of type {self.config.type!r}"
            )
        return self


class Connection(BaseModel):
    """Directed edge; ``branch`` is None for the default edge."""

    from_step_id: str
    to_step_id: str
    branch: Optional[str] = None


class TriggerSpec(BaseModel):
    """Which domain events enroll contacts into a workflow."""

    event_type: str
    filters: Dict[str, Any] = Field(default_factory=dict)
    reentry: ReentryPolicy = ReentryPolicy.SKIP

    def matches(self, event_type: str, payload: Dict[str, Any]) -> bool:
        if event_type != self.event_type:
            return False
        for key, expected in self.filters.items():
            if key not in payload:
                return False
            actual = payload[key]
            if isinstance(expected, list):
                if actual not in expected:
                    return False
            elif actual != expected:
                return False
        return True


class Workflow(BaseModel):
    """Tenant-authored automation graph.

    Steps and connections are owned by the workflow and refer to each other
    by id only.
    """

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger: TriggerSpec
    steps: List[Step] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)
    version: int = 1
    cancel_on_archive: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def entry_steps(self) -> List[Step]:
        return [s for s in self.steps if s.type is StepType.TRIGGER]

    def entry_step(self) -> Optional[Step]:
        entries = self.entry_steps()
        return entries[0] if len(entries) == 1 else None

    def outgoing(self, step_id: str) -> List[Connection]:
        return [c for c in self.connections if c.from_step_id == step_id]

    def next_step_id(self, step_id: str, branch: Optional[str] = None) -> Optional[str]:
        """Target of the edge leaving ``step_id`` labelled ``branch``."""
        for conn in self.outgoing(step_id):
            if conn.branch == branch:
                return conn.to_step_id
        return None

    def adjacency(self) -> Dict[str, List[str]]:
        graph: Dict[str, List[str]] = {s.id: [] for s in self.steps}
        for conn in self.connections:
            graph.setdefault(conn.from_step_id, []).append(conn.to_step_id)
        return graph


class HistoryEntry(BaseModel):
    """Audit record of one step visit."""

    step_id: Optional[str] = None
    entered_at: datetime
    exited_at: Optional[datetime] = None
    outcome: str
    detail: Optional[str] = None


class Enrollment(BaseModel):
    """One contact's traversal of a pinned workflow version."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: int
    tenant_id: str
    contact_id: str
    current_step_id: Optional[str] = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    resume_at: Optional[datetime] = None
    attempts: int = 0
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    source: str = "event"
    history: List[HistoryEntry] = Field(default_factory=list)
    last_error: Optional[str] = None
    revision: int = 0
    enrolled_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def record(
        self,
        step_id: Optional[str],
        outcome: str,
        entered_at: datetime,
        exited_at: Optional[datetime] = None,
        detail: Optional[str] = None,
    ) -> HistoryEntry:
        """Append a history entry; ``entered_at`` never goes backwards."""
        if self.history and entered_at < self.history[-1].entered_at:
            entered_at = self.history[-1].entered_at
        entry = HistoryEntry(
            step_id=step_id,
            entered_at=entered_at,
            exited_at=exited_at,
            outcome=outcome,
            detail=detail,
        )
        self.history.append(entry)
        return entry


class DomainEvent(BaseModel):
    """Event emitted by another platform subsystem."""

    event_id: str = Field(default_factory=new_id)
    event_type: str
    tenant_id: str
    contact_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "DomainEvent":
        return cls.model_validate_json(data)


class CapabilityResult(BaseModel):
    """What an external capability reports back for one call."""

    success: bool = True
    deferred: bool = False
    retryable: bool = True
    detail: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class EnrollmentResult(BaseModel):
    """Per-contact outcome of an enrollment request."""

    contact_id: str
    status: Literal["enrolled", "skipped", "error"]
    enrollment_id: Optional[str] = None
    reason: Optional[str] = None


class WorkflowStats(BaseModel):
    """Derived counters for one workflow."""

    workflow_id: str
    triggered: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    active: int = 0
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def completion_rate(self) -> float:
        if not self.triggered:
            return 0.0
        return round(self.completed / self.triggered, 4)
