"""Catalog of supported trigger events and action kinds."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .contracts import ActionKind


class TriggerDescriptor(BaseModel):
    """Describes an event type workflows can be triggered by."""

    type: str
    name: str
    description: Optional[str] = None
    config_fields: List[str] = Field(default_factory=list)


class ActionDescriptor(BaseModel):
    """Describes an action kind and the params it accepts."""

    kind: ActionKind
    name: str
    description: Optional[str] = None
    config_fields: List[str] = Field(default_factory=list)
    required: List[str] = Field(default_factory=list)

    @field_validator("required")
    @classmethod
    def _required_are_fields(cls, v: List[str], info) -> List[str]:
        fields = info.data.get("config_fields", [])
        unknown = [name for name in v if name not in fields]
        if unknown:
            raise ValueError(f"required params not in config_fields: {unknown}")
        return v


TRIGGERS: List[TriggerDescriptor] = [
    TriggerDescriptor(
        type="form_submitted",
        name="Form Submission",
        description="Triggered when a contact submits a form",
        config_fields=["form_id"],
    ),
    TriggerDescriptor(
        type="tag_added",
        name="Tag Added",
        description="Triggered when a tag is added to a contact",
        config_fields=["tag"],
    ),
    TriggerDescriptor(
        type="tag_removed",
        name="Tag Removed",
        description="Triggered when a tag is removed from a contact",
        config_fields=["tag"],
    ),
    TriggerDescriptor(
        type="contact_created",
        name="Contact Created",
        description="Triggered when a new contact is created",
    ),
    TriggerDescriptor(
        type="email_opened",
        name="Email Opened",
        description="Triggered when a contact opens an email",
        config_fields=["campaign_id"],
    ),
    TriggerDescriptor(
        type="email_clicked",
        name="Email Link Clicked",
        description="Triggered when a contact clicks a link in an email",
        config_fields=["campaign_id", "link_url"],
    ),
    TriggerDescriptor(
        type="sms_received",
        name="SMS Received",
        description="Triggered when a contact sends an SMS",
        config_fields=["keyword"],
    ),
    TriggerDescriptor(
        type="missed_call",
        name="Missed Call",
        description="Triggered when a contact calls but the call is missed",
    ),
    TriggerDescriptor(
        type="appointment_booked",
        name="Appointment Booked",
        description="Triggered when a contact books an appointment",
        config_fields=["calendar_id"],
    ),
    TriggerDescriptor(
        type="pipeline_stage_changed",
        name="Pipeline Stage Changed",
        description="Triggered when a contact moves to a specific pipeline stage",
        config_fields=["pipeline_id", "stage_id"],
    ),
    TriggerDescriptor(
        type="date_based",
        name="Date/Time Based",
        description="Triggered at a specific date/time or interval",
        config_fields=["date_time", "recurring"],
    ),
    TriggerDescriptor(
        type="webhook",
        name="Webhook",
        description="Triggered by an external webhook call",
        config_fields=["webhook_id"],
    ),
]

ACTIONS: List[ActionDescriptor] = [
    ActionDescriptor(
        kind=ActionKind.SEND_EMAIL,
        name="Send Email",
        description="Send an email to the contact",
        config_fields=["subject", "body"],
        required=["subject", "body"],
    ),
    ActionDescriptor(
        kind=ActionKind.SEND_SMS,
        name="Send SMS",
        description="Send an SMS to the contact",
        config_fields=["message"],
        required=["message"],
    ),
    ActionDescriptor(
        kind=ActionKind.ADD_TAG,
        name="Add Tag",
        description="Add a tag to the contact",
        config_fields=["tag"],
        required=["tag"],
    ),
    ActionDescriptor(
        kind=ActionKind.REMOVE_TAG,
        name="Remove Tag",
        description="Remove a tag from the contact",
        config_fields=["tag"],
        required=["tag"],
    ),
    ActionDescriptor(
        kind=ActionKind.MOVE_PIPELINE,
        name="Move in Pipeline",
        description="Move contact to a different pipeline stage",
        config_fields=["pipeline_id", "stage_id"],
        required=["pipeline_id", "stage_id"],
    ),
    ActionDescriptor(
        kind=ActionKind.CREATE_TASK,
        name="Create Task",
        description="Create a task for the contact",
        config_fields=["title", "description", "due_in_hours", "assigned_to"],
        required=["title"],
    ),
    ActionDescriptor(
        kind=ActionKind.BOOK_APPOINTMENT,
        name="Book Appointment",
        description="Create an appointment for the contact",
        config_fields=["calendar_id", "title", "start_at", "duration_minutes"],
        required=["calendar_id", "start_at"],
    ),
    ActionDescriptor(
        kind=ActionKind.WEBHOOK,
        name="Send Webhook",
        description="Send data to an external webhook URL",
        config_fields=["url", "method", "headers", "payload"],
        required=["url"],
    ),
]

_ACTIONS_BY_KIND: Dict[ActionKind, ActionDescriptor] = {a.kind: a for a in ACTIONS}


def describe_action(kind: ActionKind) -> ActionDescriptor:
    return _ACTIONS_BY_KIND[ActionKind(kind)]


def missing_params(kind: ActionKind, params: Dict[str, object]) -> List[str]:
    """Required params of ``kind`` that are absent or empty in ``params``."""
    return [
        name
        for name in describe_action(kind).required
        if params.get(name) in (None, "")
    ]


__all__ = [
    "ACTIONS",
    "TRIGGERS",
    "ActionDescriptor",
    "TriggerDescriptor",
    "describe_action",
    "missing_params",
]
