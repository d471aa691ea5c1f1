"""Translate action steps into capability calls."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from .capabilities.base import BaseCapabilities
from .catalog import missing_params
from .conditions import resolve
from .contracts import ActionConfig, ActionKind, CapabilityResult, utcnow

logger = logging.getLogger(__name__)

_MERGE_FIELD = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


class OutcomeStatus(str, Enum):
    DELIVERED = "delivered"
    DEFERRED = "deferred"
    FAILED = "failed"


class DispatchOutcome(BaseModel):
    """Typed result of dispatching one action."""

    status: OutcomeStatus
    reason: Optional[str] = None
    retryable: bool = True
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def delivered(cls, data: Optional[Dict[str, Any]] = None) -> "DispatchOutcome":
        return cls(status=OutcomeStatus.DELIVERED, data=data or {})

    @classmethod
    def deferred(cls, data: Optional[Dict[str, Any]] = None) -> "DispatchOutcome":
        return cls(status=OutcomeStatus.DEFERRED, data=data or {})

    @classmethod
    def failed(cls, reason: str, retryable: bool = True) -> "DispatchOutcome":
        return cls(status=OutcomeStatus.FAILED, reason=reason, retryable=retryable)

    @property
    def succeeded(self) -> bool:
        return self.status is not OutcomeStatus.FAILED


class InvalidActionParams(ValueError):
    """Action params that no retry can fix."""


def render(value: Any, context: Mapping[str, Any]) -> Any:
    """Substitute ``{{ path }}`` merge fields in strings, recursively."""
    if isinstance(value, str):

        def _sub(match: re.Match) -> str:
            found = resolve(context, match.group(1))
            if found is None or not isinstance(found, (str, int, float, bool)):
                return ""
            return str(found)

        return _MERGE_FIELD.sub(_sub, value)
    if isinstance(value, dict):
        return {k: render(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, context) for v in value]
    return value


def _parse_datetime(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError as exc:
            raise InvalidActionParams(f"{name} is not an ISO datetime: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


Handler = Callable[[str, Dict[str, Any], Mapping[str, Any]], Awaitable[CapabilityResult]]


class ActionDispatcher:
    """Stateless mapping from action kinds to capability calls.

    The dispatcher never retries; timeouts and capability exceptions become
    retryable failures and the engine decides what to do with them.
    """

    def __init__(self, capabilities: BaseCapabilities, timeout: float = 30.0) -> None:
        self._capabilities = capabilities
        self.timeout = timeout
        self._handlers: Dict[ActionKind, Handler] = {
            ActionKind.SEND_EMAIL: self._send_email,
            ActionKind.SEND_SMS: self._send_sms,
            ActionKind.ADD_TAG: self._add_tag,
            ActionKind.REMOVE_TAG: self._remove_tag,
            ActionKind.MOVE_PIPELINE: self._move_pipeline,
            ActionKind.CREATE_TASK: self._create_task,
            ActionKind.WEBHOOK: self._webhook,
            ActionKind.BOOK_APPOINTMENT: self._book_appointment,
        }

    async def dispatch(
        self, action: ActionConfig, contact_id: str, context: Mapping[str, Any]
    ) -> DispatchOutcome:
        params = render(action.params, context)
        missing = missing_params(action.kind, params)
        if missing:
            return DispatchOutcome.failed(
                f"missing parameter(s) for {action.kind.value}: {', '.join(missing)}",
                retryable=False,
            )

        handler = self._handlers[action.kind]
        try:
            result = await asyncio.wait_for(
                handler(contact_id, params, context), timeout=self.timeout
            )
        except InvalidActionParams as exc:
            return DispatchOutcome.failed(str(exc), retryable=False)
        except asyncio.TimeoutError:
            logger.warning(
                f"{action.kind.value} for contact {contact_id} timed out after {self.timeout}s"
            )
            return DispatchOutcome.failed(f"timed out after {self.timeout}s")
        except Exception as exc:
            logger.warning(f"{action.kind.value} for contact {contact_id} failed: {exc}")
            return DispatchOutcome.failed(f"{type(exc).__name__}: {exc}")

        if not result.success:
            return DispatchOutcome.failed(
                result.detail or f"{action.kind.value} rejected",
                retryable=result.retryable,
            )
        if result.deferred:
            return DispatchOutcome.deferred(result.data)
        return DispatchOutcome.delivered(result.data)

    # ------------------------------------------------------------------
    async def _send_email(self, contact_id, params, context) -> CapabilityResult:
        return await self._capabilities.send_email(
            contact_id, params["subject"], params["body"]
        )

    async def _send_sms(self, contact_id, params, context) -> CapabilityResult:
        return await self._capabilities.send_sms(contact_id, params["message"])

    async def _add_tag(self, contact_id, params, context) -> CapabilityResult:
        return await self._capabilities.add_tag(contact_id, params["tag"])

    async def _remove_tag(self, contact_id, params, context) -> CapabilityResult:
        return await self._capabilities.remove_tag(contact_id, params["tag"])

    async def _move_pipeline(self, contact_id, params, context) -> CapabilityResult:
        return await self._capabilities.move_pipeline_stage(
            contact_id, params["pipeline_id"], params["stage_id"]
        )

    async def _create_task(self, contact_id, params, context) -> CapabilityResult:
        due_at = None
        if params.get("due_in_hours") is not None:
            try:
                hours = float(params["due_in_hours"])
            except (TypeError, ValueError) as exc:
                raise InvalidActionParams(
                    f"due_in_hours must be a number: {params['due_in_hours']!r}"
                ) from exc
            due_at = utcnow() + timedelta(hours=hours)
        return await self._capabilities.create_task(
            contact_id,
            params["title"],
            description=params.get("description"),
            due_at=due_at,
            assigned_to=params.get("assigned_to"),
        )

    async def _webhook(self, contact_id, params, context) -> CapabilityResult:
        payload = params.get("payload")
        if payload is None:
            payload = {
                "contact_id": contact_id,
                "contact": context.get("contact", {}),
                "event": context.get("event", {}),
            }
        return await self._capabilities.call_webhook(
            params["url"],
            method=params.get("method", "POST"),
            payload=payload,
            headers=params.get("headers"),
        )

    async def _book_appointment(self, contact_id, params, context) -> CapabilityResult:
        start_at = _parse_datetime(params["start_at"], "start_at")
        try:
            duration = int(params.get("duration_minutes", 30))
        except (TypeError, ValueError) as exc:
            raise InvalidActionParams(
                f"duration_minutes must be an integer: {params.get('duration_minutes')!r}"
            ) from exc
        return await self._capabilities.book_appointment(
            contact_id,
            params["calendar_id"],
            start_at,
            duration_minutes=duration,
            title=params.get("title"),
        )
