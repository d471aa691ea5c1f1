"""In-process capabilities for development and tests."""

from __future__ import annotations

from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

from ..contracts import CapabilityResult
from .base import BaseCapabilities, ContactDirectory


class InMemoryCapabilities(BaseCapabilities, ContactDirectory):
    """Records every call and keeps a small contact store.

    Tag changes are applied to the stored contact so later conditions and
    goals see them. ``fail`` queues failures for the next calls of a
    capability.
    """

    def __init__(self, contacts: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.contacts: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._failures: Dict[str, Deque[Tuple[str, bool]]] = defaultdict(deque)
        for contact_id, attributes in (contacts or {}).items():
            self.add_contact(contact_id, **attributes)

    def add_contact(self, contact_id: str, **attributes: Any) -> Dict[str, Any]:
        contact = {"id": contact_id, "tags": [], **attributes}
        contact["tags"] = list(contact["tags"])
        self.contacts[contact_id] = contact
        return contact

    def fail(
        self, capability: str, times: int = 1, reason: str = "unavailable", raise_error: bool = False
    ) -> None:
        for _ in range(times):
            self._failures[capability].append((reason, raise_error))

    def calls_for(self, capability: str) -> List[Dict[str, Any]]:
        return [args for name, args in self.calls if name == capability]

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        contact = self.contacts.get(contact_id)
        if contact is None:
            return None
        return {**contact, "tags": list(contact.get("tags", []))}

    def _record(self, capability: str, **kwargs: Any) -> Optional[CapabilityResult]:
        self.calls.append((capability, kwargs))
        if self._failures[capability]:
            reason, raise_error = self._failures[capability].popleft()
            if raise_error:
                raise ConnectionError(reason)
            return CapabilityResult(success=False, detail=reason)
        return None

    # ------------------------------------------------------------------
    async def send_email(self, contact_id: str, subject: str, body: str) -> CapabilityResult:
        failure = self._record("send_email", contact_id=contact_id, subject=subject, body=body)
        return failure or CapabilityResult()

    async def send_sms(self, contact_id: str, message: str) -> CapabilityResult:
        failure = self._record("send_sms", contact_id=contact_id, message=message)
        return failure or CapabilityResult(deferred=True)

    async def add_tag(self, contact_id: str, tag: str) -> CapabilityResult:
        failure = self._record("add_tag", contact_id=contact_id, tag=tag)
        if failure:
            return failure
        contact = self.contacts.setdefault(contact_id, {"id": contact_id, "tags": []})
        tags = contact.setdefault("tags", [])
        if tag not in tags:
            tags.append(tag)
        return CapabilityResult()

    async def remove_tag(self, contact_id: str, tag: str) -> CapabilityResult:
        failure = self._record("remove_tag", contact_id=contact_id, tag=tag)
        if failure:
            return failure
        contact = self.contacts.get(contact_id)
        if contact and tag in contact.get("tags", []):
            contact["tags"].remove(tag)
        return CapabilityResult()

    async def move_pipeline_stage(
        self, contact_id: str, pipeline_id: str, stage_id: str
    ) -> CapabilityResult:
        failure = self._record(
            "move_pipeline_stage",
            contact_id=contact_id,
            pipeline_id=pipeline_id,
            stage_id=stage_id,
        )
        if failure:
            return failure
        contact = self.contacts.setdefault(contact_id, {"id": contact_id, "tags": []})
        contact.setdefault("pipelines", {})[pipeline_id] = stage_id
        return CapabilityResult()

    async def create_task(
        self,
        contact_id: str,
        title: str,
        description: Optional[str] = None,
        due_at: Optional[datetime] = None,
        assigned_to: Optional[str] = None,
    ) -> CapabilityResult:
        failure = self._record(
            "create_task",
            contact_id=contact_id,
            title=title,
            description=description,
            due_at=due_at,
            assigned_to=assigned_to,
        )
        return failure or CapabilityResult()

    async def call_webhook(
        self,
        url: str,
        method: str = "POST",
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> CapabilityResult:
        failure = self._record(
            "call_webhook", url=url, method=method, payload=payload, headers=headers
        )
        return failure or CapabilityResult()

    async def book_appointment(
        self,
        contact_id: str,
        calendar_id: str,
        start_at: datetime,
        duration_minutes: int = 30,
        title: Optional[str] = None,
    ) -> CapabilityResult:
        failure = self._record(
            "book_appointment",
            contact_id=contact_id,
            calendar_id=calendar_id,
            start_at=start_at,
            duration_minutes=duration_minutes,
            title=title,
        )
        return failure or CapabilityResult()
