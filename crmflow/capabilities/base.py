"""Interfaces to the platform subsystems workflows act on."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Dict, Optional

from ..contracts import CapabilityResult


class ContactDirectory(metaclass=abc.ABCMeta):
    """Read access to contact attributes (including ``tags``)."""

    @abc.abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        """Return current contact attributes, or ``None`` if unknown."""
        raise NotImplementedError


class BaseCapabilities(metaclass=abc.ABCMeta):
    """Abstract set of side-effecting calls owned by other subsystems.

    Implementations either return a :class:`CapabilityResult` or raise; the
    action dispatcher turns both into dispatch outcomes.
    """

    @abc.abstractmethod
    async def send_email(
        self, contact_id: str, subject: str, body: str
    ) -> CapabilityResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def send_sms(self, contact_id: str, message: str) -> CapabilityResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def add_tag(self, contact_id: str, tag: str) -> CapabilityResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def remove_tag(self, contact_id: str, tag: str) -> CapabilityResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def move_pipeline_stage(
        self, contact_id: str, pipeline_id: str, stage_id: str
    ) -> CapabilityResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def create_task(
        self,
        contact_id: str,
        title: str,
        description: Optional[str] = None,
        due_at: Optional[datetime] = None,
        assigned_to: Optional[str] = None,
    ) -> CapabilityResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def call_webhook(
        self,
        url: str,
        method: str = "POST",
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> CapabilityResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def book_appointment(
        self,
        contact_id: str,
        calendar_id: str,
        start_at: datetime,
        duration_minutes: int = 30,
        title: Optional[str] = None,
    ) -> CapabilityResult:
        raise NotImplementedError
