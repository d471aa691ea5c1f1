"""Capabilities backed by the platform's HTTP services."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import requests

from ..contracts import CapabilityResult
from .base import BaseCapabilities, ContactDirectory

logger = logging.getLogger(__name__)


class HttpCapabilities(BaseCapabilities, ContactDirectory):
    """Forward capability calls to ``{base_url}/capabilities/<name>``.

    2xx responses succeed (202 counts as deferred), 4xx are permanent
    failures except 429, and 5xx or connection problems raise so the
    engine retries. Webhook actions call the target URL directly.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"

    def _request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        return self._session.request(
            method, url, json=payload, headers=headers, timeout=self.timeout
        )

    @staticmethod
    def _to_result(resp: requests.Response) -> CapabilityResult:
        if resp.status_code >= 500:
            resp.raise_for_status()
        if resp.status_code >= 400:
            return CapabilityResult(
                success=False,
                retryable=resp.status_code == 429,
                detail=f"HTTP {resp.status_code}: {resp.text[:200]}",
            )
        data: Dict[str, Any] = {}
        if resp.content and "json" in resp.headers.get("Content-Type", ""):
            body = resp.json()
            data = body if isinstance(body, dict) else {"body": body}
        return CapabilityResult(deferred=resp.status_code == 202, data=data)

    async def _invoke(self, capability: str, payload: Dict[str, Any]) -> CapabilityResult:
        url = f"{self.base_url}/capabilities/{capability}"
        resp = await asyncio.to_thread(self._request, "POST", url, payload)
        logger.debug(f"{capability} -> HTTP {resp.status_code}")
        return self._to_result(resp)

    # ------------------------------------------------------------------
    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/contacts/{contact_id}"
        resp = await asyncio.to_thread(self._request, "GET", url)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def send_email(self, contact_id: str, subject: str, body: str) -> CapabilityResult:
        return await self._invoke(
            "send_email", {"contact_id": contact_id, "subject": subject, "body": body}
        )

    async def send_sms(self, contact_id: str, message: str) -> CapabilityResult:
        return await self._invoke("send_sms", {"contact_id": contact_id, "message": message})

    async def add_tag(self, contact_id: str, tag: str) -> CapabilityResult:
        return await self._invoke("add_tag", {"contact_id": contact_id, "tag": tag})

    async def remove_tag(self, contact_id: str, tag: str) -> CapabilityResult:
        return await self._invoke("remove_tag", {"contact_id": contact_id, "tag": tag})

    async def move_pipeline_stage(
        self, contact_id: str, pipeline_id: str, stage_id: str
    ) -> CapabilityResult:
        return await self._invoke(
            "move_pipeline_stage",
            {"contact_id": contact_id, "pipeline_id": pipeline_id, "stage_id": stage_id},
        )

    async def create_task(
        self,
        contact_id: str,
        title: str,
        description: Optional[str] = None,
        due_at: Optional[datetime] = None,
        assigned_to: Optional[str] = None,
    ) -> CapabilityResult:
        return await self._invoke(
            "create_task",
            {
                "contact_id": contact_id,
                "title": title,
                "description": description,
                "due_at": due_at.isoformat() if due_at else None,
                "assigned_to": assigned_to,
            },
        )

    async def call_webhook(
        self,
        url: str,
        method: str = "POST",
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> CapabilityResult:
        resp = await asyncio.to_thread(
            requests.request,
            method.upper(),
            url,
            json=payload,
            headers=headers,
            timeout=self.timeout,
        )
        return self._to_result(resp)

    async def book_appointment(
        self,
        contact_id: str,
        calendar_id: str,
        start_at: datetime,
        duration_minutes: int = 30,
        title: Optional[str] = None,
    ) -> CapabilityResult:
        return await self._invoke(
            "book_appointment",
            {
                "contact_id": contact_id,
                "calendar_id": calendar_id,
                "start_at": start_at.isoformat(),
                "duration_minutes": duration_minutes,
                "title": title,
            },
        )
