"""HttpCapabilities against a recorded session."""

import pytest
import requests

from crmflow.capabilities.http import HttpCapabilities


class _Response:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body
        self.headers = {"Content-Type": "application/json"} if body is not None else {}
        self.content = b"x" if body is not None else b""
        self.text = str(body or "")

    def json(self):
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class _Session:
    def __init__(self, *responses):
        self.headers = {}
        self.requests = []
        self._responses = list(responses)

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append((method, url, json))
        return self._responses.pop(0)


@pytest.mark.asyncio
async def test_capability_call_posts_to_platform():
    session = _Session(_Response(200, {"message_id": "m1"}))
    caps = HttpCapabilities("https://api.example.com/", api_key="k", session=session)

    result = await caps.send_email("c1", "Hello", "Body")
    assert result.success
    assert result.data == {"message_id": "m1"}
    assert session.headers["Authorization"] == "Bearer k"
    method, url, body = session.requests[0]
    assert (method, url) == ("POST", "https://api.example.com/capabilities/send_email")
    assert body == {"contact_id": "c1", "subject": "Hello", "body": "Body"}


@pytest.mark.asyncio
async def test_status_mapping():
    session = _Session(
        _Response(202),
        _Response(422, {"error": "bad tag"}),
        _Response(429),
        _Response(503),
    )
    caps = HttpCapabilities("https://api.example.com", session=session)

    assert (await caps.send_sms("c1", "hi")).deferred
    rejected = await caps.add_tag("c1", "??")
    assert not rejected.success and not rejected.retryable
    throttled = await caps.add_tag("c1", "x")
    assert not throttled.success and throttled.retryable
    with pytest.raises(requests.HTTPError):
        await caps.remove_tag("c1", "x")


@pytest.mark.asyncio
async def test_get_contact():
    session = _Session(_Response(200, {"id": "c1", "tags": ["lead"]}), _Response(404))
    caps = HttpCapabilities("https://api.example.com", session=session)

    assert (await caps.get_contact("c1"))["tags"] == ["lead"]
    assert await caps.get_contact("nobody") is None
    assert session.requests[1][:2] == ("GET", "https://api.example.com/contacts/nobody")
