"""Transport tests."""

import pytest

from crmflow.contracts import DomainEvent
from crmflow.transports.inmemory import InMemoryTransport


def _event(**overrides):
    data = {
        "event_type": "form_submitted",
        "tenant_id": "t1",
        "contact_id": "c1",
        "payload": {"form_id": "f1"},
    }
    data.update(overrides)
    return DomainEvent(**data)


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    transport = InMemoryTransport()
    event = _event()
    await transport.publish("events", event)

    received = []
    async for raw_msg, received_event in transport.subscribe("events", lifespan=0.2):
        received.append(received_event)
        await transport.ack(raw_msg)

    assert [e.event_id for e in received] == [event.event_id]
    assert received[0].payload == {"form_id": "f1"}
    assert received[0].occurred_at == event.occurred_at
    assert len(transport.acked) == 1


@pytest.mark.asyncio
async def test_inmemory_transport_topics_are_separate():
    transport = InMemoryTransport()
    await transport.publish("a", _event(contact_id="c1"))
    await transport.publish("b", _event(contact_id="c2"))

    async for _, event in transport.subscribe("b"):
        assert event.contact_id == "c2"
        break
    assert transport.pending("a") == 1
    assert transport.pending("b") == 0


@pytest.mark.asyncio
async def test_inmemory_nack_requeues_or_dead_letters():
    transport = InMemoryTransport()
    await transport.publish("events", _event())

    async for raw_msg, _ in transport.subscribe("events"):
        await transport.nack(raw_msg, requeue=True)
        break
    assert transport.pending("events") == 1

    async for raw_msg, _ in transport.subscribe("events"):
        await transport.nack(raw_msg, requeue=False)
        break
    assert transport.pending("events") == 0
    assert len(transport.dead_letters) == 1


def test_redis_transport_defaults():
    from crmflow.transports.redis import RedisTransport

    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert RedisTransport.queue_name("crmflow.events") == "crmflow:crmflow.events"


@pytest.mark.asyncio
async def test_transport_as_context_manager():
    async with InMemoryTransport() as transport:
        await transport.publish("events", _event())
        assert transport.pending("events") == 1


def test_redis_transport_from_config():
    from crmflow.config import RedisConfig
    from crmflow.transports.redis import RedisTransport

    transport = RedisTransport.from_config(RedisConfig(url="redis://cache:6379/2"))
    assert transport.url == "redis://cache:6379/2"
