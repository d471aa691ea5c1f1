"""Interface shared by event transports."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import DomainEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Delivers :class:`DomainEvent` objects between producers and listeners.

    ``RawMessageT`` is whatever the broker needs back to settle a delivery.
    Transports are async context managers that connect on entry.
    """

    async def connect(self) -> None:
        """Open the broker connection; nothing to do for local transports."""

    async def disconnect(self) -> None:
        """Close the broker connection."""

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, event: DomainEvent) -> None:
        """Queue ``event`` on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, DomainEvent]]:
        """Yield ``(raw_message, event)`` pairs from ``topic``.

        Stops after ``lifespan`` seconds, or never when it is ``None``.
        Every yielded message must be settled with :meth:`ack` or
        :meth:`nack`.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark the delivery as handled."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject the delivery; brokers without redelivery just ack it."""
        await self.ack(raw_message)
