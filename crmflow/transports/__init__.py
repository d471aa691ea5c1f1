"""Event transports that feed domain events to the trigger dispatcher."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CrmflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[CrmflowConfig] = None
) -> BaseTransport:
    """Build the event transport named by ``backend``.

    Falls back to ``CRMFLOW_TRANSPORT`` and then ``transport.backend`` in
    the loaded configuration. ``redis`` is imported only when selected.
    """

    config = config or load_config()
    name = (backend or os.getenv("CRMFLOW_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        from .redis import RedisTransport

        return RedisTransport.from_config(config.transport.redis)
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
