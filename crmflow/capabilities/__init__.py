"""Capability factory and exports."""

from __future__ import annotations

from typing import Optional

from ..config import CrmflowConfig, load_config
from .base import BaseCapabilities, ContactDirectory
from .inmemory import InMemoryCapabilities


def get_capabilities(config: Optional[CrmflowConfig] = None) -> BaseCapabilities:
    """Build the configured capability backend.

    The returned object also implements :class:`ContactDirectory`.
    """

    config = config or load_config()
    caps = config.capabilities
    if caps.backend == "inmemory":
        return InMemoryCapabilities()
    elif caps.backend == "http":
        from .http import HttpCapabilities

        if not caps.base_url:
            raise ValueError("capabilities.base_url is required for the http backend")
        return HttpCapabilities(
            caps.base_url, api_key=caps.api_key, timeout=caps.timeout_seconds
        )
    else:
        raise ValueError(f"Unsupported capabilities backend: {caps.backend}")


__all__ = [
    "BaseCapabilities",
    "ContactDirectory",
    "InMemoryCapabilities",
    "get_capabilities",
]
