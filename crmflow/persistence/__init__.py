"""Where workflows, enrollments and stat events are stored."""

from __future__ import annotations

from typing import Optional

from ..config import CrmflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

_repository_instance: WorkflowRepository | None = None


def open_repository(database_url: Optional[str]) -> WorkflowRepository:
    """Open a new repository for ``database_url``.

    ``sqlite://<path>``, ``postgresql://...`` (or ``postgres://``) and
    ``memory://`` are understood; an empty URL means in-memory storage.
    """
    if not database_url:
        return InMemoryWorkflowRepository()

    scheme, _, rest = database_url.partition("://")
    scheme = scheme.lower()
    if scheme == "memory":
        return InMemoryWorkflowRepository()
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(rest or ":memory:")
    if scheme in ("postgres", "postgresql"):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("PostgreSQL support not available (install asyncpg)")
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[CrmflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide repository, opening it on first use.

    The scheduler, the event listener and the CLI share this instance when
    they run in one process. An explicit ``database_url`` or ``config``
    reopens it; otherwise the URL comes from the loaded configuration,
    which already honours ``CRMFLOW_DATABASE_URL`` and ``DATABASE_URL``.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    if database_url is None:
        database_url = (config or load_config()).database_url
    _repository_instance = open_repository(database_url)
    return _repository_instance


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "open_repository",
]
