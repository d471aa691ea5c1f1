"""Wire the components together from configuration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .actions import ActionDispatcher
from .analytics import Analytics
from .capabilities import BaseCapabilities, ContactDirectory, get_capabilities
from .config import CrmflowConfig, load_config
from .contracts import utcnow
from .engine import EnrollmentEngine
from .persistence import WorkflowRepository, get_repository
from .scheduler import Scheduler
from .service import WorkflowService
from .triggers import TriggerDispatcher


@dataclass
class Runtime:
    config: CrmflowConfig
    repository: WorkflowRepository
    capabilities: BaseCapabilities
    engine: EnrollmentEngine
    analytics: Analytics
    triggers: TriggerDispatcher
    scheduler: Scheduler
    service: WorkflowService

    async def start(self) -> None:
        """Load the trigger index from persisted workflows."""
        await self.triggers.start()


def build_runtime(
    config: Optional[CrmflowConfig] = None,
    capabilities: Optional[BaseCapabilities] = None,
    repository: Optional[WorkflowRepository] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Runtime:
    config = config or load_config()
    repository = repository or get_repository(config.database_url)
    capabilities = capabilities or get_capabilities(config)
    contacts = capabilities if isinstance(capabilities, ContactDirectory) else None

    analytics = Analytics(repository, clock=clock)
    engine = EnrollmentEngine(
        repository,
        ActionDispatcher(capabilities, timeout=config.engine.dispatch_timeout_seconds),
        contacts=contacts,
        retry=config.retry,
        max_steps_per_run=config.engine.max_steps_per_run,
        clock=clock,
        listeners=[analytics.observe],
    )
    triggers = TriggerDispatcher(repository, engine, analytics=analytics, clock=clock)
    scheduler = Scheduler(
        repository,
        engine,
        poll_interval=config.scheduler.poll_interval_seconds,
        batch_size=config.scheduler.batch_size,
        stale_after=config.scheduler.stale_after_seconds,
        clock=clock,
    )
    service = WorkflowService(repository, triggers, engine, analytics)
    return Runtime(
        config=config,
        repository=repository,
        capabilities=capabilities,
        engine=engine,
        analytics=analytics,
        triggers=triggers,
        scheduler=scheduler,
        service=service,
    )
