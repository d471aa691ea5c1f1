"""crmflow: Event-driven CRM automation workflows."""

from .actions import ActionDispatcher, DispatchOutcome
from .analytics import Analytics
from .capabilities import get_capabilities
from .contracts import DomainEvent, Enrollment, EnrollmentStatus, Step, Workflow
from .engine import EnrollmentEngine
from .persistence import get_repository
from .runtime import Runtime, build_runtime
from .scheduler import Scheduler
from .service import WorkflowService
from .transports import get_transport
from .triggers import TriggerDispatcher, TriggerIndex

__version__ = "0.1.0"
__all__ = [
    "ActionDispatcher",
    "Analytics",
    "DispatchOutcome",
    "DomainEvent",
    "Enrollment",
    "EnrollmentEngine",
    "EnrollmentStatus",
    "Runtime",
    "Scheduler",
    "Step",
    "TriggerDispatcher",
    "TriggerIndex",
    "Workflow",
    "WorkflowService",
    "build_runtime",
    "get_capabilities",
    "get_repository",
    "get_transport",
]
