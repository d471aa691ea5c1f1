"""Exception hierarchy for crmflow."""

from __future__ import annotations

from typing import Iterable


class CrmflowError(Exception):
    """Base class for all crmflow errors."""


class DefinitionError(CrmflowError):
    """A workflow definition cannot be used as authored."""


class ValidationError(DefinitionError):
    """Structural problem found while validating a workflow graph."""

    code = "invalid"

    def __init__(self, message: str, step_ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.step_ids = list(step_ids)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "step_ids": self.step_ids}


class MissingEntry(ValidationError):
    code = "missing_entry"


class MultipleEntry(ValidationError):
    code = "multiple_entry"


class DuplicateStep(ValidationError):
    code = "duplicate_step"


class DanglingEdge(ValidationError):
    code = "dangling_edge"


class Unreachable(ValidationError):
    code = "unreachable"


class AmbiguousBranch(ValidationError):
    code = "ambiguous_branch"


class UnguardedCycle(ValidationError):
    code = "unguarded_cycle"


class WorkflowStateError(CrmflowError):
    """Operation not allowed in the workflow's current lifecycle status."""


class WorkflowNotFound(CrmflowError):
    """No workflow exists with the given id."""


class EnrollmentNotFound(CrmflowError):
    """No enrollment exists with the given id."""


class ConcurrentModification(CrmflowError):
    """An enrollment kept changing underneath a compare-and-set write."""
