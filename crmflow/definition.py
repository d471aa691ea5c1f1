"""Workflow graph validation, lifecycle transitions and authoring edits."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Set

from .contracts import (
    Connection,
    Step,
    StepType,
    Workflow,
    WorkflowStatus,
    new_id,
    utcnow,
)
from .errors import (
    AmbiguousBranch,
    DanglingEdge,
    DuplicateStep,
    MissingEntry,
    MultipleEntry,
    UnguardedCycle,
    Unreachable,
    ValidationError,
    WorkflowStateError,
)

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Validation


def _check_entry(workflow: Workflow) -> List[ValidationError]:
    entries = workflow.entry_steps()
    if not entries:
        return [MissingEntry("workflow has no trigger step")]
    if len(entries) > 1:
        return [
            MultipleEntry(
                f"workflow has {len(entries)} trigger steps, expected exactly one",
                [s.id for s in entries],
            )
        ]
    return []


def _check_unique_ids(workflow: Workflow) -> List[ValidationError]:
    counts = Counter(s.id for s in workflow.steps)
    return [
        DuplicateStep(f"step id {step_id!r} is used {n} times", [step_id])
        for step_id, n in counts.items()
        if n > 1
    ]


def _check_edges(workflow: Workflow) -> List[ValidationError]:
    known = {s.id for s in workflow.steps}
    errors: List[ValidationError] = []
    for conn in workflow.connections:
        missing = [e for e in (conn.from_step_id, conn.to_step_id) if e not in known]
        if missing:
            errors.append(
                DanglingEdge(
                    f"connection {conn.from_step_id!r} -> {conn.to_step_id!r} "
                    f"references unknown step(s) {', '.join(missing)}",
                    missing,
                )
            )
    return errors


def _check_branches(workflow: Workflow) -> List[ValidationError]:
    errors: List[ValidationError] = []
    for step in workflow.steps:
        outgoing = workflow.outgoing(step.id)
        if step.type is StepType.CONDITION:
            declared = set(step.config.branches)
            labels = Counter(c.branch for c in outgoing)
            for label, n in labels.items():
                if n > 1:
                    errors.append(
                        AmbiguousBranch(
                            f"condition {step.id!r} has {n} edges for branch {label!r}",
                            [step.id],
                        )
                    )
                if label is not None and label not in declared:
                    errors.append(
                        AmbiguousBranch(
                            f"condition {step.id!r} has an edge for undeclared "
                            f"branch {label!r}",
                            [step.id],
                        )
                    )
            continue
        if len(outgoing) > 1:
            errors.append(
                AmbiguousBranch(
                    f"step {step.id!r} has {len(outgoing)} outgoing edges, "
                    "at most one is allowed",
                    [step.id],
                )
            )
        labelled = [c.branch for c in outgoing if c.branch is not None]
        if labelled:
            errors.append(
                AmbiguousBranch(
                    f"{step.type.value} step {step.id!r} cannot have branch edges "
                    f"({', '.join(labelled)})",
                    [step.id],
                )
            )
    return errors


def reachable_from(workflow: Workflow, start: str) -> Set[str]:
    graph = workflow.adjacency()
    seen: Set[str] = set()
    stack = [start]
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(graph.get(node, []))
    return seen


def _check_reachability(workflow: Workflow) -> List[ValidationError]:
    entry = workflow.entry_step()
    if entry is None:
        return []
    seen = reachable_from(workflow, entry.id)
    unreachable = [s.id for s in workflow.steps if s.id not in seen]
    if not unreachable:
        return []
    return [
        Unreachable(
            f"steps not reachable from trigger: {', '.join(unreachable)}", unreachable
        )
    ]


def _check_cycles(workflow: Workflow) -> List[ValidationError]:
    """Find cycles made only of non-wait steps.

    Wait steps suspend the enrollment, so a loop through one advances at
    most once per scheduler resume.
    """
    waits = {s.id for s in workflow.steps if s.type is StepType.WAIT}
    graph = {
        node: [t for t in targets if t not in waits]
        for node, targets in workflow.adjacency().items()
        if node not in waits
    }
    white, grey, black = 0, 1, 2
    color: Dict[str, int] = {node: white for node in graph}
    errors: List[ValidationError] = []

    for root in graph:
        if color[root] != white:
            continue
        color[root] = grey
        path = [root]
        stack = [iter(graph[root])]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = black
                stack.pop()
                continue
            if nxt not in color:
                continue
            if color[nxt] == grey:
                cycle = path[path.index(nxt):]
                errors.append(
                    UnguardedCycle(
                        f"cycle without a wait step: {' -> '.join(cycle + [nxt])}",
                        cycle,
                    )
                )
            elif color[nxt] == white:
                color[nxt] = grey
                path.append(nxt)
                stack.append(iter(graph[nxt]))
    return errors


def collect_errors(workflow: Workflow) -> List[ValidationError]:
    """Return every structural problem in ``workflow``."""
    errors: List[ValidationError] = []
    errors.extend(_check_entry(workflow))
    errors.extend(_check_unique_ids(workflow))
    edge_errors = _check_edges(workflow)
    errors.extend(edge_errors)
    errors.extend(_check_branches(workflow))
    if not edge_errors:
        errors.extend(_check_reachability(workflow))
        errors.extend(_check_cycles(workflow))
    return errors


def validate(workflow: Workflow) -> None:
    """Raise the first :class:`ValidationError` found, if any."""
    errors = collect_errors(workflow)
    if errors:
        raise errors[0]


# ----------------------------------------------------------------------
# Lifecycle


def activate(workflow: Workflow) -> Workflow:
    if workflow.status is WorkflowStatus.ARCHIVED:
        raise WorkflowStateError(f"workflow {workflow.id} is archived")
    validate(workflow)
    workflow.status = WorkflowStatus.ACTIVE
    workflow.updated_at = utcnow()
    logger.info(f"Activated workflow {workflow.id} version {workflow.version}")
    return workflow


def pause(workflow: Workflow) -> Workflow:
    if workflow.status is not WorkflowStatus.ACTIVE:
        raise WorkflowStateError(
            f"only active workflows can be paused (status={workflow.status.value})"
        )
    workflow.status = WorkflowStatus.PAUSED
    workflow.updated_at = utcnow()
    return workflow


def archive(workflow: Workflow, cancel_in_flight: bool = False) -> Workflow:
    workflow.status = WorkflowStatus.ARCHIVED
    # once in-flight enrollments are cancelled, archiving again keeps that
    workflow.cancel_on_archive = workflow.cancel_on_archive or cancel_in_flight
    workflow.updated_at = utcnow()
    logger.info(
        f"Archived workflow {workflow.id} (cancel_in_flight={cancel_in_flight})"
    )
    return workflow


# ----------------------------------------------------------------------
# Authoring


def _ensure_editable(workflow: Workflow) -> None:
    if workflow.status is WorkflowStatus.ARCHIVED:
        raise WorkflowStateError(f"workflow {workflow.id} is archived")


def apply_structural_edit(workflow: Workflow, edited: Workflow) -> Workflow:
    """Commit ``edited`` as the next version of ``workflow``.

    Active workflows must stay valid; drafts and paused workflows are only
    validated on activation.
    """
    _ensure_editable(workflow)
    if edited.status is WorkflowStatus.ACTIVE:
        validate(edited)
    edited.version = workflow.version + 1
    edited.updated_at = utcnow()
    return edited


def add_step(
    workflow: Workflow,
    step_type: str,
    config: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
    step_id: Optional[str] = None,
) -> Step:
    edited = workflow.model_copy(deep=True)
    step = Step(id=step_id or new_id(), type=step_type, name=name, config=config)
    if edited.get_step(step.id) is not None:
        raise DuplicateStep(f"step id {step.id!r} already exists", [step.id])
    edited.steps.append(step)
    _commit(workflow, apply_structural_edit(workflow, edited))
    return step


def update_step(
    workflow: Workflow,
    step_id: str,
    config: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
) -> Step:
    edited = workflow.model_copy(deep=True)
    current = edited.get_step(step_id)
    if current is None:
        raise DanglingEdge(f"unknown step {step_id!r}", [step_id])
    merged = current.config.model_dump()
    merged.update(config or {})
    replacement = Step(
        id=current.id,
        type=current.type,
        name=name if name is not None else current.name,
        config=merged,
    )
    edited.steps = [replacement if s.id == step_id else s for s in edited.steps]
    _commit(workflow, apply_structural_edit(workflow, edited))
    return replacement


def remove_step(workflow: Workflow, step_id: str) -> None:
    edited = workflow.model_copy(deep=True)
    if edited.get_step(step_id) is None:
        raise DanglingEdge(f"unknown step {step_id!r}", [step_id])
    edited.steps = [s for s in edited.steps if s.id != step_id]
    edited.connections = [
        c
        for c in edited.connections
        if c.from_step_id != step_id and c.to_step_id != step_id
    ]
    _commit(workflow, apply_structural_edit(workflow, edited))


def connect_steps(
    workflow: Workflow,
    from_step_id: str,
    to_step_id: str,
    branch: Optional[str] = None,
) -> Connection:
    edited = workflow.model_copy(deep=True)
    for step_id in (from_step_id, to_step_id):
        if edited.get_step(step_id) is None:
            raise DanglingEdge(f"unknown step {step_id!r}", [step_id])
    conn = Connection(from_step_id=from_step_id, to_step_id=to_step_id, branch=branch)
    # a new edge for the same source and branch replaces the old one
    edited.connections = [
        c
        for c in edited.connections
        if not (c.from_step_id == from_step_id and c.branch == branch)
    ]
    edited.connections.append(conn)
    _commit(workflow, apply_structural_edit(workflow, edited))
    return conn


def disconnect_steps(
    workflow: Workflow, from_step_id: str, branch: Optional[str] = None
) -> None:
    edited = workflow.model_copy(deep=True)
    edited.connections = [
        c
        for c in edited.connections
        if not (c.from_step_id == from_step_id and c.branch == branch)
    ]
    _commit(workflow, apply_structural_edit(workflow, edited))


def duplicate(workflow: Workflow, name: Optional[str] = None) -> Workflow:
    now = utcnow()
    return workflow.model_copy(
        deep=True,
        update={
            "id": new_id(),
            "name": name or f"{workflow.name} (Copy)",
            "status": WorkflowStatus.DRAFT,
            "version": 1,
            "cancel_on_archive": False,
            "created_at": now,
            "updated_at": now,
        },
    )


def _commit(target: Workflow, edited: Workflow) -> None:
    for field_name in ("steps", "connections", "trigger", "version", "updated_at"):
        setattr(target, field_name, getattr(edited, field_name))
