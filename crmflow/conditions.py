"""Condition evaluation against a contact's materialized context.

Evaluation is three-valued: a comparison is ``true``, ``false`` or
``no_value`` when the referenced attribute is absent (or cannot be compared
with the expected value). ``no_value`` is a distinct falsy branch rather
than an error, so a contact with sparse data never fails an enrollment.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional

from .constants import BRANCH_FALSE, BRANCH_NO_VALUE, BRANCH_TRUE
from .contracts import Comparison, ComparisonOperator, Expression

_MISSING = object()

CONTEXT_ROOTS = ("contact", "event", "enrollment")


def build_context(
    contact: Optional[Mapping[str, Any]],
    payload: Optional[Mapping[str, Any]] = None,
    enrollment: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Assemble the read-only mapping conditions and templates see."""
    return {
        "contact": dict(contact or {}),
        "event": dict(payload or {}),
        "enrollment": dict(enrollment or {}),
    }


def resolve(context: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted ``path``; bare names refer to contact attributes."""
    parts = path.split(".")
    if parts[0] not in CONTEXT_ROOTS:
        parts = ["contact", *parts]
    current: Any = context
    for part in parts:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _tags(context: Mapping[str, Any]) -> list:
    tags = resolve(context, "contact.tags")
    if tags is _MISSING or tags is None:
        return []
    if isinstance(tags, str):
        return [tags]
    if not isinstance(tags, Iterable):
        return []
    return list(tags)


def _compare(comparison: Comparison, context: Mapping[str, Any]) -> str:
    op = comparison.operator
    expected = comparison.value

    if op is ComparisonOperator.HAS_TAG:
        return BRANCH_TRUE if expected in _tags(context) else BRANCH_FALSE
    if op is ComparisonOperator.NOT_HAS_TAG:
        return BRANCH_FALSE if expected in _tags(context) else BRANCH_TRUE

    actual = resolve(context, comparison.field)
    present = actual is not _MISSING and actual is not None and actual != ""
    if op is ComparisonOperator.EXISTS:
        return BRANCH_TRUE if present else BRANCH_FALSE
    if op is ComparisonOperator.NOT_EXISTS:
        return BRANCH_FALSE if present else BRANCH_TRUE
    if not present:
        return BRANCH_NO_VALUE

    try:
        if op is ComparisonOperator.EQ:
            result = actual == expected
        elif op is ComparisonOperator.NE:
            result = actual != expected
        elif op is ComparisonOperator.GT:
            result = actual > expected
        elif op is ComparisonOperator.GTE:
            result = actual >= expected
        elif op is ComparisonOperator.LT:
            result = actual < expected
        elif op is ComparisonOperator.LTE:
            result = actual <= expected
        elif op is ComparisonOperator.CONTAINS:
            result = expected in actual
        elif op is ComparisonOperator.NOT_CONTAINS:
            result = expected not in actual
        else:  # pragma: no cover - enum is exhaustive
            return BRANCH_NO_VALUE
    except TypeError:
        return BRANCH_NO_VALUE
    return BRANCH_TRUE if result else BRANCH_FALSE


def _combine(operator: str, results: Iterable[str]) -> str:
    results = list(results)
    if operator == "or":
        if BRANCH_TRUE in results:
            return BRANCH_TRUE
        if BRANCH_NO_VALUE in results:
            return BRANCH_NO_VALUE
        return BRANCH_FALSE if results else BRANCH_TRUE
    if BRANCH_FALSE in results:
        return BRANCH_FALSE
    if BRANCH_NO_VALUE in results:
        return BRANCH_NO_VALUE
    return BRANCH_TRUE


def evaluate(expression: Expression, context: Mapping[str, Any]) -> str:
    """Return the branch label selected by ``expression`` for ``context``."""
    return _combine(
        expression.operator, (_compare(c, context) for c in expression.conditions)
    )


def is_satisfied(expression: Expression, context: Mapping[str, Any]) -> bool:
    return evaluate(expression, context) == BRANCH_TRUE
