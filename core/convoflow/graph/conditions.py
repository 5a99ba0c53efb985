"""
Deterministic condition evaluation for ``condition`` nodes.

A condition compares a field against a literal:

    config = {
        "condition_type": "field_greater",   # or "operator": "greater"
        "field_name": "age",                 # or "field" / "variable"
        "value": "18",
        "conditions": [                      # optional custom labelled branches
            {"label": "vip", "operator": "has_tag", "value": "vip"},
        ],
    }

Field, value and tag names are interpolated against the Variable Store
first. The result is a branch id: a custom label, ``true``, ``false`` or
the reserved ``default`` when the field is missing.

Evaluation is pure: the same variables, operator and literal always give
the same branch.
"""

import logging
from dataclasses import dataclass
from typing import Any

from convoflow.graph.edge import DEFAULT_BRANCH, EdgeSpec, WorkflowGraph
from convoflow.graph.node import NodeSpec
from convoflow.graph.variables import MISSING, VariableStore

logger = logging.getLogger(__name__)

TRUE_BRANCH = "true"
FALSE_BRANCH = "false"

OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "greater",
    "less",
    "has_tag",
    "does_not_have_tag",
    "empty",
    "not_empty",
)

_OPERATOR_ALIASES = {
    "greater_than": "greater",
    "less_than": "less",
    "is_empty": "empty",
    "is_not_empty": "not_empty",
    "field_equals": "equals",
    "field_contains": "contains",
    "field_greater": "greater",
    "field_less": "less",
    "custom_field_equals": "equals",
    "custom_field_contains": "contains",
    "custom_field_empty": "empty",
    "custom_field_not_empty": "not_empty",
}

# Operators for which an absent field is a legitimate answer rather than "no data"
_MISSING_IS_MEANINGFUL = {"empty", "does_not_have_tag", "has_tag"}


def normalise_operator(operator: str | None) -> str:
    op = (operator or "equals").strip().lower()
    op = _OPERATOR_ALIASES.get(op, op)
    if op not in OPERATORS:
        raise ValueError(f"Unknown condition operator '{operator}'")
    return op


@dataclass
class ConditionResult:
    """Outcome of evaluating a condition node."""

    branch: str
    field: str | None = None
    operator: str | None = None
    actual: Any = None
    expected: Any = None

    def describe(self) -> str:
        return f"Condition: {self.field} {self.operator} {self.expected} -> {self.branch}"


def _contact_tags(variables: VariableStore) -> list[str]:
    tags = variables.get("tags")
    if tags is None:
        tags = variables.get("contact.tags")
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]
    return [str(t).lower() for t in (tags or [])]


def _resolve_field(variables: VariableStore, field: str, custom_field: bool) -> Any:
    """Contact attribute or variable first; custom fields live under ``custom_fields``."""
    if custom_field:
        custom_fields = variables.get("custom_fields")
        if isinstance(custom_fields, dict) and field in custom_fields:
            return custom_fields[field]
    value = variables.resolve(field)
    if value is MISSING:
        contact = variables.get("contact")
        if isinstance(contact, dict) and field in contact:
            return contact[field]
        return MISSING
    return value


def _is_empty(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compare(operator: str, actual: Any, expected: Any, tags: list[str] | None = None) -> bool:
    """
    Apply a normalised operator. ``actual`` may be the missing sentinel only
    for operators in _MISSING_IS_MEANINGFUL.
    """
    match operator:
        case "equals":
            if isinstance(actual, bool):
                return str(actual).lower() == str(expected).strip().lower()
            a, e = _to_number(actual), _to_number(expected)
            if a is not None and e is not None:
                return a == e
            return str(actual) == str(expected)
        case "not_equals":
            return not compare("equals", actual, expected)
        case "contains":
            if isinstance(actual, (list, tuple)):
                return any(str(item) == str(expected) for item in actual)
            return str(expected).lower() in str(actual).lower()
        case "greater" | "less":
            a, e = _to_number(actual), _to_number(expected)
            if a is None or e is None:
                return False
            return a > e if operator == "greater" else a < e
        case "has_tag":
            return str(expected).strip().lower() in (tags or [])
        case "does_not_have_tag":
            return str(expected).strip().lower() not in (tags or [])
        case "empty":
            return _is_empty(actual)
        case "not_empty":
            return not _is_empty(actual)
    raise ValueError(f"Unknown condition operator '{operator}'")


def evaluate_clause(
    variables: VariableStore,
    field: str | None,
    operator: str | None,
    value: Any,
    custom_field: bool = False,
) -> bool | None:
    """
    Evaluate one field/operator/value clause.

    Returns None when the field is missing and the operator needs data
    (the caller maps that to the ``default`` branch).
    """
    op = normalise_operator(operator)
    expected = variables.interpolate_payload(value)

    if op in ("has_tag", "does_not_have_tag"):
        tag = expected if expected not in (None, "") else field
        return compare(op, None, variables.interpolate(str(tag or "")), tags=_contact_tags(variables))

    field_name = variables.interpolate(field or "").strip()
    actual = _resolve_field(variables, field_name, custom_field) if field_name else MISSING
    if actual is MISSING and op not in _MISSING_IS_MEANINGFUL:
        return None
    return compare(op, actual, expected)


def evaluate_condition(node: NodeSpec, variables: VariableStore) -> ConditionResult:
    """
    Decide which branch a condition node takes.

    Custom labelled conditions are tried first in declaration order; the
    first one that holds wins. Otherwise the main clause yields ``true`` or
    ``false``, or ``default`` when its field is missing.
    """
    config = node.config
    condition_type = config.get("condition_type") or ""
    custom_field = condition_type.startswith("custom_field")
    field = config.get("field_name") or config.get("field") or config.get("variable")

    for index, custom in enumerate(node.custom_conditions):
        label = custom.get("label") or f"condition_{index}"
        held = evaluate_clause(
            variables,
            custom.get("field") or custom.get("field_name") or field,
            custom.get("operator") or "equals",
            custom.get("value"),
            custom_field=custom_field,
        )
        if held:
            return ConditionResult(
                branch=label,
                field=custom.get("field") or field,
                operator=custom.get("operator") or "equals",
                expected=custom.get("value"),
            )

    if condition_type == "custom":
        return ConditionResult(branch=DEFAULT_BRANCH, field=field)

    operator = config.get("operator")
    if condition_type and (not operator or operator == "equals"):
        operator = condition_type
    value = config.get("value")
    held = evaluate_clause(variables, field, operator, value, custom_field=custom_field)

    if held is None:
        branch = DEFAULT_BRANCH
    else:
        branch = TRUE_BRANCH if held else FALSE_BRANCH
    return ConditionResult(
        branch=branch,
        field=field,
        operator=normalise_operator(operator),
        actual=variables.get(field) if field else None,
        expected=value,
    )


def resolve_condition_edge(graph: WorkflowGraph, node: NodeSpec, branch: str) -> EdgeSpec | None:
    """
    Pick the outgoing edge for a branch id.

    Order: exact conditional label (or its ``condition_<i>`` handle), then a
    ``default`` conditional edge, then the standard edge. None means stay.
    """
    edge = graph.get_conditional_edge(node.id, branch)
    if edge is None:
        for index, custom in enumerate(node.custom_conditions):
            if custom.get("label") == branch:
                edge = graph.get_conditional_edge(node.id, f"condition_{index}")
                break
    if edge is None:
        edge = graph.get_conditional_edge(node.id, DEFAULT_BRANCH)
    if edge is None:
        edge = graph.get_standard_edge(node.id)
    return edge
