"""
governance_engines.conditions -- Boolean condition trees over a context map.

Responsibility:
    Parse and evaluate the small expression language used by routing rules,
    gate conditions, and gate threshold rules: a tree of ``Condition``
    leaves (field, operator, value) joined by ``ConditionGroup`` nodes
    (``and`` / ``or``, default ``and``), nested to any depth.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  No scripting language is
    embedded; the interpreter below is the whole semantics.

Invariants enforced:
    - Evaluation is total: an unknown operator, an invalid regex, an
      uncoercible number, or an unparseable date evaluates to False rather
      than raising.
    - Field paths use dot notation; a path through a non-mapping resolves
      to "missing".
    - An empty ``and`` group is True; an empty ``or`` group is False.

Failure modes:
    - ``parse_condition_tree`` raises ValueError for structurally malformed
      input (definition loading calls it so bad YAML fails early).
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Union

OPERATORS: frozenset[str] = frozenset({
    "eq", "ne",
    "gt", "gte", "lt", "lte",
    "in", "not_in",
    "contains", "not_contains",
    "starts_with", "ends_with",
    "matches",
    "exists", "not_exists",
    "between",
    "empty", "not_empty",
    "date_before", "date_after",
})

GROUP_OPERATORS: frozenset[str] = frozenset({"and", "or"})


class _Missing:
    """Sentinel for a field path that does not resolve."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class ConditionGroup:
    operator: str = "and"
    conditions: tuple[ConditionNode, ...] = ()


ConditionNode = Union[Condition, ConditionGroup]


# =========================================================================
# Parsing
# =========================================================================


def parse_condition_tree(data: Any) -> ConditionNode:
    """Build a condition tree from its JSON form.

    Accepted shapes:
        {"field": ..., "operator": ..., "value": ...}      -> Condition
        {"operator": "and"|"or", "conditions": [...]}       -> ConditionGroup
        [node, node, ...]                                    -> implicit "and"

    Raises:
        ValueError: On any other shape, or an unknown group operator.
    """
    if isinstance(data, (Condition, ConditionGroup)):
        return data
    if isinstance(data, list):
        return ConditionGroup("and", tuple(parse_condition_tree(d) for d in data))
    if not isinstance(data, Mapping):
        raise ValueError(f"Condition node must be a mapping or list, got {type(data).__name__}")

    if "conditions" in data:
        op = str(data.get("operator") or "and").lower()
        if op not in GROUP_OPERATORS:
            raise ValueError(f"Unknown condition group operator: {op!r}")
        children = data["conditions"]
        if not isinstance(children, list):
            raise ValueError("'conditions' must be a list")
        return ConditionGroup(op, tuple(parse_condition_tree(c) for c in children))

    if "field" in data:
        if "operator" not in data:
            raise ValueError(f"Condition on field {data['field']!r} has no operator")
        return Condition(
            field=str(data["field"]),
            operator=str(data["operator"]),
            value=data.get("value"),
        )

    raise ValueError("Condition node needs either 'field' or 'conditions'")


def validate_condition_tree(data: Any) -> list[str]:
    """Return human-readable problems with a condition tree (empty = valid)."""
    try:
        tree = parse_condition_tree(data)
    except ValueError as exc:
        return [str(exc)]
    return [
        f"Unknown condition operator: {leaf.operator!r}"
        for leaf in _leaves(tree)
        if leaf.operator not in OPERATORS
    ]


def _leaves(node: ConditionNode):
    if isinstance(node, Condition):
        yield node
    else:
        for child in node.conditions:
            yield from _leaves(child)


# =========================================================================
# Field resolution
# =========================================================================


def resolve_field_value(path: str, context: Mapping[str, Any]) -> Any:
    """Resolve a dot-notation path in a nested mapping; MISSING if absent."""
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return MISSING
        current = current[part]
    return current


# =========================================================================
# Coercion helpers
# =========================================================================


def _to_number(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return None
    return None


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_empty(value: Any) -> bool:
    if value is None or value is MISSING:
        return True
    if isinstance(value, (str, list, tuple, dict, set, frozenset)):
        return len(value) == 0
    return False


def _compare(actual: Any, expected: Any, op: Callable[[Decimal, Decimal], bool]) -> bool:
    left = _to_number(actual)
    right = _to_number(expected)
    if left is None or right is None:
        return False
    return op(left, right)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in actual
    return False


def _matches(actual: Any, pattern: Any) -> bool:
    if not isinstance(actual, str) or not isinstance(pattern, str):
        return False
    try:
        return re.search(pattern, actual) is not None
    except re.error:
        return False


def _between(actual: Any, bounds: Any) -> bool:
    if not isinstance(bounds, (list, tuple)) or len(bounds) != 2:
        return False
    value, low, high = _to_number(actual), _to_number(bounds[0]), _to_number(bounds[1])
    if value is None or low is None or high is None:
        return False
    return low <= value <= high


def _date_compare(actual: Any, expected: Any, before: bool) -> bool:
    left, right = _to_datetime(actual), _to_datetime(expected)
    if left is None or right is None:
        return False
    return left < right if before else left > right


_EVALUATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, v: a is not MISSING and a == v,
    "ne": lambda a, v: a is MISSING or a != v,
    "gt": lambda a, v: _compare(a, v, lambda x, y: x > y),
    "gte": lambda a, v: _compare(a, v, lambda x, y: x >= y),
    "lt": lambda a, v: _compare(a, v, lambda x, y: x < y),
    "lte": lambda a, v: _compare(a, v, lambda x, y: x <= y),
    "in": lambda a, v: isinstance(v, (list, tuple)) and a is not MISSING and a in v,
    "not_in": lambda a, v: isinstance(v, (list, tuple)) and a not in v,
    "contains": _contains,
    "not_contains": lambda a, v: not _contains(a, v),
    "starts_with": lambda a, v: isinstance(a, str) and isinstance(v, str) and a.startswith(v),
    "ends_with": lambda a, v: isinstance(a, str) and isinstance(v, str) and a.endswith(v),
    "matches": _matches,
    "exists": lambda a, v: a is not MISSING and a is not None,
    "not_exists": lambda a, v: a is MISSING or a is None,
    "between": _between,
    "empty": lambda a, v: _is_empty(a),
    "not_empty": lambda a, v: not _is_empty(a),
    "date_before": lambda a, v: _date_compare(a, v, before=True),
    "date_after": lambda a, v: _date_compare(a, v, before=False),
}


# =========================================================================
# Evaluation
# =========================================================================


def evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    evaluator = _EVALUATORS.get(condition.operator)
    if evaluator is None:
        return False
    actual = resolve_field_value(condition.field, context)
    return bool(evaluator(actual, condition.value))


def evaluate_condition_group(group: ConditionGroup, context: Mapping[str, Any]) -> bool:
    results = (evaluate_node(child, context) for child in group.conditions)
    if group.operator == "or":
        return any(results)
    return all(results)


def evaluate_node(node: ConditionNode, context: Mapping[str, Any]) -> bool:
    if isinstance(node, Condition):
        return evaluate_condition(node, context)
    return evaluate_condition_group(node, context)


def matches_conditions(tree: Any, context: Mapping[str, Any] | None) -> bool:
    """Evaluate a stored (JSON-form) condition tree; None / empty matches everything."""
    if tree is None or tree == {} or tree == []:
        return True
    return evaluate_node(parse_condition_tree(tree), context or {})
