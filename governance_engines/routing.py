"""
governance_engines.routing -- Approver routing for one approval stage.

Responsibility:
    Search a template's routing rules for the rule that assigns approvers
    to a given stage, and turn its assignment target into concrete
    ``ResolvedAssignee`` values.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Deterministic rule ordering: rules sorted by (priority, position);
      lower priority number is evaluated first.
    - Search, not aggregation: the first matching primary rule that yields
      at least one approver wins.  Fallback rules are consulted only when
      no primary rule produced approvers.
    - A rule with ``stage_no`` None applies to every stage.

Failure modes:
    - Returns an empty resolution when nothing matches; the caller decides
      whether that is an error.
    - Malformed assignment entries (neither principal nor group) are
      skipped.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from governance_engines.conditions import matches_conditions
from governance_engines.tracer import traced_engine
from governance_kernel.domain.approval import (
    ApprovalRoutingRule,
    AssigneeResolution,
    ResolvedAssignee,
    TaskType,
)


def parse_assignment_target(assign_to: Mapping[str, Any] | None) -> tuple[ResolvedAssignee, ...]:
    """Turn a rule's assignment target into assignees.

    Accepted shapes:
        {"principal_id": "u-1"}
        {"group_id": "g-finance"}
        {"assignees": [{...}, ...], "observers": [{...}, ...]}
    """
    if not assign_to:
        return ()

    if "assignees" in assign_to or "observers" in assign_to:
        entries = [
            (entry, TaskType.APPROVER) for entry in assign_to.get("assignees") or []
        ] + [
            (entry, TaskType.OBSERVER) for entry in assign_to.get("observers") or []
        ]
    else:
        entries = [(assign_to, TaskType.APPROVER)]

    resolved: list[ResolvedAssignee] = []
    seen: set[tuple[str | None, str | None, TaskType]] = set()
    for entry, task_type in entries:
        if not isinstance(entry, Mapping):
            continue
        principal = entry.get("principal_id")
        group = None if principal else entry.get("group_id")
        if not principal and not group:
            continue
        key = (principal, group, task_type)
        if key in seen:
            continue
        seen.add(key)
        resolved.append(
            ResolvedAssignee(
                principal_id=str(principal) if principal else None,
                group_id=str(group) if group else None,
                task_type=task_type,
            )
        )
    return tuple(resolved)


def rules_for_stage(
    rules: Sequence[ApprovalRoutingRule],
    stage_no: int,
) -> list[ApprovalRoutingRule]:
    """Rules applicable to ``stage_no``, in evaluation order."""
    indexed = [
        (rule.priority, pos, rule)
        for pos, rule in enumerate(rules)
        if rule.stage_no is None or rule.stage_no == stage_no
    ]
    return [rule for _, _, rule in sorted(indexed, key=lambda t: (t[0], t[1]))]


@traced_engine(
    "approver_routing",
    "1.0",
    fingerprint_fields=("stage_no", "context"),
    summarize=lambda r: {"rule_id": r.rule_id, "assignees": len(r.assignees)},
)
def select_assignees(
    *,
    rules: Sequence[ApprovalRoutingRule],
    stage_no: int,
    context: Mapping[str, Any] | None = None,
) -> AssigneeResolution:
    """Resolve the assignees of one stage.

    Args:
        rules: All routing rules of the template.
        stage_no: The stage being activated.
        context: Condition evaluation context.

    Returns:
        AssigneeResolution naming the winning rule, or an empty resolution.
    """
    ordered = rules_for_stage(rules, stage_no)

    for fallback_pass in (False, True):
        for rule in ordered:
            if rule.is_fallback is not fallback_pass:
                continue
            if not matches_conditions(rule.conditions, context):
                continue
            assignees = parse_assignment_target(rule.assign_to)
            if any(a.task_type is TaskType.APPROVER for a in assignees):
                return AssigneeResolution(
                    stage_no=stage_no, assignees=assignees, rule_id=rule.id,
                )

    return AssigneeResolution(stage_no=stage_no)
