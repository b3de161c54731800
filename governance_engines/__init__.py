"""
Module: governance_engines
Responsibility:
    Re-exports the pure calculation engines used by the governance services:
    approval status mapping, condition trees, stage completion, and
    approver routing.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import governance_kernel.domain (and sibling engine modules).
    MUST NOT import governance_services or governance_config.

Invariants enforced:
    - Purity: engines never read the clock or the database.
    - Determinism: identical inputs always produce identical outputs.
"""

from governance_engines.conditions import (
    Condition,
    ConditionGroup,
    evaluate_condition,
    evaluate_condition_group,
    matches_conditions,
    parse_condition_tree,
    resolve_field_value,
    validate_condition_tree,
)
from governance_engines.routing import (
    parse_assignment_target,
    rules_for_stage,
    select_assignees,
)
from governance_engines.stage_completion import (
    StageEvaluation,
    evaluate_stage,
    required_approvals,
)
from governance_engines.status_mapper import external_status_of, map_instance_status

__all__ = [
    "Condition",
    "ConditionGroup",
    "StageEvaluation",
    "evaluate_condition",
    "evaluate_condition_group",
    "evaluate_stage",
    "external_status_of",
    "map_instance_status",
    "matches_conditions",
    "parse_assignment_target",
    "parse_condition_tree",
    "required_approvals",
    "resolve_field_value",
    "rules_for_stage",
    "select_assignees",
    "validate_condition_tree",
]
