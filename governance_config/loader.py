"""
Definition Loader (``governance_config.loader``).

Responsibility
--------------
Loads a YAML definition file (lifecycles with their states, transitions
and gates; approval templates with their stages and routing rules) and
parses it into frozen dataclasses.  ``validate_definition_set`` checks the
cross-references a database foreign key cannot express.

Architecture position
---------------------
**Config layer** -- build and install tooling.  Consumed by
``governance_config.installer`` and ``scripts/install_definitions.py``.
No service reads YAML at runtime.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass.
* ``load_definition_set`` never returns an invalid set: all problems are
  collected and raised together as ``DefinitionValidationError``.
* ``compute_checksum`` is deterministic for identical input.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Structural problems  -> ``DefinitionValidationError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from governance_engines.conditions import validate_condition_tree
from governance_kernel.domain.approval import StageMode
from governance_kernel.exceptions import DefinitionValidationError
from governance_kernel.logging_config import get_logger

logger = get_logger("config.loader")

DEFAULT_SETS_DIR = Path(__file__).parent / "sets"


# =========================================================================
# Definition dataclasses
# =========================================================================


@dataclass(frozen=True)
class StateDef:
    code: str
    name: str
    is_terminal: bool = False
    sort_order: int = 0


@dataclass(frozen=True)
class GateDef:
    required_operations: tuple[str, ...] | None = None
    approval_template: str | None = None
    conditions: Any = None
    threshold_rules: Any = None


@dataclass(frozen=True)
class TransitionDef:
    operation_code: str
    from_state: str
    to_state: str
    is_active: bool = True
    gates: tuple[GateDef, ...] = ()


@dataclass(frozen=True)
class LifecycleDef:
    code: str
    name: str
    entity_name: str
    states: tuple[StateDef, ...] = ()
    transitions: tuple[TransitionDef, ...] = ()


@dataclass(frozen=True)
class StageDef:
    stage_no: int
    mode: str = StageMode.ALL.value
    quorum: dict[str, Any] | None = None
    sla_hours: int | None = None


@dataclass(frozen=True)
class RoutingRuleDef:
    assign_to: dict[str, Any]
    priority: int = 100
    stage_no: int | None = None
    is_fallback: bool = False
    conditions: Any = None


@dataclass(frozen=True)
class ApprovalTemplateDef:
    code: str
    name: str
    stages: tuple[StageDef, ...] = ()
    routing_rules: tuple[RoutingRuleDef, ...] = ()


@dataclass(frozen=True)
class DefinitionSet:
    set_id: str
    version: int
    lifecycles: tuple[LifecycleDef, ...] = ()
    approval_templates: tuple[ApprovalTemplateDef, ...] = ()
    checksum: str = field(default="", compare=False)


# =========================================================================
# Parsing
# =========================================================================


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_gate(data: dict[str, Any]) -> GateDef:
    ops = data.get("required_operations")
    return GateDef(
        required_operations=tuple(str(op) for op in ops) if ops else None,
        approval_template=data.get("approval_template"),
        conditions=data.get("conditions"),
        threshold_rules=data.get("threshold_rules"),
    )


def parse_transition(data: dict[str, Any]) -> TransitionDef:
    return TransitionDef(
        operation_code=data["operation_code"],
        from_state=data["from"],
        to_state=data["to"],
        is_active=bool(data.get("is_active", True)),
        gates=tuple(parse_gate(g) for g in data.get("gates") or []),
    )


def parse_lifecycle(data: dict[str, Any]) -> LifecycleDef:
    return LifecycleDef(
        code=data["code"],
        name=data.get("name", data["code"]),
        entity_name=data["entity_name"],
        states=tuple(
            StateDef(
                code=s["code"],
                name=s.get("name", s["code"]),
                is_terminal=bool(s.get("is_terminal", False)),
                sort_order=int(s.get("sort_order", pos)),
            )
            for pos, s in enumerate(data.get("states") or [])
        ),
        transitions=tuple(parse_transition(t) for t in data.get("transitions") or []),
    )


def parse_approval_template(data: dict[str, Any]) -> ApprovalTemplateDef:
    return ApprovalTemplateDef(
        code=data["code"],
        name=data.get("name", data["code"]),
        stages=tuple(
            StageDef(
                stage_no=int(s["stage_no"]),
                mode=str(s.get("mode", StageMode.ALL.value)),
                quorum=s.get("quorum"),
                sla_hours=int(s["sla_hours"]) if s.get("sla_hours") is not None else None,
            )
            for s in data.get("stages") or []
        ),
        routing_rules=tuple(
            RoutingRuleDef(
                assign_to=r["assign_to"],
                priority=int(r.get("priority", 100)),
                stage_no=int(r["stage_no"]) if r.get("stage_no") is not None else None,
                is_fallback=bool(r.get("is_fallback", False)),
                conditions=r.get("conditions"),
            )
            for r in data.get("routing_rules") or []
        ),
    )


def parse_definition_set(data: dict[str, Any]) -> DefinitionSet:
    """Parse a definition set dict.  Structural validation is separate."""
    return DefinitionSet(
        set_id=data["set_id"],
        version=int(data.get("version", 1)),
        lifecycles=tuple(parse_lifecycle(lc) for lc in data.get("lifecycles") or []),
        approval_templates=tuple(
            parse_approval_template(t) for t in data.get("approval_templates") or []
        ),
        checksum=compute_checksum(data),
    )


# =========================================================================
# Validation
# =========================================================================


def _duplicates(values: list[Any]) -> list[Any]:
    seen: set[Any] = set()
    dupes: list[Any] = []
    for v in values:
        if v in seen and v not in dupes:
            dupes.append(v)
        seen.add(v)
    return dupes


def _validate_template(template: ApprovalTemplateDef) -> list[str]:
    errors: list[str] = []
    where = f"approval template '{template.code}'"
    if not template.stages:
        errors.append(f"{where} has no stages")

    stage_nos = [s.stage_no for s in template.stages]
    for dupe in _duplicates(stage_nos):
        errors.append(f"{where} repeats stage_no {dupe}")

    modes = {m.value for m in StageMode}
    for stage in template.stages:
        if stage.stage_no < 1:
            errors.append(f"{where} stage_no {stage.stage_no} must be >= 1")
        if stage.mode not in modes:
            errors.append(f"{where} stage {stage.stage_no} has unknown mode '{stage.mode}'")
        if stage.quorum is not None:
            kind = stage.quorum.get("type", "count")
            value = stage.quorum.get("value")
            if kind not in ("count", "percentage"):
                errors.append(f"{where} stage {stage.stage_no} has unknown quorum type '{kind}'")
            elif not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"{where} stage {stage.stage_no} quorum value must be positive")
            elif kind == "percentage" and value > 100:
                errors.append(f"{where} stage {stage.stage_no} quorum percentage exceeds 100")
        if stage.sla_hours is not None and stage.sla_hours <= 0:
            errors.append(f"{where} stage {stage.stage_no} sla_hours must be positive")

    for pos, rule in enumerate(template.routing_rules):
        rule_where = f"{where} routing rule #{pos + 1}"
        if rule.stage_no is not None and rule.stage_no not in stage_nos:
            errors.append(f"{rule_where} targets unknown stage {rule.stage_no}")
        if not rule.assign_to:
            errors.append(f"{rule_where} has an empty assign_to")
        if rule.conditions:
            errors.extend(f"{rule_where}: {e}" for e in validate_condition_tree(rule.conditions))
    return errors


def _validate_lifecycle(lifecycle: LifecycleDef, template_codes: set[str]) -> list[str]:
    errors: list[str] = []
    where = f"lifecycle '{lifecycle.code}'"
    if not lifecycle.states:
        errors.append(f"{where} has no states")

    state_codes = [s.code for s in lifecycle.states]
    for dupe in _duplicates(state_codes):
        errors.append(f"{where} repeats state '{dupe}'")
    terminal = {s.code for s in lifecycle.states if s.is_terminal}

    for dupe in _duplicates([(t.from_state, t.operation_code) for t in lifecycle.transitions]):
        errors.append(f"{where} has two transitions from '{dupe[0]}' via '{dupe[1]}'")

    for t in lifecycle.transitions:
        t_where = f"{where} transition '{t.operation_code}' from '{t.from_state}'"
        if t.from_state not in state_codes:
            errors.append(f"{t_where} starts at unknown state")
        if t.to_state not in state_codes:
            errors.append(f"{t_where} targets unknown state '{t.to_state}'")
        if t.from_state in terminal:
            errors.append(f"{t_where} leaves a terminal state")
        for gate in t.gates:
            if gate.approval_template and gate.approval_template not in template_codes:
                errors.append(
                    f"{t_where} gate references unknown approval template "
                    f"'{gate.approval_template}'"
                )
            if not gate.required_operations and not gate.approval_template:
                errors.append(f"{t_where} gate has neither required_operations nor approval")
            for label, tree in (("conditions", gate.conditions),
                                ("threshold_rules", gate.threshold_rules)):
                if tree:
                    errors.extend(
                        f"{t_where} gate {label}: {e}" for e in validate_condition_tree(tree)
                    )
    return errors


def validate_definition_set(definitions: DefinitionSet) -> list[str]:
    """Return every structural problem in ``definitions`` (empty = valid)."""
    errors: list[str] = []
    for dupe in _duplicates([lc.code for lc in definitions.lifecycles]):
        errors.append(f"duplicate lifecycle code '{dupe}'")
    for dupe in _duplicates([t.code for t in definitions.approval_templates]):
        errors.append(f"duplicate approval template code '{dupe}'")

    template_codes = {t.code for t in definitions.approval_templates}
    for template in definitions.approval_templates:
        errors.extend(_validate_template(template))
    for lifecycle in definitions.lifecycles:
        errors.extend(_validate_lifecycle(lifecycle, template_codes))
    return errors


def load_definition_set(path: Path | str) -> DefinitionSet:
    """Load, parse, and validate a definition file.

    Raises:
        DefinitionValidationError: The set is structurally invalid.
    """
    path = Path(path)
    if not path.is_absolute() and not path.exists():
        candidate = DEFAULT_SETS_DIR / path
        if candidate.exists() or candidate.with_suffix(".yaml").exists():
            path = candidate if candidate.exists() else candidate.with_suffix(".yaml")

    definitions = parse_definition_set(load_yaml_file(path))
    errors = validate_definition_set(definitions)
    if errors:
        raise DefinitionValidationError(errors)

    logger.info(
        "definition_set_loaded",
        extra={
            "set_id": definitions.set_id,
            "version": definitions.version,
            "checksum": definitions.checksum,
            "lifecycle_count": len(definitions.lifecycles),
            "approval_template_count": len(definitions.approval_templates),
        },
    )
    return definitions
