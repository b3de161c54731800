"""
Definition installer (``governance_config.installer``).

Persists a validated ``DefinitionSet`` for one tenant: approval templates
first (gates reference them), then lifecycles with their states,
transitions, and gates.  Flushes only; the caller commits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from governance_config.loader import DefinitionSet
from governance_kernel.logging_config import get_logger
from governance_kernel.models.approval import (
    ApprovalRoutingRuleModel,
    ApprovalTemplateModel,
    ApprovalTemplateStageModel,
)
from governance_kernel.models.lifecycle import (
    LifecycleModel,
    LifecycleStateModel,
    LifecycleTransitionModel,
    TransitionGateModel,
)

logger = get_logger("config.installer")


@dataclass
class InstalledDefinitions:
    """Ids of installed rows, keyed by their definition codes."""

    lifecycles: dict[str, UUID] = field(default_factory=dict)
    states: dict[tuple[str, str], UUID] = field(default_factory=dict)
    transitions: dict[tuple[str, str, str], UUID] = field(default_factory=dict)
    approval_templates: dict[str, UUID] = field(default_factory=dict)

    def state_id(self, lifecycle: str, state: str) -> UUID:
        return self.states[(lifecycle, state)]

    def transition_id(self, lifecycle: str, from_state: str, operation_code: str) -> UUID:
        return self.transitions[(lifecycle, from_state, operation_code)]


def install_definitions(
    session: Session,
    definitions: DefinitionSet,
    tenant_id: str,
    actor_id: str = "system",
) -> InstalledDefinitions:
    installed = InstalledDefinitions()

    for template in definitions.approval_templates:
        template_row = ApprovalTemplateModel(
            tenant_id=tenant_id, code=template.code, name=template.name,
        )
        session.add(template_row)
        session.flush()
        installed.approval_templates[template.code] = template_row.id

        for stage in template.stages:
            session.add(ApprovalTemplateStageModel(
                tenant_id=tenant_id,
                approval_template_id=template_row.id,
                stage_no=stage.stage_no,
                mode=stage.mode,
                quorum=stage.quorum,
                sla_hours=stage.sla_hours,
            ))
        for rule in template.routing_rules:
            session.add(ApprovalRoutingRuleModel(
                tenant_id=tenant_id,
                approval_template_id=template_row.id,
                priority=rule.priority,
                stage_no=rule.stage_no,
                is_fallback=rule.is_fallback,
                conditions=rule.conditions,
                assign_to=rule.assign_to,
            ))

    for lifecycle in definitions.lifecycles:
        lifecycle_row = LifecycleModel(
            tenant_id=tenant_id,
            code=lifecycle.code,
            name=lifecycle.name,
            entity_name=lifecycle.entity_name,
        )
        session.add(lifecycle_row)
        session.flush()
        installed.lifecycles[lifecycle.code] = lifecycle_row.id

        for state in lifecycle.states:
            state_row = LifecycleStateModel(
                tenant_id=tenant_id,
                lifecycle_id=lifecycle_row.id,
                code=state.code,
                name=state.name,
                is_terminal=state.is_terminal,
                sort_order=state.sort_order,
            )
            session.add(state_row)
            session.flush()
            installed.states[(lifecycle.code, state.code)] = state_row.id

        for transition in lifecycle.transitions:
            transition_row = LifecycleTransitionModel(
                tenant_id=tenant_id,
                lifecycle_id=lifecycle_row.id,
                from_state_id=installed.state_id(lifecycle.code, transition.from_state),
                to_state_id=installed.state_id(lifecycle.code, transition.to_state),
                operation_code=transition.operation_code,
                is_active=transition.is_active,
            )
            session.add(transition_row)
            session.flush()
            installed.transitions[
                (lifecycle.code, transition.from_state, transition.operation_code)
            ] = transition_row.id

            for order, gate in enumerate(transition.gates):
                session.add(TransitionGateModel(
                    tenant_id=tenant_id,
                    transition_id=transition_row.id,
                    gate_order=order,
                    required_operations=(
                        list(gate.required_operations) if gate.required_operations else None
                    ),
                    approval_template_id=(
                        installed.approval_templates[gate.approval_template]
                        if gate.approval_template else None
                    ),
                    conditions=gate.conditions,
                    threshold_rules=gate.threshold_rules,
                ))

    session.flush()
    logger.info(
        "definitions_installed",
        extra={
            "set_id": definitions.set_id,
            "checksum": definitions.checksum,
            "tenant_id": tenant_id,
            "actor_id": actor_id,
            "lifecycle_count": len(installed.lifecycles),
            "approval_template_count": len(installed.approval_templates),
        },
    )
    return installed
