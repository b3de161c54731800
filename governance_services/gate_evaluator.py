"""
governance_services.gate_evaluator -- Transition gate evaluation.

Responsibility:
    Decide whether a lifecycle transition may proceed by walking its gates
    in storage order: permission checks through the policy gate, then the
    approval bridge (bypass / lookup / create / pending / completed /
    rejected).  The first blocking gate short-circuits the rest.

Architecture position:
    Services layer.  May import from governance_engines/ (pure engines)
    and governance_kernel/ (domain, services, models).  Reaches the
    approval subsystem only through the ``ApprovalGateway`` port.

Invariants enforced:
    - Within one gate, permission checks run before the approval branch;
      a denial means the approval branch is never evaluated.
    - With ``_approvalBypass`` in the request metadata no approval lookup
      or creation happens.
    - Validation outcomes are returned as GateResult, never raised.
"""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from governance_engines.conditions import matches_conditions
from governance_engines.status_mapper import external_status_of
from governance_kernel.domain.approval import ExternalApprovalStatus
from governance_kernel.domain.context import RequestContext
from governance_kernel.domain.lifecycle import EntityContext, GateResult, TransitionGate
from governance_kernel.domain.ports import ApprovalGateway, PolicyGate
from governance_kernel.logging_config import get_logger
from governance_kernel.services.lifecycle_store import LifecycleStore

logger = get_logger("services.gate_evaluator")

REASON_APPROVAL_INITIATED = "Approval workflow initiated"
REASON_APPROVAL_PENDING = "Approval pending"
REASON_APPROVAL_CANCELED = "Approval was canceled"
REASON_APPROVAL_REQUIRED = "Approval required"
UNKNOWN_ENTITY = "unknown"


def missing_operation_reason(operation: str, denial_reason: str | None = None) -> str:
    reason = f"Missing required operation: {operation}"
    if denial_reason:
        reason += f" ({denial_reason})"
    return reason


def failed_approval_reason(error: str | None) -> str:
    return f"Failed to create approval: {error}"


class TransitionGateEvaluator:
    """Evaluates the gates of one transition for one caller."""

    def __init__(
        self,
        session: Session,
        policy_gate: PolicyGate,
        approvals: ApprovalGateway | None = None,
    ) -> None:
        self._store = LifecycleStore(session)
        self._policy_gate = policy_gate
        self._approvals = approvals

    def load_gates(self, transition_id: UUID, tenant_id: str) -> list[TransitionGate]:
        return [g.to_dto() for g in self._store.get_gates(transition_id, tenant_id)]

    def validate_gates(
        self,
        transition_id: UUID,
        ctx: RequestContext,
        record: Mapping[str, Any] | None = None,
        entity_context: EntityContext | None = None,
        *,
        dry_run: bool = False,
    ) -> GateResult:
        """Evaluate every gate of ``transition_id`` in storage order.

        Args:
            transition_id: The candidate transition.
            ctx: Caller context; tenant scope and bypass flag come from here.
            record: The entity record, for gate conditions, threshold rules,
                and the policy gate.
            entity_context: The entity an approval would be opened for.
                Without it the approval branch is treated as satisfied.
                Without an approval gateway an applicable approval gate
                blocks with "Approval required".
            dry_run: Never create an approval instance; report
                "Approval required" instead.

        Returns:
            GateResult(allowed, reason).
        """
        gates = self.load_gates(transition_id, ctx.tenant_id)
        if not gates:
            return GateResult.allow()

        entity_name = entity_context.entity_name if entity_context else UNKNOWN_ENTITY

        for gate in gates:
            if gate.conditions and record is not None and not matches_conditions(
                gate.conditions, record,
            ):
                logger.debug(
                    "gate_not_applicable",
                    extra={"gate_id": str(gate.id), "transition_id": str(transition_id)},
                )
                continue

            for operation in gate.required_operations or ():
                decision = self._policy_gate.authorize(operation, entity_name, ctx, record)
                if not decision.allowed:
                    logger.info(
                        "gate_permission_denied",
                        extra={
                            "transition_id": str(transition_id),
                            "gate_id": str(gate.id),
                            "operation": operation,
                        },
                    )
                    return GateResult.block(missing_operation_reason(operation, decision.reason))

            if gate.approval_template_id is None:
                continue

            blocked = self._evaluate_approval_branch(
                gate, transition_id, ctx, record, entity_context, dry_run,
            )
            if blocked is not None:
                return blocked

        return GateResult.allow()

    def _evaluate_approval_branch(
        self,
        gate: TransitionGate,
        transition_id: UUID,
        ctx: RequestContext,
        record: Mapping[str, Any] | None,
        entity_context: EntityContext | None,
        dry_run: bool,
    ) -> GateResult | None:
        """Return a blocking GateResult, or None when the approval gate is satisfied."""
        if ctx.approval_bypass:
            logger.debug(
                "gate_approval_bypassed",
                extra={"transition_id": str(transition_id), "gate_id": str(gate.id)},
            )
            return None

        if entity_context is None:
            logger.info(
                "gate_approval_required_but_not_evaluable",
                extra={
                    "transition_id": str(transition_id),
                    "approval_template_id": str(gate.approval_template_id),
                },
            )
            return None

        if gate.threshold_rules and record is not None and not matches_conditions(
            gate.threshold_rules, record,
        ):
            logger.debug(
                "gate_approval_below_threshold",
                extra={"transition_id": str(transition_id), "gate_id": str(gate.id)},
            )
            return None

        if self._approvals is None:
            logger.warning(
                "gate_approval_gateway_missing",
                extra={
                    "transition_id": str(transition_id),
                    "approval_template_id": str(gate.approval_template_id),
                },
            )
            return GateResult.block(REASON_APPROVAL_REQUIRED)

        existing = self._approvals.get_instance_for_entity(
            entity_context.entity_name, entity_context.entity_id, ctx.tenant_id,
        )

        if existing is None:
            if dry_run:
                return GateResult.block(REASON_APPROVAL_REQUIRED)
            created = self._approvals.create_approval_instance(
                entity_context.entity_name,
                entity_context.entity_id,
                transition_id,
                gate.approval_template_id,
                ctx,
                assignment_context=dict(record) if record is not None else None,
            )
            if created.success:
                logger.info(
                    "gate_approval_initiated",
                    extra={
                        "transition_id": str(transition_id),
                        "approval_instance_id": str(created.instance_id),
                        "entity_name": entity_context.entity_name,
                        "entity_id": entity_context.entity_id,
                    },
                )
                return GateResult.block(REASON_APPROVAL_INITIATED)
            logger.warning(
                "gate_approval_creation_failed",
                extra={"transition_id": str(transition_id), "error": created.error},
            )
            return GateResult.block(failed_approval_reason(created.error))

        status = external_status_of(existing)
        if status is ExternalApprovalStatus.OPEN:
            return GateResult.block(REASON_APPROVAL_PENDING)
        if status is ExternalApprovalStatus.COMPLETED:
            return None
        return GateResult.block(REASON_APPROVAL_CANCELED)

    def requires_approval(self, transition_id: UUID, tenant_id: str) -> UUID | None:
        """The approval template of the first approval gate, if any."""
        for gate in self._store.get_gates(transition_id, tenant_id):
            if gate.approval_template_id is not None:
                return gate.approval_template_id
        return None
