"""
governance_services.lifecycle_orchestrator -- Lifecycle transition execution.

Responsibility:
    Owns the per-entity Lifecycle Instance: creates it in the initial
    state, resolves a requested operation to a transition, runs the gate
    evaluator, and applies the state change with an append-only event.
    Thin coordinator -- gate semantics live in TransitionGateEvaluator,
    persistence in LifecycleStore.

Architecture position:
    Services layer.  Implements the ``LifecycleTransitioner`` port the
    approval subsystem uses to resume an approved transition.

Invariants enforced:
    - No transition leaves a terminal state.
    - The state change is conditional on the state observed at the start
      of the request; a concurrent transition makes this one fail.
    - Every applied transition appends exactly one LifecycleEvent.
    - Gate outcomes are returned as TransitionResult, never raised.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.context import RequestContext
from governance_kernel.domain.lifecycle import (
    AvailableTransition,
    EntityContext,
    LifecycleEvent,
    LifecycleInstance,
    LifecycleState,
    TransitionResult,
)
from governance_kernel.domain.ports import AuditLogger, AuditRecord
from governance_kernel.exceptions import (
    LifecycleStateNotFoundError,
    NoInitialStateError,
    NoLifecycleDefinedError,
    TerminalStateError,
)
from governance_kernel.logging_config import LogContext, get_logger
from governance_kernel.models.lifecycle import LifecycleInstanceModel
from governance_kernel.services.audit import emit_audit
from governance_kernel.services.lifecycle_store import LifecycleStore
from governance_services.gate_evaluator import TransitionGateEvaluator

logger = get_logger("services.lifecycle_orchestrator")

CREATE_OPERATION = "CREATE"

AUDIT_ACTION_TRANSITION = "lifecycle.transition"
AUDIT_ACTION_CREATED = "lifecycle.created"

OUTCOME_SUCCESS = "success"
OUTCOME_NO_INSTANCE = "no_instance"
OUTCOME_TERMINAL = "terminal_state"
OUTCOME_NO_TRANSITION = "no_transition"
OUTCOME_STALE_TRANSITION = "stale_transition"
OUTCOME_GATE_BLOCKED = "gate_blocked"
OUTCOME_CONCURRENT_CHANGE = "concurrent_change"


def _emit_transition_trace(
    entity_name: str,
    entity_id: str,
    operation_code: str,
    outcome: str,
    duration_ms: float,
    from_state: str | None = None,
    to_state: str | None = None,
    reason: str | None = None,
    outcome_sink: Callable[[dict], None] | None = None,
) -> None:
    """Emit one structured record per transition attempt."""
    record: dict[str, Any] = {
        "entity_name": entity_name,
        "entity_id": entity_id,
        "operation_code": operation_code,
        "outcome": outcome,
        "duration_ms": round(duration_ms, 3),
    }
    if from_state is not None:
        record["from_state"] = from_state
    if to_state is not None:
        record["to_state"] = to_state
    if reason is not None:
        record["reason"] = reason
    logger.info("lifecycle_transition", extra=record)
    if outcome_sink is not None:
        outcome_sink({**record, **LogContext.get_all(), "message": "lifecycle_transition"})


class LifecycleTransitionOrchestrator:
    """Applies lifecycle transitions for entity records."""

    def __init__(
        self,
        session: Session,
        gate_evaluator: TransitionGateEvaluator,
        audit_logger: AuditLogger | None = None,
        clock: Clock | None = None,
        outcome_sink: Callable[[dict], None] | None = None,
    ) -> None:
        self._store = LifecycleStore(session)
        self._gates = gate_evaluator
        self._audit = audit_logger
        self._clock = clock or SystemClock()
        self._outcome_sink = outcome_sink

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def create_instance(
        self, entity_name: str, entity_id: str, ctx: RequestContext,
    ) -> LifecycleInstance:
        """Place a new entity record in its lifecycle's initial state.

        Idempotent: an existing instance is returned unchanged.

        Raises:
            NoLifecycleDefinedError: No lifecycle is bound to ``entity_name``.
            NoInitialStateError: The lifecycle has no states.
        """
        existing = self._store.get_instance(entity_name, entity_id, ctx.tenant_id)
        if existing is not None:
            return existing.to_dto()

        lifecycle = self._store.get_lifecycle_for_entity(entity_name, ctx.tenant_id)
        if lifecycle is None:
            raise NoLifecycleDefinedError(entity_name, ctx.tenant_id)

        states = self._store.get_states(lifecycle.id, ctx.tenant_id)
        if not states:
            raise NoInitialStateError(str(lifecycle.id))
        initial = states[0]

        now = self._clock.now()
        instance = self._store.add_instance(LifecycleInstanceModel(
            tenant_id=ctx.tenant_id,
            entity_name=entity_name,
            entity_id=entity_id,
            lifecycle_id=lifecycle.id,
            state_id=initial.id,
            created_at=now,
            updated_at=now,
            updated_by=ctx.user_id,
        ))
        self._store.append_event(
            instance=instance,
            from_state_id=None,
            to_state_id=initial.id,
            transition_id=None,
            operation_code=CREATE_OPERATION,
            actor_id=ctx.user_id,
            occurred_at=now,
        )

        emit_audit(self._audit, AuditRecord(
            action=AUDIT_ACTION_CREATED,
            tenant_id=ctx.tenant_id,
            actor_id=ctx.user_id,
            entity_name=entity_name,
            entity_id=entity_id,
            occurred_at=now,
            payload={"state": initial.code, "lifecycle": lifecycle.code},
        ))
        logger.info(
            "lifecycle_instance_created",
            extra={
                "entity_name": entity_name,
                "entity_id": entity_id,
                "lifecycle": lifecycle.code,
                "state": initial.code,
            },
        )
        return instance.to_dto()

    def get_instance(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> LifecycleInstance | None:
        model = self._store.get_instance(entity_name, entity_id, tenant_id)
        return model.to_dto() if model else None

    def get_current_state(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> LifecycleState | None:
        instance = self._store.get_instance(entity_name, entity_id, tenant_id)
        if instance is None:
            return None
        state = self._store.get_state(instance.state_id, tenant_id)
        if state is None:
            raise LifecycleStateNotFoundError(str(instance.state_id))
        return state.to_dto()

    def is_terminal_state(self, entity_name: str, entity_id: str, tenant_id: str) -> bool:
        state = self.get_current_state(entity_name, entity_id, tenant_id)
        return state is not None and state.is_terminal

    def enforce_terminal_state(self, entity_name: str, entity_id: str, tenant_id: str) -> None:
        """Raise TerminalStateError if the record may no longer be updated."""
        state = self.get_current_state(entity_name, entity_id, tenant_id)
        if state is not None and state.is_terminal:
            raise TerminalStateError(entity_name, entity_id, state.code)

    def get_history(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> list[LifecycleEvent]:
        return [e.to_dto() for e in self._store.get_events(entity_name, entity_id, tenant_id)]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        entity_name: str,
        entity_id: str,
        operation_code: str,
        ctx: RequestContext,
        payload: dict[str, Any] | None = None,
        expected_transition_id: UUID | None = None,
        record: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """Request the transition addressed by ``operation_code``.

        Args:
            entity_name: Entity type, e.g. ``"travel_request"``.
            entity_id: The record's id.
            operation_code: The operation that selects the transition.
            ctx: Caller context.  ``_approvalBypass`` skips approval gates.
            payload: Stored on the lifecycle event.
            expected_transition_id: When set, the resolved transition must
                be this one (used when resuming an approved transition).
            record: Entity data for gate conditions.  Defaults to ``payload``.

        Returns:
            TransitionResult.  Gate blocks carry the gate's reason.
        """
        t0 = time.monotonic()

        def _trace(outcome: str, **kwargs: Any) -> None:
            with LogContext.bind_request(ctx, entity_name=entity_name):
                _emit_transition_trace(
                    entity_name=entity_name,
                    entity_id=entity_id,
                    operation_code=operation_code,
                    outcome=outcome,
                    duration_ms=(time.monotonic() - t0) * 1000,
                    outcome_sink=self._outcome_sink,
                    **kwargs,
                )

        instance = self._store.get_instance(entity_name, entity_id, ctx.tenant_id)
        if instance is None:
            _trace(OUTCOME_NO_INSTANCE)
            return TransitionResult.failure(
                "Lifecycle instance not found",
                f"No lifecycle instance for {entity_name}/{entity_id}",
            )

        current = self._store.get_state(instance.state_id, ctx.tenant_id)
        if current is None:
            raise LifecycleStateNotFoundError(str(instance.state_id))

        if current.is_terminal:
            reason = f"State '{current.code}' is terminal"
            _trace(OUTCOME_TERMINAL, from_state=current.code, reason=reason)
            return TransitionResult.failure("Cannot transition from terminal state", reason)

        transition = self._store.find_transition(current.id, operation_code, ctx.tenant_id)
        if transition is None:
            reason = f"No transition from '{current.code}' via '{operation_code}'"
            _trace(OUTCOME_NO_TRANSITION, from_state=current.code, reason=reason)
            return TransitionResult.failure("Transition not found", reason)

        if expected_transition_id is not None and transition.id != expected_transition_id:
            reason = (
                f"Transition for '{operation_code}' from '{current.code}' "
                f"no longer matches {expected_transition_id}"
            )
            _trace(OUTCOME_STALE_TRANSITION, from_state=current.code, reason=reason)
            return TransitionResult.failure("Transition mismatch", reason)

        gate_record = record if record is not None else payload
        gate_result = self._gates.validate_gates(
            transition.id,
            ctx,
            record=gate_record,
            entity_context=EntityContext(entity_name=entity_name, entity_id=entity_id),
        )
        if not gate_result.allowed:
            _trace(OUTCOME_GATE_BLOCKED, from_state=current.code, reason=gate_result.reason)
            return TransitionResult.blocked(gate_result.reason)

        target = self._store.get_state(transition.to_state_id, ctx.tenant_id)
        if target is None:
            raise LifecycleStateNotFoundError(str(transition.to_state_id))

        now = self._clock.now()
        moved = self._store.move_instance(
            instance.id,
            ctx.tenant_id,
            expected_state_id=current.id,
            new_state_id=target.id,
            updated_by=ctx.user_id,
            updated_at=now,
        )
        if not moved:
            _trace(OUTCOME_CONCURRENT_CHANGE, from_state=current.code)
            return TransitionResult.failure(
                "Lifecycle state changed concurrently",
                f"{entity_name}/{entity_id} left '{current.code}' during the request",
            )

        event = self._store.append_event(
            instance=instance,
            from_state_id=current.id,
            to_state_id=target.id,
            transition_id=transition.id,
            operation_code=operation_code,
            actor_id=ctx.user_id,
            occurred_at=now,
            payload=payload,
        )

        emit_audit(self._audit, AuditRecord(
            action=AUDIT_ACTION_TRANSITION,
            tenant_id=ctx.tenant_id,
            actor_id=ctx.user_id,
            entity_name=entity_name,
            entity_id=entity_id,
            occurred_at=now,
            payload={
                "operation_code": operation_code,
                "from_state": current.code,
                "to_state": target.code,
                "transition_id": str(transition.id),
                "approval_bypass": ctx.approval_bypass,
            },
        ))
        _trace(OUTCOME_SUCCESS, from_state=current.code, to_state=target.code)
        logger.info(
            "lifecycle_transition_applied",
            extra={
                "entity_name": entity_name,
                "entity_id": entity_id,
                "from_state": current.code,
                "to_state": target.code,
                "event_id": str(event.id),
            },
        )
        return TransitionResult(
            success=True,
            new_state_id=target.id,
            new_state_code=target.code,
            event_id=event.id,
        )

    def can_transition(
        self,
        entity_name: str,
        entity_id: str,
        operation_code: str,
        ctx: RequestContext,
        record: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """Dry run of ``transition``: no state change, no approval created."""
        instance = self._store.get_instance(entity_name, entity_id, ctx.tenant_id)
        if instance is None:
            return TransitionResult.failure(
                "Lifecycle instance not found",
                f"No lifecycle instance for {entity_name}/{entity_id}",
            )
        current = self._store.get_state(instance.state_id, ctx.tenant_id)
        if current is None:
            raise LifecycleStateNotFoundError(str(instance.state_id))
        if current.is_terminal:
            return TransitionResult.failure(
                "Cannot transition from terminal state",
                f"State '{current.code}' is terminal",
            )
        transition = self._store.find_transition(current.id, operation_code, ctx.tenant_id)
        if transition is None:
            return TransitionResult.failure(
                "Transition not found",
                f"No transition from '{current.code}' via '{operation_code}'",
            )
        gate_result = self._gates.validate_gates(
            transition.id,
            ctx,
            record=record,
            entity_context=EntityContext(entity_name=entity_name, entity_id=entity_id),
            dry_run=True,
        )
        if not gate_result.allowed:
            return TransitionResult.blocked(gate_result.reason)
        target = self._store.get_state(transition.to_state_id, ctx.tenant_id)
        return TransitionResult(
            success=True,
            new_state_id=transition.to_state_id,
            new_state_code=target.code if target else None,
        )

    def get_available_transitions(
        self,
        entity_name: str,
        entity_id: str,
        ctx: RequestContext,
        record: Mapping[str, Any] | None = None,
    ) -> list[AvailableTransition]:
        """Transitions leaving the current state, annotated for the caller.

        Only permission gates decide ``authorized``; approval gates are
        reported, never opened.
        """
        instance = self._store.get_instance(entity_name, entity_id, ctx.tenant_id)
        if instance is None:
            return []
        current = self._store.get_state(instance.state_id, ctx.tenant_id)
        if current is None or current.is_terminal:
            return []

        states = {s.id: s for s in self._store.get_states(instance.lifecycle_id, ctx.tenant_id)}
        available: list[AvailableTransition] = []
        for transition in self._store.get_transitions_from(current.id, ctx.tenant_id):
            gate_result = self._gates.validate_gates(transition.id, ctx, record=record)
            template_id = self._gates.requires_approval(transition.id, ctx.tenant_id)
            target = states.get(transition.to_state_id)
            available.append(AvailableTransition(
                transition_id=transition.id,
                operation_code=transition.operation_code,
                to_state_id=transition.to_state_id,
                to_state_code=target.code if target else "",
                authorized=gate_result.allowed,
                unauthorized_reason=None if gate_result.allowed else gate_result.reason,
                requires_approval=template_id is not None,
                approval_template_id=template_id,
            ))
        return available
