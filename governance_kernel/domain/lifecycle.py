"""
Lifecycle domain types (``governance_kernel.domain.lifecycle``).

Responsibility
--------------
Pure value objects for lifecycle definitions (lifecycle, state, transition,
gate), the per-entity Lifecycle Instance, its append-only event history,
and the result objects returned by gate evaluation and transitions.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class Lifecycle:
    """A lifecycle bound to the entity it governs."""

    id: UUID
    tenant_id: str
    code: str
    name: str
    entity_name: str


@dataclass(frozen=True)
class LifecycleState:
    id: UUID
    lifecycle_id: UUID
    code: str
    name: str
    is_terminal: bool
    sort_order: int


@dataclass(frozen=True)
class LifecycleTransition:
    """One legal state change, addressed by ``operation_code``."""

    id: UUID
    lifecycle_id: UUID
    from_state_id: UUID
    to_state_id: UUID
    operation_code: str
    is_active: bool = True


@dataclass(frozen=True)
class TransitionGate:
    """A gate on a transition.  All gates must pass.

    ``conditions`` decides whether the gate applies to a record at all;
    ``threshold_rules`` decides whether its approval branch applies.
    """

    id: UUID
    transition_id: UUID
    gate_order: int
    required_operations: tuple[str, ...] | None = None
    approval_template_id: UUID | None = None
    conditions: dict[str, Any] | None = None
    threshold_rules: dict[str, Any] | None = None


@dataclass(frozen=True)
class LifecycleInstance:
    id: UUID
    tenant_id: str
    entity_name: str
    entity_id: str
    lifecycle_id: UUID
    state_id: UUID
    created_at: datetime
    updated_at: datetime | None = None
    updated_by: str | None = None


@dataclass(frozen=True)
class LifecycleEvent:
    """Append-only history row: one per applied transition or instance creation."""

    id: UUID
    lifecycle_instance_id: UUID
    entity_name: str
    entity_id: str
    from_state_id: UUID | None
    to_state_id: UUID
    transition_id: UUID | None
    operation_code: str | None
    actor_id: str
    payload: dict[str, Any]
    occurred_at: datetime


@dataclass(frozen=True)
class EntityContext:
    """Identifies the entity record an approval gate would be opened for."""

    entity_name: str
    entity_id: str


# =========================================================================
# Results
# =========================================================================


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> GateResult:
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: str) -> GateResult:
        return cls(allowed=False, reason=reason)


@dataclass(frozen=True)
class TransitionResult:
    """Result of a lifecycle transition request.

    ``reason`` is the gate's block reason (a control signal such as
    ``"Approval pending"``); ``error`` describes a validation failure
    before gates were reached.
    """

    success: bool
    reason: str | None = None
    error: str | None = None
    new_state_id: UUID | None = None
    new_state_code: str | None = None
    event_id: UUID | None = None

    @classmethod
    def failure(cls, error: str, reason: str | None = None) -> TransitionResult:
        return cls(success=False, error=error, reason=reason or error)

    @classmethod
    def blocked(cls, reason: str | None) -> TransitionResult:
        return cls(
            success=False,
            error="Gate validation failed",
            reason=reason or "Access denied",
        )


@dataclass(frozen=True)
class AvailableTransition:
    """A transition leaving the current state, with the caller's permission outcome.

    ``authorized`` reflects permission gates only; approval gates are
    reported through ``requires_approval`` and never opened by listing.
    """

    transition_id: UUID
    operation_code: str
    to_state_id: UUID
    to_state_code: str
    authorized: bool = True
    unauthorized_reason: str | None = None
    requires_approval: bool = False
    approval_template_id: UUID | None = None
