"""
Module: governance_kernel.models.lifecycle
Responsibility: ORM persistence for lifecycle definitions (lifecycle, state,
    transition, gate), per-entity lifecycle instances, and the append-only
    lifecycle event history.

Architecture position: Kernel > Models.  May import from db/base.py,
    exceptions, and domain/ (for to_dto only).

Invariants enforced:
    - One lifecycle instance per (tenant, entity_name, entity_id).
    - One active transition per (lifecycle, from_state, operation_code).
    - Lifecycle events are append-only (ORM listeners below).

Failure modes:
    - IntegrityError on a second lifecycle instance for the same entity.
    - ImmutabilityViolationError on UPDATE/DELETE of a lifecycle event.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from governance_kernel.db.base import TenantScoped, UUIDString
from governance_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from governance_kernel.domain.lifecycle import (
        Lifecycle,
        LifecycleEvent,
        LifecycleInstance,
        LifecycleState,
        LifecycleTransition,
        TransitionGate,
    )


class LifecycleModel(TenantScoped):
    """A named lifecycle bound to one entity name."""

    __tablename__ = "lifecycles"

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_lifecycles_code"),
        Index("ix_lifecycles_entity", "tenant_id", "entity_name"),
    )

    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(100), nullable=False)

    def __repr__(self) -> str:
        return f"<Lifecycle {self.code} entity={self.entity_name}>"

    def to_dto(self) -> Lifecycle:
        from governance_kernel.domain.lifecycle import Lifecycle

        return Lifecycle(
            id=self.id,
            tenant_id=self.tenant_id,
            code=self.code,
            name=self.name,
            entity_name=self.entity_name,
        )


class LifecycleStateModel(TenantScoped):
    """A state of a lifecycle.  Lowest sort_order is the initial state."""

    __tablename__ = "lifecycle_states"

    __table_args__ = (
        UniqueConstraint("lifecycle_id", "code", name="uq_lifecycle_states_code"),
    )

    lifecycle_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("lifecycles.id"), nullable=False, index=True,
    )
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<LifecycleState {self.code} terminal={self.is_terminal}>"

    def to_dto(self) -> LifecycleState:
        from governance_kernel.domain.lifecycle import LifecycleState

        return LifecycleState(
            id=self.id,
            lifecycle_id=self.lifecycle_id,
            code=self.code,
            name=self.name,
            is_terminal=self.is_terminal,
            sort_order=self.sort_order,
        )


class LifecycleTransitionModel(TenantScoped):
    """A legal state change addressed by operation_code."""

    __tablename__ = "lifecycle_transitions"

    __table_args__ = (
        Index(
            "ix_lifecycle_transitions_lookup",
            "tenant_id", "from_state_id", "operation_code",
        ),
    )

    lifecycle_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("lifecycles.id"), nullable=False, index=True,
    )
    from_state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("lifecycle_states.id"), nullable=False,
    )
    to_state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("lifecycle_states.id"), nullable=False,
    )
    operation_code: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<LifecycleTransition {self.operation_code} active={self.is_active}>"

    def to_dto(self) -> LifecycleTransition:
        from governance_kernel.domain.lifecycle import LifecycleTransition

        return LifecycleTransition(
            id=self.id,
            lifecycle_id=self.lifecycle_id,
            from_state_id=self.from_state_id,
            to_state_id=self.to_state_id,
            operation_code=self.operation_code,
            is_active=self.is_active,
        )


class TransitionGateModel(TenantScoped):
    """A gate attached to a transition.  Evaluated in gate_order."""

    __tablename__ = "transition_gates"

    __table_args__ = (
        Index("ix_transition_gates_order", "tenant_id", "transition_id", "gate_order"),
    )

    transition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("lifecycle_transitions.id"), nullable=False,
    )
    gate_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required_operations: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    approval_template_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("approval_templates.id"), nullable=True,
    )
    conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    threshold_rules: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<TransitionGate transition={self.transition_id} "
            f"order={self.gate_order}>"
        )

    def to_dto(self) -> TransitionGate:
        from governance_kernel.domain.lifecycle import TransitionGate

        ops = self.required_operations
        return TransitionGate(
            id=self.id,
            transition_id=self.transition_id,
            gate_order=self.gate_order,
            required_operations=tuple(ops) if ops else None,
            approval_template_id=self.approval_template_id,
            conditions=self.conditions,
            threshold_rules=self.threshold_rules,
        )


class LifecycleInstanceModel(TenantScoped):
    """Current lifecycle state of one entity record.

    Contract:
        Mutated only by the lifecycle transition orchestrator, through a
        conditional write guarded by the previously observed state_id.
    """

    __tablename__ = "lifecycle_instances"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "entity_name", "entity_id",
            name="uq_lifecycle_instances_entity",
        ),
    )

    entity_name: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    lifecycle_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("lifecycles.id"), nullable=False,
    )
    state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("lifecycle_states.id"), nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<LifecycleInstance {self.entity_name}/{self.entity_id} "
            f"state={self.state_id}>"
        )

    def to_dto(self) -> LifecycleInstance:
        from governance_kernel.domain.lifecycle import LifecycleInstance

        return LifecycleInstance(
            id=self.id,
            tenant_id=self.tenant_id,
            entity_name=self.entity_name,
            entity_id=self.entity_id,
            lifecycle_id=self.lifecycle_id,
            state_id=self.state_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            updated_by=self.updated_by,
        )


class LifecycleEventModel(TenantScoped):
    """Append-only lifecycle history row."""

    __tablename__ = "lifecycle_events"

    __table_args__ = (
        Index(
            "ix_lifecycle_events_entity",
            "tenant_id", "entity_name", "entity_id", "occurred_at",
        ),
    )

    lifecycle_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("lifecycle_instances.id"), nullable=False,
    )
    entity_name: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    from_state_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    to_state_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    transition_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    operation_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_dto(self) -> LifecycleEvent:
        from governance_kernel.domain.lifecycle import LifecycleEvent

        return LifecycleEvent(
            id=self.id,
            lifecycle_instance_id=self.lifecycle_instance_id,
            entity_name=self.entity_name,
            entity_id=self.entity_id,
            from_state_id=self.from_state_id,
            to_state_id=self.to_state_id,
            transition_id=self.transition_id,
            operation_code=self.operation_code,
            actor_id=self.actor_id,
            payload=dict(self.payload or {}),
            occurred_at=self.occurred_at,
        )


# =============================================================================
# ORM-Level Immutability for Lifecycle Events (Append-Only)
# =============================================================================


@event.listens_for(LifecycleEventModel, "before_update")
def prevent_lifecycle_event_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="LifecycleEvent",
        entity_id=str(target.id),
        reason="Lifecycle events are append-only -- cannot modify",
    )


@event.listens_for(LifecycleEventModel, "before_delete")
def prevent_lifecycle_event_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="LifecycleEvent",
        entity_id=str(target.id),
        reason="Lifecycle events are append-only -- cannot delete",
    )
