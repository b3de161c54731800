"""
governance_kernel.services.lifecycle_store -- Lifecycle persistence access.

Responsibility:
    Tenant-scoped reads over lifecycle definitions, and the writes the
    transition orchestrator performs on lifecycle instances and their
    event history.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.
    Never commits.

Invariants enforced:
    - Every query filters on tenant_id.
    - ``move_instance`` is conditional on the previously observed state, so
      two concurrent transitions cannot both apply.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from governance_kernel.models.lifecycle import (
    LifecycleEventModel,
    LifecycleInstanceModel,
    LifecycleModel,
    LifecycleStateModel,
    LifecycleTransitionModel,
    TransitionGateModel,
)


class LifecycleStore:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def get_lifecycle_for_entity(self, entity_name: str, tenant_id: str) -> LifecycleModel | None:
        return self._session.execute(
            select(LifecycleModel)
            .where(
                LifecycleModel.tenant_id == tenant_id,
                LifecycleModel.entity_name == entity_name,
            )
            .order_by(LifecycleModel.code)
            .limit(1)
        ).scalar_one_or_none()

    def get_state(self, state_id: UUID, tenant_id: str) -> LifecycleStateModel | None:
        return self._session.execute(
            select(LifecycleStateModel).where(
                LifecycleStateModel.id == state_id,
                LifecycleStateModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()

    def get_states(self, lifecycle_id: UUID, tenant_id: str) -> list[LifecycleStateModel]:
        return list(self._session.execute(
            select(LifecycleStateModel)
            .where(
                LifecycleStateModel.lifecycle_id == lifecycle_id,
                LifecycleStateModel.tenant_id == tenant_id,
            )
            .order_by(LifecycleStateModel.sort_order, LifecycleStateModel.code)
        ).scalars())

    def get_transition(
        self, transition_id: UUID, tenant_id: str,
    ) -> LifecycleTransitionModel | None:
        return self._session.execute(
            select(LifecycleTransitionModel).where(
                LifecycleTransitionModel.id == transition_id,
                LifecycleTransitionModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()

    def find_transition(
        self, from_state_id: UUID, operation_code: str, tenant_id: str,
    ) -> LifecycleTransitionModel | None:
        """The active transition leaving ``from_state_id`` for ``operation_code``."""
        return self._session.execute(
            select(LifecycleTransitionModel)
            .where(
                LifecycleTransitionModel.tenant_id == tenant_id,
                LifecycleTransitionModel.from_state_id == from_state_id,
                LifecycleTransitionModel.operation_code == operation_code,
                LifecycleTransitionModel.is_active.is_(True),
            )
            .limit(1)
        ).scalar_one_or_none()

    def get_transitions_from(
        self, from_state_id: UUID, tenant_id: str,
    ) -> list[LifecycleTransitionModel]:
        return list(self._session.execute(
            select(LifecycleTransitionModel)
            .where(
                LifecycleTransitionModel.tenant_id == tenant_id,
                LifecycleTransitionModel.from_state_id == from_state_id,
                LifecycleTransitionModel.is_active.is_(True),
            )
            .order_by(LifecycleTransitionModel.operation_code)
        ).scalars())

    def get_gates(self, transition_id: UUID, tenant_id: str) -> list[TransitionGateModel]:
        """Gates of a transition in storage order."""
        return list(self._session.execute(
            select(TransitionGateModel)
            .where(
                TransitionGateModel.transition_id == transition_id,
                TransitionGateModel.tenant_id == tenant_id,
            )
            .order_by(TransitionGateModel.gate_order, TransitionGateModel.id)
        ).scalars())

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def get_instance(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> LifecycleInstanceModel | None:
        return self._session.execute(
            select(LifecycleInstanceModel).where(
                LifecycleInstanceModel.tenant_id == tenant_id,
                LifecycleInstanceModel.entity_name == entity_name,
                LifecycleInstanceModel.entity_id == entity_id,
            )
        ).scalar_one_or_none()

    def add_instance(self, model: LifecycleInstanceModel) -> LifecycleInstanceModel:
        self._session.add(model)
        self._session.flush()
        return model

    def move_instance(
        self,
        instance_id: UUID,
        tenant_id: str,
        *,
        expected_state_id: UUID,
        new_state_id: UUID,
        updated_by: str,
        updated_at: datetime,
    ) -> bool:
        """Advance the instance if it is still in ``expected_state_id``."""
        result = self._session.execute(
            update(LifecycleInstanceModel)
            .where(
                LifecycleInstanceModel.id == instance_id,
                LifecycleInstanceModel.tenant_id == tenant_id,
                LifecycleInstanceModel.state_id == expected_state_id,
            )
            .values(
                state_id=new_state_id,
                updated_by=updated_by,
                updated_at=updated_at,
            )
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def append_event(
        self,
        *,
        instance: LifecycleInstanceModel,
        from_state_id: UUID | None,
        to_state_id: UUID,
        transition_id: UUID | None,
        operation_code: str | None,
        actor_id: str,
        occurred_at: datetime,
        payload: dict[str, Any] | None = None,
    ) -> LifecycleEventModel:
        next_seq = self._session.execute(
            select(func.coalesce(func.max(LifecycleEventModel.sequence), 0)).where(
                LifecycleEventModel.lifecycle_instance_id == instance.id,
            )
        ).scalar_one() + 1

        model = LifecycleEventModel(
            tenant_id=instance.tenant_id,
            lifecycle_instance_id=instance.id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            from_state_id=from_state_id,
            to_state_id=to_state_id,
            transition_id=transition_id,
            operation_code=operation_code,
            actor_id=actor_id,
            payload=payload or {},
            occurred_at=occurred_at,
            sequence=next_seq,
        )
        self._session.add(model)
        self._session.flush()
        return model

    def get_events(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> list[LifecycleEventModel]:
        return list(self._session.execute(
            select(LifecycleEventModel)
            .where(
                LifecycleEventModel.tenant_id == tenant_id,
                LifecycleEventModel.entity_name == entity_name,
                LifecycleEventModel.entity_id == entity_id,
            )
            .order_by(LifecycleEventModel.sequence)
        ).scalars())
