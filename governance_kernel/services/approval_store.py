"""
governance_kernel.services.approval_store -- Approval persistence access.

Responsibility:
    Tenant-scoped reads and writes over approval definitions and runtime
    rows, including SLA escalation records.  Every status change goes
    through a conditional UPDATE guarded by the expected current status, so
    a caller that lost a race sees a zero row count instead of overwriting
    someone else's decision.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.
    Never commits; the caller owns the transaction.

Invariants enforced:
    - Every query filters on tenant_id.
    - Task:     pending -> approved | rejected   (WHERE status = 'pending')
    - Stage:    pending -> completed | canceled  (WHERE status = 'pending')
    - Instance: open -> completed | canceled     (WHERE status = 'open')
    - Approval events receive a per-instance increasing ``sequence``.

Failure modes:
    - SQLAlchemyError propagates unchanged.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from governance_kernel.domain.approval import (
    ApprovalInstanceStatus,
    StageStatus,
    TaskStatus,
    TaskType,
)
from governance_kernel.logging_config import get_logger
from governance_kernel.models.approval import (
    ApprovalEscalationModel,
    ApprovalEventModel,
    ApprovalInstanceModel,
    ApprovalRoutingRuleModel,
    ApprovalStageModel,
    ApprovalTaskModel,
    ApprovalTemplateModel,
    ApprovalTemplateStageModel,
    AssignmentSnapshotModel,
)

logger = get_logger("services.approval_store")


class ApprovalStore:
    """Data access for approval templates, instances, stages, tasks, and events."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def get_template(self, template_id: UUID, tenant_id: str) -> ApprovalTemplateModel | None:
        return self._session.execute(
            select(ApprovalTemplateModel).where(
                ApprovalTemplateModel.id == template_id,
                ApprovalTemplateModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()

    def get_template_stages(
        self, template_id: UUID, tenant_id: str,
    ) -> list[ApprovalTemplateStageModel]:
        return list(self._session.execute(
            select(ApprovalTemplateStageModel)
            .where(
                ApprovalTemplateStageModel.approval_template_id == template_id,
                ApprovalTemplateStageModel.tenant_id == tenant_id,
            )
            .order_by(ApprovalTemplateStageModel.stage_no)
        ).scalars())

    def get_routing_rules(
        self, template_id: UUID, tenant_id: str,
    ) -> list[ApprovalRoutingRuleModel]:
        return list(self._session.execute(
            select(ApprovalRoutingRuleModel)
            .where(
                ApprovalRoutingRuleModel.approval_template_id == template_id,
                ApprovalRoutingRuleModel.tenant_id == tenant_id,
            )
            .order_by(ApprovalRoutingRuleModel.priority)
        ).scalars())

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def get_instance(
        self,
        instance_id: UUID,
        tenant_id: str,
        *,
        for_update: bool = False,
    ) -> ApprovalInstanceModel | None:
        stmt = select(ApprovalInstanceModel).where(
            ApprovalInstanceModel.id == instance_id,
            ApprovalInstanceModel.tenant_id == tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalar_one_or_none()

    def find_open_instance(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> ApprovalInstanceModel | None:
        return self._session.execute(
            select(ApprovalInstanceModel).where(
                ApprovalInstanceModel.tenant_id == tenant_id,
                ApprovalInstanceModel.entity_name == entity_name,
                ApprovalInstanceModel.entity_id == entity_id,
                ApprovalInstanceModel.status == ApprovalInstanceStatus.OPEN.value,
            )
        ).scalar_one_or_none()

    def list_instances_for_entity(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> list[ApprovalInstanceModel]:
        """All instances for an entity, newest first."""
        return list(self._session.execute(
            select(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.tenant_id == tenant_id,
                ApprovalInstanceModel.entity_name == entity_name,
                ApprovalInstanceModel.entity_id == entity_id,
            )
            .order_by(ApprovalInstanceModel.created_at.desc())
        ).scalars())

    def close_instance(
        self,
        instance_id: UUID,
        tenant_id: str,
        *,
        status: ApprovalInstanceStatus,
        outcome: str,
        context: dict[str, Any],
        completed_at: datetime,
    ) -> bool:
        """Move an open instance to a terminal status.  False if it was not open."""
        result = self._session.execute(
            update(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.id == instance_id,
                ApprovalInstanceModel.tenant_id == tenant_id,
                ApprovalInstanceModel.status == ApprovalInstanceStatus.OPEN.value,
            )
            .values(
                status=status.value,
                outcome=outcome,
                context=context,
                completed_at=completed_at,
            )
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def get_stage(self, stage_id: UUID, tenant_id: str) -> ApprovalStageModel | None:
        return self._session.execute(
            select(ApprovalStageModel).where(
                ApprovalStageModel.id == stage_id,
                ApprovalStageModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()

    def get_stages(self, instance_id: UUID, tenant_id: str) -> list[ApprovalStageModel]:
        return list(self._session.execute(
            select(ApprovalStageModel)
            .where(
                ApprovalStageModel.approval_instance_id == instance_id,
                ApprovalStageModel.tenant_id == tenant_id,
            )
            .order_by(ApprovalStageModel.stage_no)
        ).scalars())

    def complete_stage(
        self,
        stage_id: UUID,
        tenant_id: str,
        *,
        status: StageStatus,
        completed_at: datetime,
    ) -> bool:
        """Move a pending stage to a terminal status.  False if it was not pending."""
        result = self._session.execute(
            update(ApprovalStageModel)
            .where(
                ApprovalStageModel.id == stage_id,
                ApprovalStageModel.tenant_id == tenant_id,
                ApprovalStageModel.status == StageStatus.PENDING.value,
            )
            .values(status=status.value, completed_at=completed_at)
        )
        return result.rowcount == 1

    def mark_stage_activated(
        self, stage_id: UUID, tenant_id: str, activated_at: datetime,
    ) -> bool:
        """Stamp activation on a pending, never-activated stage."""
        result = self._session.execute(
            update(ApprovalStageModel)
            .where(
                ApprovalStageModel.id == stage_id,
                ApprovalStageModel.tenant_id == tenant_id,
                ApprovalStageModel.status == StageStatus.PENDING.value,
                ApprovalStageModel.activated_at.is_(None),
            )
            .values(activated_at=activated_at)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def get_task(self, task_id: UUID, tenant_id: str) -> ApprovalTaskModel | None:
        return self._session.execute(
            select(ApprovalTaskModel).where(
                ApprovalTaskModel.id == task_id,
                ApprovalTaskModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()

    def get_tasks_for_instance(
        self, instance_id: UUID, tenant_id: str,
    ) -> list[ApprovalTaskModel]:
        return list(self._session.execute(
            select(ApprovalTaskModel)
            .where(
                ApprovalTaskModel.approval_instance_id == instance_id,
                ApprovalTaskModel.tenant_id == tenant_id,
            )
            .order_by(ApprovalTaskModel.created_at, ApprovalTaskModel.id)
        ).scalars())

    def get_tasks_for_stage(self, stage_id: UUID, tenant_id: str) -> list[ApprovalTaskModel]:
        """Tasks of a stage: decided tasks first in decision order, then pending."""
        return list(self._session.execute(
            select(ApprovalTaskModel)
            .where(
                ApprovalTaskModel.approval_stage_id == stage_id,
                ApprovalTaskModel.tenant_id == tenant_id,
            )
            .order_by(
                ApprovalTaskModel.decided_at.is_(None),
                ApprovalTaskModel.decided_at,
                ApprovalTaskModel.created_at,
                ApprovalTaskModel.id,
            )
        ).scalars())

    def get_pending_tasks_for_principal(
        self,
        principal_id: str,
        tenant_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ApprovalTaskModel]:
        """Pending tasks of a principal on instances that are still open."""
        return list(self._session.execute(
            select(ApprovalTaskModel)
            .join(
                ApprovalInstanceModel,
                ApprovalInstanceModel.id == ApprovalTaskModel.approval_instance_id,
            )
            .where(
                ApprovalTaskModel.tenant_id == tenant_id,
                ApprovalTaskModel.assignee_principal_id == principal_id,
                ApprovalTaskModel.status == TaskStatus.PENDING.value,
                ApprovalInstanceModel.tenant_id == tenant_id,
                ApprovalInstanceModel.status == ApprovalInstanceStatus.OPEN.value,
            )
            .order_by(ApprovalTaskModel.due_at.is_(None), ApprovalTaskModel.due_at,
                      ApprovalTaskModel.created_at)
            .limit(limit)
            .offset(offset)
        ).scalars())

    def get_timed_pending_tasks(
        self, tenant_id: str, *, due_after: datetime,
    ) -> list[ApprovalTaskModel]:
        """Pending approver tasks of pending stages on open instances, due after ``due_after``."""
        return list(self._session.execute(
            select(ApprovalTaskModel)
            .join(
                ApprovalInstanceModel,
                ApprovalInstanceModel.id == ApprovalTaskModel.approval_instance_id,
            )
            .join(
                ApprovalStageModel,
                ApprovalStageModel.id == ApprovalTaskModel.approval_stage_id,
            )
            .where(
                ApprovalTaskModel.tenant_id == tenant_id,
                ApprovalTaskModel.status == TaskStatus.PENDING.value,
                ApprovalTaskModel.task_type == TaskType.APPROVER.value,
                ApprovalStageModel.status == StageStatus.PENDING.value,
                ApprovalTaskModel.due_at.is_not(None),
                ApprovalTaskModel.due_at > due_after,
                ApprovalInstanceModel.tenant_id == tenant_id,
                ApprovalInstanceModel.status == ApprovalInstanceStatus.OPEN.value,
            )
            .order_by(ApprovalTaskModel.due_at, ApprovalTaskModel.id)
        ).scalars())

    def decide_task(
        self,
        task_id: UUID,
        tenant_id: str,
        *,
        status: TaskStatus,
        decided_by: str,
        decided_at: datetime,
        note: str | None,
    ) -> bool:
        """Record a decision on a pending task.  False if it was not pending."""
        result = self._session.execute(
            update(ApprovalTaskModel)
            .where(
                ApprovalTaskModel.id == task_id,
                ApprovalTaskModel.tenant_id == tenant_id,
                ApprovalTaskModel.status == TaskStatus.PENDING.value,
            )
            .values(
                status=status.value,
                decided_by=decided_by,
                decided_at=decided_at,
                decision_note=note,
            )
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Snapshots and events (append-only)
    # ------------------------------------------------------------------

    def get_snapshots(
        self, instance_id: UUID, tenant_id: str,
    ) -> list[AssignmentSnapshotModel]:
        return list(self._session.execute(
            select(AssignmentSnapshotModel)
            .where(
                AssignmentSnapshotModel.approval_instance_id == instance_id,
                AssignmentSnapshotModel.tenant_id == tenant_id,
            )
            .order_by(AssignmentSnapshotModel.created_at)
        ).scalars())

    def get_events(self, instance_id: UUID, tenant_id: str) -> list[ApprovalEventModel]:
        return list(self._session.execute(
            select(ApprovalEventModel)
            .where(
                ApprovalEventModel.approval_instance_id == instance_id,
                ApprovalEventModel.tenant_id == tenant_id,
            )
            .order_by(ApprovalEventModel.sequence)
        ).scalars())

    def append_event(
        self,
        *,
        tenant_id: str,
        instance_id: UUID,
        event_type: str,
        actor_id: str,
        occurred_at: datetime,
        task_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> ApprovalEventModel:
        next_seq = self._session.execute(
            select(func.coalesce(func.max(ApprovalEventModel.sequence), 0)).where(
                ApprovalEventModel.approval_instance_id == instance_id,
            )
        ).scalar_one() + 1

        model = ApprovalEventModel(
            tenant_id=tenant_id,
            approval_instance_id=instance_id,
            approval_task_id=task_id,
            event_type=event_type,
            payload=payload or {},
            actor_id=actor_id,
            occurred_at=occurred_at,
            sequence=next_seq,
        )
        self._session.add(model)
        self._session.flush()

        logger.debug(
            "approval_event_appended",
            extra={
                "approval_instance_id": str(instance_id),
                "event_type": event_type,
                "sequence": next_seq,
            },
        )
        return model

    def get_escalations(
        self, instance_id: UUID, tenant_id: str,
    ) -> list[ApprovalEscalationModel]:
        """Escalations of an instance, newest first."""
        return list(self._session.execute(
            select(ApprovalEscalationModel)
            .where(
                ApprovalEscalationModel.approval_instance_id == instance_id,
                ApprovalEscalationModel.tenant_id == tenant_id,
            )
            .order_by(ApprovalEscalationModel.occurred_at.desc(), ApprovalEscalationModel.id)
        ).scalars())

    def add(self, model: Any) -> Any:
        """Stage a new row and flush so its id and constraints are live."""
        self._session.add(model)
        self._session.flush()
        return model
