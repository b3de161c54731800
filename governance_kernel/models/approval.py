"""
Module: governance_kernel.models.approval
Responsibility: ORM persistence for approval definitions (template, template
    stage, routing rule) and approval runtime data (instance, stage, task,
    assignment snapshot, event, escalation).

Architecture position: Kernel > Models.  May import from db/base.py,
    exceptions, and domain/ (for to_dto only).

Invariants enforced:
    - At most one open approval instance per (tenant, entity_name,
      entity_id): partial unique index WHERE status = 'open' on both
      PostgreSQL and SQLite.
    - Status columns are limited by CHECK constraints.
    - Assignment snapshots, approval events and escalations are
      append-only (ORM listeners below).

Failure modes:
    - IntegrityError on a second open instance for the same entity.
    - ImmutabilityViolationError on UPDATE/DELETE of a snapshot, event or
      escalation.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from governance_kernel.db.base import TenantScoped, UUIDString
from governance_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from governance_kernel.domain.approval import (
        ApprovalEscalation,
        ApprovalEvent,
        ApprovalInstance,
        ApprovalRoutingRule,
        ApprovalStage,
        ApprovalTask,
        ApprovalTemplate,
        ApprovalTemplateStage,
        AssignmentSnapshot,
    )


# =============================================================================
# Definitions
# =============================================================================


class ApprovalTemplateModel(TenantScoped):
    __tablename__ = "approval_templates"

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_approval_templates_code"),
    )

    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    def __repr__(self) -> str:
        return f"<ApprovalTemplate {self.code}>"

    def to_dto(self) -> ApprovalTemplate:
        from governance_kernel.domain.approval import ApprovalTemplate

        return ApprovalTemplate(
            id=self.id, tenant_id=self.tenant_id, code=self.code, name=self.name,
        )


class ApprovalTemplateStageModel(TenantScoped):
    __tablename__ = "approval_template_stages"

    __table_args__ = (
        UniqueConstraint(
            "approval_template_id", "stage_no",
            name="uq_approval_template_stages_no",
        ),
        CheckConstraint(
            "mode IN ('all', 'any', 'majority', 'quorum')",
            name="ck_approval_template_stages_mode",
        ),
    )

    approval_template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_templates.id"), nullable=False,
    )
    stage_no: Mapped[int] = mapped_column(Integer, nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False, default="all")
    quorum: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    sla_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def to_dto(self) -> ApprovalTemplateStage:
        from governance_kernel.domain.approval import (
            ApprovalTemplateStage,
            QuorumSpec,
            StageMode,
        )

        return ApprovalTemplateStage(
            id=self.id,
            approval_template_id=self.approval_template_id,
            stage_no=self.stage_no,
            mode=StageMode(self.mode),
            quorum=QuorumSpec.from_dict(self.quorum),
            sla_hours=self.sla_hours,
        )


class ApprovalRoutingRuleModel(TenantScoped):
    __tablename__ = "approval_routing_rules"

    __table_args__ = (
        Index(
            "ix_approval_routing_rules_template",
            "tenant_id", "approval_template_id", "priority",
        ),
    )

    approval_template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_templates.id"), nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    stage_no: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    assign_to: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    def to_dto(self) -> ApprovalRoutingRule:
        from governance_kernel.domain.approval import ApprovalRoutingRule

        return ApprovalRoutingRule(
            id=self.id,
            approval_template_id=self.approval_template_id,
            priority=self.priority,
            stage_no=self.stage_no,
            is_fallback=self.is_fallback,
            conditions=self.conditions,
            assign_to=dict(self.assign_to or {}),
        )


# =============================================================================
# Runtime
# =============================================================================


class ApprovalInstanceModel(TenantScoped):
    """One approval workflow run for one entity transition.

    Contract:
        Created by the instance manager; status / outcome mutated only by
        the decision processor through conditional writes guarded by
        ``status = 'open'``.
    """

    __tablename__ = "approval_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'completed', 'canceled')",
            name="ck_approval_instances_status",
        ),
        CheckConstraint(
            "outcome IS NULL OR outcome IN ('open', 'approved', 'rejected', 'canceled')",
            name="ck_approval_instances_outcome",
        ),
        # At most one open instance per entity
        Index(
            "ix_approval_instances_open_unique",
            "tenant_id", "entity_name", "entity_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        Index(
            "ix_approval_instances_entity",
            "tenant_id", "entity_name", "entity_id", "created_at",
        ),
    )

    entity_name: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    transition_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    approval_template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_templates.id"), nullable=False,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ApprovalInstance {self.id} {self.entity_name}/{self.entity_id} "
            f"status={self.status}>"
        )

    def to_dto(self) -> ApprovalInstance:
        from governance_kernel.domain.approval import (
            ApprovalInstance,
            ApprovalInstanceStatus,
            ApprovalOutcome,
        )

        return ApprovalInstance(
            id=self.id,
            tenant_id=self.tenant_id,
            entity_name=self.entity_name,
            entity_id=self.entity_id,
            transition_id=self.transition_id,
            approval_template_id=self.approval_template_id,
            status=ApprovalInstanceStatus(self.status),
            outcome=ApprovalOutcome(self.outcome) if self.outcome else None,
            context=dict(self.context or {}),
            created_at=self.created_at,
            created_by=self.created_by,
            completed_at=self.completed_at,
        )


class ApprovalStageModel(TenantScoped):
    __tablename__ = "approval_stages"

    __table_args__ = (
        UniqueConstraint(
            "approval_instance_id", "stage_no",
            name="uq_approval_stages_instance_no",
        ),
        CheckConstraint(
            "status IN ('pending', 'completed', 'canceled')",
            name="ck_approval_stages_status",
        ),
    )

    approval_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_instances.id"), nullable=False, index=True,
    )
    stage_no: Mapped[int] = mapped_column(Integer, nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    quorum: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    sla_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    activated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> ApprovalStage:
        from governance_kernel.domain.approval import (
            ApprovalStage,
            QuorumSpec,
            StageMode,
            StageStatus,
        )

        return ApprovalStage(
            id=self.id,
            approval_instance_id=self.approval_instance_id,
            stage_no=self.stage_no,
            mode=StageMode(self.mode),
            quorum=QuorumSpec.from_dict(self.quorum),
            status=StageStatus(self.status),
            activated_at=self.activated_at,
            completed_at=self.completed_at,
        )


class ApprovalTaskModel(TenantScoped):
    __tablename__ = "approval_tasks"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_approval_tasks_status",
        ),
        CheckConstraint(
            "task_type IN ('approver', 'observer')",
            name="ck_approval_tasks_type",
        ),
        Index("ix_approval_tasks_stage", "approval_stage_id", "status"),
        Index("ix_approval_tasks_assignee", "tenant_id", "assignee_principal_id", "status"),
    )

    approval_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_instances.id"), nullable=False, index=True,
    )
    approval_stage_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_stages.id"), nullable=False,
    )
    assignee_principal_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    assignee_group_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    task_type: Mapped[str] = mapped_column(String(20), nullable=False, default="approver")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    decided_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    decision_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ApprovalTask {self.id} status={self.status}>"

    def to_dto(self) -> ApprovalTask:
        from governance_kernel.domain.approval import ApprovalTask, TaskStatus, TaskType

        return ApprovalTask(
            id=self.id,
            tenant_id=self.tenant_id,
            approval_instance_id=self.approval_instance_id,
            approval_stage_id=self.approval_stage_id,
            assignee_principal_id=self.assignee_principal_id,
            assignee_group_id=self.assignee_group_id,
            task_type=TaskType(self.task_type),
            status=TaskStatus(self.status),
            created_at=self.created_at,
            decided_by=self.decided_by,
            decision_note=self.decision_note,
            due_at=self.due_at,
            decided_at=self.decided_at,
        )


class AssignmentSnapshotModel(TenantScoped):
    """Immutable record of who was assigned, at the time of assignment."""

    __tablename__ = "approval_assignment_snapshots"

    approval_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_instances.id"), nullable=False, index=True,
    )
    approval_stage_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_stages.id"), nullable=False,
    )
    approval_task_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("approval_tasks.id"), nullable=True,
    )
    resolved_assignment: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    resolved_from_rule_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)

    def to_dto(self) -> AssignmentSnapshot:
        from governance_kernel.domain.approval import AssignmentSnapshot

        return AssignmentSnapshot(
            id=self.id,
            approval_instance_id=self.approval_instance_id,
            approval_stage_id=self.approval_stage_id,
            approval_task_id=self.approval_task_id,
            resolved_assignment=dict(self.resolved_assignment),
            resolved_from_rule_id=self.resolved_from_rule_id,
            created_at=self.created_at,
            created_by=self.created_by,
        )


class ApprovalEventModel(TenantScoped):
    """Append-only approval event log row."""

    __tablename__ = "approval_events"

    __table_args__ = (
        Index("ix_approval_events_instance", "approval_instance_id", "occurred_at"),
    )

    approval_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_instances.id"), nullable=False,
    )
    approval_task_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<ApprovalEvent {self.event_type} instance={self.approval_instance_id}>"

    def to_dto(self) -> ApprovalEvent:
        from governance_kernel.domain.approval import ApprovalEvent

        return ApprovalEvent(
            id=self.id,
            approval_instance_id=self.approval_instance_id,
            approval_task_id=self.approval_task_id,
            event_type=self.event_type,
            payload=dict(self.payload or {}),
            actor_id=self.actor_id,
            occurred_at=self.occurred_at,
        )


class ApprovalEscalationModel(TenantScoped):
    """Append-only record of an SLA escalation fired for a task."""

    __tablename__ = "approval_escalations"

    __table_args__ = (
        Index("ix_approval_escalations_instance", "approval_instance_id", "occurred_at"),
    )

    approval_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_instances.id"), nullable=False,
    )
    approval_task_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_tasks.id"), nullable=False,
    )
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ApprovalEscalation {self.kind} task={self.approval_task_id}>"

    def to_dto(self) -> ApprovalEscalation:
        from governance_kernel.domain.approval import ApprovalEscalation

        return ApprovalEscalation(
            id=self.id,
            approval_instance_id=self.approval_instance_id,
            approval_task_id=self.approval_task_id,
            kind=self.kind,
            payload=dict(self.payload or {}),
            occurred_at=self.occurred_at,
        )


# =============================================================================
# ORM-Level Immutability (Append-Only)
# =============================================================================


@event.listens_for(AssignmentSnapshotModel, "before_update")
def prevent_snapshot_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AssignmentSnapshot",
        entity_id=str(target.id),
        reason="Assignment snapshots are immutable -- cannot modify",
    )


@event.listens_for(AssignmentSnapshotModel, "before_delete")
def prevent_snapshot_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AssignmentSnapshot",
        entity_id=str(target.id),
        reason="Assignment snapshots are immutable -- cannot delete",
    )


@event.listens_for(ApprovalEventModel, "before_update")
def prevent_approval_event_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalEvent",
        entity_id=str(target.id),
        reason="Approval events are append-only -- cannot modify",
    )


@event.listens_for(ApprovalEventModel, "before_delete")
def prevent_approval_event_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalEvent",
        entity_id=str(target.id),
        reason="Approval events are append-only -- cannot delete",
    )


@event.listens_for(ApprovalEscalationModel, "before_update")
def prevent_escalation_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalEscalation",
        entity_id=str(target.id),
        reason="Approval escalations are append-only -- cannot modify",
    )


@event.listens_for(ApprovalEscalationModel, "before_delete")
def prevent_escalation_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalEscalation",
        entity_id=str(target.id),
        reason="Approval escalations are append-only -- cannot delete",
    )
