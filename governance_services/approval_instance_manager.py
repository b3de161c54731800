"""
governance_services.approval_instance_manager -- Approval instance creation.

Responsibility:
    Opens an Approval Instance for an entity from an Approval Template:
    one stage row per template stage, approver / observer tasks for the
    activated stage, an assignment snapshot, and the opening events.
    Activates later stages when earlier ones complete.  Serves the
    tenant-scoped read lookups over approval runtime data.

Architecture position:
    Services layer.  Implements the ``ApprovalGateway`` port consumed by
    the transition gate evaluator.  Approver routing is delegated to the
    pure ``governance_engines.routing`` engine.

Invariants enforced:
    - At most one open instance per (tenant, entity_name, entity_id): a
      look-up before insert, backed by the partial unique index.
    - Instance, stage, task, snapshot, and event rows of one creation are
      written inside one SAVEPOINT; a failure leaves none of them behind.
    - Stages activate strictly in ``stage_no`` order, each at most once.
    - A later stage that resolves no approvers cancels the instance
      (outcome ``canceled``, reason ``no_approvers``).
    - Validation failures are returned as ApprovalCreationResult, never
      raised.

Failure modes:
    - SQLAlchemyError other than the open-instance uniqueness conflict
      propagates to the caller's transaction.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from governance_engines.routing import select_assignees
from governance_kernel.domain.approval import (
    ApprovalCreationResult,
    ApprovalEvent,
    ApprovalEventType,
    ApprovalInstance,
    ApprovalInstanceStatus,
    ApprovalOutcome,
    ApprovalStage,
    ApprovalTask,
    AssigneeResolution,
    AssignmentSnapshot,
    StageStatus,
    TaskStatus,
    TaskType,
)
from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.context import RequestContext
from governance_kernel.domain.ports import AuditLogger, AuditRecord, TimerScheduler
from governance_kernel.logging_config import LogContext, get_logger
from governance_kernel.models.approval import (
    ApprovalInstanceModel,
    ApprovalStageModel,
    ApprovalTaskModel,
    AssignmentSnapshotModel,
)
from governance_kernel.services.approval_store import ApprovalStore
from governance_kernel.services.audit import emit_audit
from governance_kernel.services.timers import TimerGuard

logger = get_logger("services.approval_instance_manager")

ERROR_TEMPLATE_NOT_FOUND = "Template not found"
ERROR_TEMPLATE_NO_STAGES = "Template has no stages"
ERROR_OPEN_INSTANCE_EXISTS = "Open approval already exists"

AUDIT_ACTION_CREATED = "approval.instance_created"
AUDIT_ACTION_CANCELED = "approval.instance_canceled"

NO_APPROVERS_REASON = "no_approvers"

DEFAULT_REMINDER_RATIO = 0.75


def no_approvers_error(stage_no: int) -> str:
    return f"No approvers resolved for stage {stage_no}"


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class ApprovalInstanceManager:
    """Creates approval instances and activates their stages."""

    def __init__(
        self,
        session: Session,
        audit_logger: AuditLogger | None = None,
        timers: TimerScheduler | None = None,
        clock: Clock | None = None,
        *,
        reminder_ratio: float = DEFAULT_REMINDER_RATIO,
        default_sla_hours: int | None = None,
    ) -> None:
        self._session = session
        self._store = ApprovalStore(session)
        self._audit = audit_logger
        self._timers = TimerGuard(timers)
        self._clock = clock or SystemClock()
        self._reminder_ratio = reminder_ratio
        self._default_sla_hours = default_sla_hours

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_approval_instance(
        self,
        entity_name: str,
        entity_id: str,
        transition_id: UUID | None,
        approval_template_id: UUID,
        ctx: RequestContext,
        assignment_context: dict[str, Any] | None = None,
    ) -> ApprovalCreationResult:
        """Open an approval instance for an entity.

        Args:
            entity_name: Entity type the approval is for.
            entity_id: The record's id.
            transition_id: The blocked transition, resumed on approval.
            approval_template_id: Template to instantiate.
            ctx: Requesting caller.
            assignment_context: Entity data routing-rule conditions may
                reference, merged over the caller's context.

        Returns:
            ApprovalCreationResult with the instance id and the number of
            stages and tasks created, or the failure reason.
        """
        tenant_id = ctx.tenant_id
        template = self._store.get_template(approval_template_id, tenant_id)
        if template is None:
            return ApprovalCreationResult.failure(ERROR_TEMPLATE_NOT_FOUND)

        template_stages = [
            s.to_dto() for s in self._store.get_template_stages(approval_template_id, tenant_id)
        ]
        if not template_stages:
            return ApprovalCreationResult.failure(ERROR_TEMPLATE_NO_STAGES)

        if self._store.find_open_instance(entity_name, entity_id, tenant_id) is not None:
            return ApprovalCreationResult.failure(ERROR_OPEN_INSTANCE_EXISTS)

        routing_context = ctx.as_condition_context()
        routing_context.update(assignment_context or {})
        routing_context = _jsonable(routing_context)

        first = template_stages[0]
        resolution = self._resolve(approval_template_id, tenant_id, first.stage_no, routing_context)
        if not resolution.approvers:
            logger.warning(
                "approval_no_approvers_resolved",
                extra={
                    "entity_name": entity_name,
                    "entity_id": entity_id,
                    "approval_template_id": str(approval_template_id),
                    "stage_no": first.stage_no,
                },
            )
            return ApprovalCreationResult.failure(no_approvers_error(first.stage_no))

        now = self._clock.now()
        try:
            with self._session.begin_nested():
                instance = self._store.add(ApprovalInstanceModel(
                    tenant_id=tenant_id,
                    entity_name=entity_name,
                    entity_id=entity_id,
                    transition_id=transition_id,
                    approval_template_id=approval_template_id,
                    status=ApprovalInstanceStatus.OPEN.value,
                    outcome=ApprovalOutcome.OPEN.value,
                    context={"routing_context": routing_context},
                    created_at=now,
                    created_by=ctx.user_id,
                ))
                stages = [
                    self._store.add(ApprovalStageModel(
                        tenant_id=tenant_id,
                        approval_instance_id=instance.id,
                        stage_no=ts.stage_no,
                        mode=ts.mode.value,
                        quorum=ts.quorum.to_dict() if ts.quorum else None,
                        sla_hours=ts.sla_hours,
                        status=StageStatus.PENDING.value,
                        activated_at=now if position == 0 else None,
                    ))
                    for position, ts in enumerate(template_stages)
                ]
                self._store.append_event(
                    tenant_id=tenant_id,
                    instance_id=instance.id,
                    event_type=ApprovalEventType.INSTANCE_CREATED,
                    actor_id=ctx.user_id,
                    occurred_at=now,
                    payload={
                        "entity_name": entity_name,
                        "entity_id": entity_id,
                        "approval_template_id": str(approval_template_id),
                        "transition_id": str(transition_id) if transition_id else None,
                        "stage_count": len(stages),
                    },
                )
                tasks = self._open_stage(instance, stages[0], resolution, ctx.user_id, now)
        except IntegrityError:
            if self._store.find_open_instance(entity_name, entity_id, tenant_id) is None:
                raise
            logger.info(
                "approval_instance_creation_conflict",
                extra={"entity_name": entity_name, "entity_id": entity_id},
            )
            return ApprovalCreationResult.failure(ERROR_OPEN_INSTANCE_EXISTS)

        self._schedule_timers(tasks, now)

        emit_audit(self._audit, AuditRecord(
            action=AUDIT_ACTION_CREATED,
            tenant_id=tenant_id,
            actor_id=ctx.user_id,
            entity_name=entity_name,
            entity_id=entity_id,
            occurred_at=now,
            payload={
                "approval_instance_id": str(instance.id),
                "approval_template": template.code,
                "stage_count": len(stages),
                "task_count": len(tasks),
            },
        ))
        with LogContext.bind_request(ctx, approval_instance_id=instance.id, entity_id=entity_id):
            logger.info(
                "approval_instance_created",
                extra={
                    "entity_name": entity_name,
                    "entity_id": entity_id,
                    "approval_template": template.code,
                    "stage_count": len(stages),
                    "task_count": len(tasks),
                },
            )
        return ApprovalCreationResult.ok(instance.id, len(stages), len(tasks))

    def activate_next_stage(
        self, instance_id: UUID, ctx: RequestContext,
    ) -> ApprovalStage | None:
        """Activate the stage following the completed ones.

        No-op (returns None) unless the instance is open, every earlier
        stage is completed, and the next stage is pending and never
        activated.  Approvers are routed against the context captured
        when the instance was opened.  When nobody resolves for the stage
        the stage and the instance are canceled and None is returned.
        """
        tenant_id = ctx.tenant_id
        instance = self._store.get_instance(instance_id, tenant_id, for_update=True)
        if instance is None or instance.status != ApprovalInstanceStatus.OPEN.value:
            return None

        stage = None
        for candidate in self._store.get_stages(instance_id, tenant_id):
            if candidate.status == StageStatus.COMPLETED.value:
                continue
            if candidate.status == StageStatus.PENDING.value and candidate.activated_at is None:
                stage = candidate
            break
        if stage is None:
            return None

        routing_context = dict(instance.context.get("routing_context") or {})
        resolution = self._resolve(
            instance.approval_template_id, tenant_id, stage.stage_no, routing_context,
        )
        if not resolution.approvers:
            logger.warning(
                "approval_no_approvers_resolved",
                extra={
                    "approval_instance_id": str(instance_id),
                    "stage_no": stage.stage_no,
                },
            )
            self._cancel_unroutable(instance, stage, ctx.user_id)
            return None

        now = self._clock.now()
        if not self._store.mark_stage_activated(stage.id, tenant_id, now):
            return None
        tasks = self._open_stage(instance, stage, resolution, ctx.user_id, now)
        self._schedule_timers(tasks, now)

        logger.info(
            "approval_stage_activated",
            extra={
                "approval_instance_id": str(instance_id),
                "stage_no": stage.stage_no,
                "task_count": len(tasks),
            },
        )
        self._session.refresh(stage)
        return stage.to_dto()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(
        self,
        template_id: UUID,
        tenant_id: str,
        stage_no: int,
        routing_context: dict[str, Any],
    ) -> AssigneeResolution:
        rules = [r.to_dto() for r in self._store.get_routing_rules(template_id, tenant_id)]
        return select_assignees(rules=rules, stage_no=stage_no, context=routing_context)

    def _open_stage(
        self,
        instance: ApprovalInstanceModel,
        stage: ApprovalStageModel,
        resolution: AssigneeResolution,
        actor_id: str,
        now: datetime,
    ) -> list[ApprovalTaskModel]:
        """Create the stage's tasks, its assignment snapshot, and its activation event."""
        sla_hours = stage.sla_hours if stage.sla_hours is not None else self._default_sla_hours
        due_at = now + timedelta(hours=sla_hours) if sla_hours else None

        tasks = [
            self._store.add(ApprovalTaskModel(
                tenant_id=instance.tenant_id,
                approval_instance_id=instance.id,
                approval_stage_id=stage.id,
                assignee_principal_id=assignee.principal_id,
                assignee_group_id=assignee.group_id,
                task_type=assignee.task_type.value,
                status=TaskStatus.PENDING.value,
                due_at=due_at if assignee.task_type is TaskType.APPROVER else None,
                created_at=now,
            ))
            for assignee in resolution.assignees
        ]

        self._store.add(AssignmentSnapshotModel(
            tenant_id=instance.tenant_id,
            approval_instance_id=instance.id,
            approval_stage_id=stage.id,
            approval_task_id=None,
            resolved_assignment={
                "stage_no": stage.stage_no,
                "assignees": [a.to_dict() for a in resolution.assignees],
                "task_ids": [str(t.id) for t in tasks],
            },
            resolved_from_rule_id=resolution.rule_id,
            created_at=now,
            created_by=actor_id,
        ))

        self._store.append_event(
            tenant_id=instance.tenant_id,
            instance_id=instance.id,
            event_type=ApprovalEventType.STAGE_ACTIVATED,
            actor_id=actor_id,
            occurred_at=now,
            payload={
                "stage_no": stage.stage_no,
                "task_ids": [str(t.id) for t in tasks],
                "rule_id": str(resolution.rule_id) if resolution.rule_id else None,
            },
        )
        return tasks

    def _cancel_unroutable(
        self,
        instance: ApprovalInstanceModel,
        stage: ApprovalStageModel,
        actor_id: str,
    ) -> None:
        """Close an instance whose next stage has nobody to route to."""
        tenant_id = instance.tenant_id
        now = self._clock.now()
        self._store.complete_stage(
            stage.id, tenant_id, status=StageStatus.CANCELED, completed_at=now,
        )
        closed = self._store.close_instance(
            instance.id,
            tenant_id,
            status=ApprovalInstanceStatus.CANCELED,
            outcome=ApprovalOutcome.CANCELED.value,
            context={
                **(instance.context or {}),
                "reason": NO_APPROVERS_REASON,
                "stage_no": stage.stage_no,
            },
            completed_at=now,
        )
        if not closed:
            return

        self._store.append_event(
            tenant_id=tenant_id,
            instance_id=instance.id,
            event_type=ApprovalEventType.INSTANCE_CANCELED,
            actor_id=actor_id,
            occurred_at=now,
            payload={"stage_no": stage.stage_no, "reason": NO_APPROVERS_REASON},
        )
        for task in self._store.get_tasks_for_instance(instance.id, tenant_id):
            if task.status == TaskStatus.PENDING.value:
                self._timers.cancel(task.id, tenant_id)
        emit_audit(self._audit, AuditRecord(
            action=AUDIT_ACTION_CANCELED,
            tenant_id=tenant_id,
            actor_id=actor_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            occurred_at=now,
            payload={
                "approval_instance_id": str(instance.id),
                "stage_no": stage.stage_no,
                "reason": NO_APPROVERS_REASON,
            },
        ))
        logger.warning(
            "approval_instance_canceled",
            extra={
                "approval_instance_id": str(instance.id),
                "entity_name": instance.entity_name,
                "entity_id": instance.entity_id,
                "stage_no": stage.stage_no,
                "reason": NO_APPROVERS_REASON,
            },
        )

    def _schedule_timers(self, tasks: list[ApprovalTaskModel], now: datetime) -> None:
        for task in tasks:
            if task.due_at is None:
                continue
            reminder_at = now + (task.due_at - now) * self._reminder_ratio
            self._timers.schedule(
                task.id,
                task.tenant_id,
                reminder_at=reminder_at,
                escalation_at=task.due_at,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_instance(self, instance_id: UUID, tenant_id: str) -> ApprovalInstance | None:
        model = self._store.get_instance(instance_id, tenant_id)
        return model.to_dto() if model else None

    def get_instance_for_entity(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> ApprovalInstance | None:
        """The open instance for an entity, if any."""
        model = self._store.find_open_instance(entity_name, entity_id, tenant_id)
        return model.to_dto() if model else None

    def list_instances_for_entity(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> list[ApprovalInstance]:
        return [
            m.to_dto()
            for m in self._store.list_instances_for_entity(entity_name, entity_id, tenant_id)
        ]

    def get_task(self, task_id: UUID, tenant_id: str) -> ApprovalTask | None:
        model = self._store.get_task(task_id, tenant_id)
        return model.to_dto() if model else None

    def get_tasks_for_instance(self, instance_id: UUID, tenant_id: str) -> list[ApprovalTask]:
        return [t.to_dto() for t in self._store.get_tasks_for_instance(instance_id, tenant_id)]

    def get_stages_for_instance(self, instance_id: UUID, tenant_id: str) -> list[ApprovalStage]:
        return [s.to_dto() for s in self._store.get_stages(instance_id, tenant_id)]

    def get_assignment_snapshots(
        self, instance_id: UUID, tenant_id: str,
    ) -> list[AssignmentSnapshot]:
        return [s.to_dto() for s in self._store.get_snapshots(instance_id, tenant_id)]

    def get_events(self, instance_id: UUID, tenant_id: str) -> list[ApprovalEvent]:
        return [e.to_dto() for e in self._store.get_events(instance_id, tenant_id)]

    def get_pending_tasks_for_user(
        self,
        user_id: str,
        tenant_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ApprovalTask]:
        return [
            t.to_dto()
            for t in self._store.get_pending_tasks_for_principal(
                user_id, tenant_id, limit=limit, offset=offset,
            )
        ]
