"""
governance_services.decision_processor -- Approval task decisions.

Responsibility:
    Records one approver's decision on one task and carries its
    consequences through: timer cancellation, stage re-evaluation, instance
    completion or rejection, and resumption of the lifecycle transition
    the approval was blocking.

Architecture position:
    Services layer.  Stage outcome rules are delegated to the pure
    ``governance_engines.stage_completion`` engine; resumption goes through
    the ``LifecycleTransitioner`` port.

Invariants enforced:
    - Task:     pending -> approved | rejected, both terminal.  A decision
      on a task that is not pending fails and mutates nothing.
    - The instance row is locked before the stage is re-evaluated, and the
      stage and instance writes are conditional on their current status.
      Of two decisions that both observe a closed stage, only the one whose
      write lands emits events and resumes the transition.
    - A rejected stage cancels the instance (outcome ``rejected``) and the
      transition is not resumed.
    - Resumption reuses the stored ``transition_id`` under a system context
      carrying ``_approvalBypass``.

Failure modes:
    - Validation failures are returned as ApprovalDecisionResult.
    - Storage errors propagate; the caller's transaction rolls back the
      whole decision.
    - Timer and audit failures are logged and swallowed.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from governance_engines.stage_completion import evaluate_stage
from governance_kernel.domain.approval import (
    ApprovalDecision,
    ApprovalDecisionResult,
    ApprovalEventType,
    ApprovalInstanceStatus,
    ApprovalOutcome,
    ExternalApprovalStatus,
    QuorumSpec,
    StageStatus,
    TaskStatus,
    TaskType,
)
from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.context import SYSTEM_ACTOR, RequestContext
from governance_kernel.domain.ports import (
    AuditLogger,
    AuditRecord,
    LifecycleTransitioner,
    TimerScheduler,
)
from governance_kernel.exceptions import StageNotFoundError
from governance_kernel.logging_config import LogContext, get_logger
from governance_kernel.models.approval import ApprovalInstanceModel, ApprovalTaskModel
from governance_kernel.services.approval_store import ApprovalStore
from governance_kernel.services.audit import emit_audit
from governance_kernel.services.lifecycle_store import LifecycleStore
from governance_kernel.services.timers import TimerGuard

logger = get_logger("services.decision_processor")

ERROR_TASK_NOT_FOUND = "Task not found"
ERROR_TASK_NOT_PENDING = "Task not pending"
ERROR_NOT_APPROVER_TASK = "Task is not an approver task"
ERROR_INSTANCE_NOT_OPEN = "Approval instance is not open"

STAGE_RESULT_COMPLETED = "completed"
STAGE_RESULT_REJECTED = "rejected"

REJECTED_REASON = "rejected"

AUDIT_ACTION_DECISION = "approval.decision"
AUDIT_ACTION_COMPLETED = "approval.instance_completed"
AUDIT_ACTION_REJECTED = "approval.instance_rejected"


class DecisionProcessor:
    """Applies approver decisions to approval tasks."""

    def __init__(
        self,
        session: Session,
        transitioner: LifecycleTransitioner | None = None,
        audit_logger: AuditLogger | None = None,
        timers: TimerScheduler | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = ApprovalStore(session)
        self._lifecycles = LifecycleStore(session)
        self._transitioner = transitioner
        self._audit = audit_logger
        self._timers = TimerGuard(timers)
        self._clock = clock or SystemClock()

    def make_decision(
        self,
        task_id: UUID,
        decision: ApprovalDecision | str,
        ctx: RequestContext,
        note: str | None = None,
    ) -> ApprovalDecisionResult:
        """Record ``decision`` on ``task_id`` for the approver in ``ctx``.

        Returns:
            ApprovalDecisionResult.  ``stage_status`` and
            ``instance_status`` are set only when this decision closed the
            stage or the instance.
        """
        try:
            choice = ApprovalDecision(decision)
        except ValueError:
            return ApprovalDecisionResult.failure(f"Invalid decision: {decision}", task_id)

        tenant_id = ctx.tenant_id
        task = self._store.get_task(task_id, tenant_id)
        if task is None:
            return ApprovalDecisionResult.failure(ERROR_TASK_NOT_FOUND, task_id)
        if task.task_type != TaskType.APPROVER.value:
            return ApprovalDecisionResult.failure(ERROR_NOT_APPROVER_TASK, task_id)
        if task.status != TaskStatus.PENDING.value:
            return ApprovalDecisionResult.failure(ERROR_TASK_NOT_PENDING, task_id)

        instance = self._store.get_instance(task.approval_instance_id, tenant_id, for_update=True)
        if instance is None or instance.status != ApprovalInstanceStatus.OPEN.value:
            return ApprovalDecisionResult.failure(ERROR_INSTANCE_NOT_OPEN, task_id)

        with LogContext.bind_request(ctx, approval_instance_id=instance.id):
            return self._apply(task, instance, choice, ctx, note)

    def _apply(
        self,
        task: ApprovalTaskModel,
        instance: ApprovalInstanceModel,
        choice: ApprovalDecision,
        ctx: RequestContext,
        note: str | None,
    ) -> ApprovalDecisionResult:
        tenant_id = ctx.tenant_id
        task_status = choice.task_status
        now = self._clock.now()

        recorded = self._store.decide_task(
            task.id,
            tenant_id,
            status=task_status,
            decided_by=ctx.user_id,
            decided_at=now,
            note=note,
        )
        if not recorded:
            return ApprovalDecisionResult.failure(ERROR_TASK_NOT_PENDING, task.id)

        cancelled = self._timers.cancel(task.id, tenant_id)
        if cancelled is not None:
            self._store.append_event(
                tenant_id=tenant_id,
                instance_id=instance.id,
                task_id=task.id,
                event_type=ApprovalEventType.SLA_TIMERS_CANCELLED,
                actor_id=ctx.user_id,
                occurred_at=now,
                payload={"cancelled": cancelled},
            )

        self._store.append_event(
            tenant_id=tenant_id,
            instance_id=instance.id,
            task_id=task.id,
            event_type=(
                ApprovalEventType.TASK_APPROVED
                if task_status is TaskStatus.APPROVED
                else ApprovalEventType.TASK_REJECTED
            ),
            actor_id=ctx.user_id,
            occurred_at=now,
            payload={"decision": choice.value, "note": note},
        )
        emit_audit(self._audit, AuditRecord(
            action=AUDIT_ACTION_DECISION,
            tenant_id=tenant_id,
            actor_id=ctx.user_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            occurred_at=now,
            payload={
                "approval_instance_id": str(instance.id),
                "task_id": str(task.id),
                "decision": choice.value,
                "note": note,
            },
        ))
        logger.info(
            "approval_decision_recorded",
            extra={"task_id": str(task.id), "decision": choice.value},
        )

        stage = self._store.get_stage(task.approval_stage_id, tenant_id)
        if stage is None:
            raise StageNotFoundError(str(task.approval_stage_id))

        approver_statuses = [
            t.status
            for t in self._store.get_tasks_for_stage(stage.id, tenant_id)
            if t.task_type == TaskType.APPROVER.value
        ]
        evaluation = evaluate_stage(
            mode=stage.mode,
            statuses=approver_statuses,
            quorum=QuorumSpec.from_dict(stage.quorum),
        )
        pending = ApprovalDecisionResult(
            success=True, task_id=task.id, task_status=task_status.value,
        )
        if not evaluation.complete:
            return pending

        stage_closed = self._store.complete_stage(
            stage.id,
            tenant_id,
            status=StageStatus.COMPLETED if evaluation.approved else StageStatus.CANCELED,
            completed_at=now,
        )
        if not stage_closed:
            logger.info("approval_stage_already_closed", extra={"stage_id": str(stage.id)})
            return pending

        self._store.append_event(
            tenant_id=tenant_id,
            instance_id=instance.id,
            task_id=task.id,
            event_type=(
                ApprovalEventType.STAGE_COMPLETED
                if evaluation.approved
                else ApprovalEventType.STAGE_REJECTED
            ),
            actor_id=ctx.user_id,
            occurred_at=now,
            payload={
                "stage_no": stage.stage_no,
                "mode": stage.mode,
                "approvals": evaluation.approvals,
                "rejections": evaluation.rejections,
                "required": evaluation.required,
            },
        )

        if evaluation.rejected:
            return self._reject_instance(instance, task, stage.stage_no, ctx, now)

        stages = self._store.get_stages(instance.id, tenant_id)
        if all(s.status == StageStatus.COMPLETED.value for s in stages):
            return self._complete_instance(instance, task, ctx, now)

        logger.info(
            "approval_stage_completed",
            extra={"stage_no": stage.stage_no, "remaining_stages": sum(
                1 for s in stages if s.status == StageStatus.PENDING.value
            )},
        )
        return ApprovalDecisionResult(
            success=True,
            task_id=task.id,
            task_status=task_status.value,
            stage_status=STAGE_RESULT_COMPLETED,
        )

    # ------------------------------------------------------------------
    # Instance outcomes
    # ------------------------------------------------------------------

    def _reject_instance(
        self,
        instance: ApprovalInstanceModel,
        task: ApprovalTaskModel,
        stage_no: int,
        ctx: RequestContext,
        now: datetime,
    ) -> ApprovalDecisionResult:
        tenant_id = ctx.tenant_id
        closed = self._store.close_instance(
            instance.id,
            tenant_id,
            status=ApprovalInstanceStatus.CANCELED,
            outcome=ApprovalOutcome.REJECTED.value,
            context={**(instance.context or {}), "reason": REJECTED_REASON},
            completed_at=now,
        )
        if not closed:
            logger.info("approval_instance_already_closed", extra={"task_id": str(task.id)})
            return ApprovalDecisionResult(
                success=True,
                task_id=task.id,
                task_status=TaskStatus.REJECTED.value,
                stage_status=STAGE_RESULT_REJECTED,
            )

        self._store.append_event(
            tenant_id=tenant_id,
            instance_id=instance.id,
            task_id=task.id,
            event_type=ApprovalEventType.INSTANCE_REJECTED,
            actor_id=ctx.user_id,
            occurred_at=now,
            payload={"stage_no": stage_no, "reason": REJECTED_REASON},
        )
        self._cancel_outstanding_timers(instance, exclude=task.id)
        emit_audit(self._audit, AuditRecord(
            action=AUDIT_ACTION_REJECTED,
            tenant_id=tenant_id,
            actor_id=ctx.user_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            occurred_at=now,
            payload={"approval_instance_id": str(instance.id), "stage_no": stage_no},
        ))
        logger.info(
            "approval_instance_rejected",
            extra={"entity_name": instance.entity_name, "entity_id": instance.entity_id},
        )
        return ApprovalDecisionResult(
            success=True,
            task_id=task.id,
            task_status=TaskStatus.REJECTED.value,
            stage_status=STAGE_RESULT_REJECTED,
            instance_status=ExternalApprovalStatus.REJECTED.value,
        )

    def _complete_instance(
        self,
        instance: ApprovalInstanceModel,
        task: ApprovalTaskModel,
        ctx: RequestContext,
        now: datetime,
    ) -> ApprovalDecisionResult:
        tenant_id = ctx.tenant_id
        closed = self._store.close_instance(
            instance.id,
            tenant_id,
            status=ApprovalInstanceStatus.COMPLETED,
            outcome=ApprovalOutcome.APPROVED.value,
            context=dict(instance.context or {}),
            completed_at=now,
        )
        if not closed:
            logger.info("approval_instance_already_closed", extra={"task_id": str(task.id)})
            return ApprovalDecisionResult(
                success=True,
                task_id=task.id,
                task_status=TaskStatus.APPROVED.value,
                stage_status=STAGE_RESULT_COMPLETED,
            )

        self._store.append_event(
            tenant_id=tenant_id,
            instance_id=instance.id,
            task_id=task.id,
            event_type=ApprovalEventType.INSTANCE_COMPLETED,
            actor_id=ctx.user_id,
            occurred_at=now,
        )
        self._cancel_outstanding_timers(instance, exclude=task.id)
        emit_audit(self._audit, AuditRecord(
            action=AUDIT_ACTION_COMPLETED,
            tenant_id=tenant_id,
            actor_id=ctx.user_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            occurred_at=now,
            payload={"approval_instance_id": str(instance.id)},
        ))
        logger.info(
            "approval_instance_completed",
            extra={"entity_name": instance.entity_name, "entity_id": instance.entity_id},
        )

        triggered = self._resume_transition(instance, ctx)
        return ApprovalDecisionResult(
            success=True,
            task_id=task.id,
            task_status=TaskStatus.APPROVED.value,
            stage_status=STAGE_RESULT_COMPLETED,
            instance_status=ExternalApprovalStatus.COMPLETED.value,
            transition_triggered=triggered,
        )

    def _cancel_outstanding_timers(
        self, instance: ApprovalInstanceModel, exclude: UUID,
    ) -> None:
        for other in self._store.get_tasks_for_instance(instance.id, instance.tenant_id):
            if other.id != exclude and other.status == TaskStatus.PENDING.value:
                self._timers.cancel(other.id, instance.tenant_id)

    # ------------------------------------------------------------------
    # Resumption
    # ------------------------------------------------------------------

    def _resume_transition(self, instance: ApprovalInstanceModel, ctx: RequestContext) -> bool:
        """Replay the stored transition under a bypassing system context."""
        tenant_id = ctx.tenant_id
        now = self._clock.now()

        def _failed(reason: str) -> bool:
            self._store.append_event(
                tenant_id=tenant_id,
                instance_id=instance.id,
                event_type=ApprovalEventType.LIFECYCLE_RESUME_FAILED,
                actor_id=SYSTEM_ACTOR,
                occurred_at=now,
                payload={"reason": reason},
            )
            logger.warning(
                "lifecycle_resume_failed",
                extra={
                    "entity_name": instance.entity_name,
                    "entity_id": instance.entity_id,
                    "reason": reason,
                },
            )
            return False

        if self._transitioner is None:
            return _failed("No lifecycle transitioner configured")
        if instance.transition_id is None:
            return _failed("Approval instance has no transition")

        transition = self._lifecycles.get_transition(instance.transition_id, tenant_id)
        if transition is None:
            return _failed(f"Transition {instance.transition_id} not found")

        system_ctx = RequestContext.system(tenant_id, str(instance.id))
        result = self._transitioner.transition(
            instance.entity_name,
            instance.entity_id,
            transition.operation_code,
            system_ctx,
            payload={"approval_instance_id": str(instance.id)},
            expected_transition_id=instance.transition_id,
        )
        if not result.success:
            return _failed(result.reason or result.error or "Transition failed")

        self._store.append_event(
            tenant_id=tenant_id,
            instance_id=instance.id,
            event_type=ApprovalEventType.LIFECYCLE_RESUMED,
            actor_id=SYSTEM_ACTOR,
            occurred_at=now,
            payload={
                "operation_code": transition.operation_code,
                "new_state": result.new_state_code,
            },
        )
        logger.info(
            "lifecycle_resumed",
            extra={
                "entity_name": instance.entity_name,
                "entity_id": instance.entity_id,
                "operation_code": transition.operation_code,
                "new_state": result.new_state_code,
            },
        )
        return True
