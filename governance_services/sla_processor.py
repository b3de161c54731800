"""
governance_services.sla_processor -- SLA reminder and escalation handling.

Responsibility:
    Carries out the SLA timers the approval core schedules once the
    external scheduler fires them: a reminder writes an
    ``sla_reminder_sent`` event, an escalation records an escalation row
    and an ``sla_escalation_executed`` event.  After a scheduler restart,
    ``rehydrate_pending_timers`` schedules the timers of every task still
    waiting on a decision again.

Architecture position:
    Services layer.  Schedules through the ``TimerScheduler`` port; the
    scheduler calls back into ``fire`` (or the two ``process_*`` methods).

Invariants enforced:
    - A timer acts only while its task is a pending approver task of a
      pending stage on an open instance.  A stale timer is a logged no-op.
    - Escalation rows are append-only.
    - Rehydration cancels a task's timers before scheduling them again, so
      repeated runs leave one reminder and one escalation per task.

Failure modes:
    - Scheduler and audit failures are logged and swallowed.
    - SQLAlchemyError propagates to the caller's transaction.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from governance_kernel.domain.approval import (
    ApprovalEscalation,
    ApprovalEventType,
    ApprovalInstanceStatus,
    StageStatus,
    TaskStatus,
    TaskType,
)
from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.context import SYSTEM_ACTOR
from governance_kernel.domain.ports import AuditLogger, AuditRecord, TimerScheduler
from governance_kernel.logging_config import LogContext, get_logger
from governance_kernel.models.approval import (
    ApprovalEscalationModel,
    ApprovalInstanceModel,
    ApprovalTaskModel,
)
from governance_kernel.services.approval_store import ApprovalStore
from governance_kernel.services.audit import emit_audit
from governance_kernel.services.timers import ESCALATION, REMINDER, ScheduledTimer, TimerGuard
from governance_services.approval_instance_manager import DEFAULT_REMINDER_RATIO

logger = get_logger("services.sla_processor")

SLA_BREACH = "sla_breach"

AUDIT_ACTION_ESCALATED = "approval.sla_escalated"


class SlaProcessor:
    """Executes fired SLA timers and restores them after a restart."""

    def __init__(
        self,
        session: Session,
        audit_logger: AuditLogger | None = None,
        timers: TimerScheduler | None = None,
        clock: Clock | None = None,
        *,
        reminder_ratio: float = DEFAULT_REMINDER_RATIO,
    ) -> None:
        self._store = ApprovalStore(session)
        self._audit = audit_logger
        self._timers = TimerGuard(timers)
        self._clock = clock or SystemClock()
        self._reminder_ratio = reminder_ratio

    def fire(self, timer: ScheduledTimer) -> bool:
        """Dispatch one fired timer.  True when it acted on a live task."""
        if timer.kind == REMINDER:
            return self.process_reminder(timer.task_id, timer.tenant_id)
        if timer.kind == ESCALATION:
            return self.process_escalation(timer.task_id, timer.tenant_id) is not None
        logger.warning(
            "sla_timer_kind_unknown",
            extra={"task_id": str(timer.task_id), "kind": timer.kind},
        )
        return False

    def process_reminder(self, task_id: UUID, tenant_id: str) -> bool:
        """Record a reminder for a task still awaiting its decision."""
        live = self._live_task(task_id, tenant_id, REMINDER)
        if live is None:
            return False
        task, instance = live

        self._store.append_event(
            tenant_id=tenant_id,
            instance_id=instance.id,
            task_id=task.id,
            event_type=ApprovalEventType.SLA_REMINDER_SENT,
            actor_id=SYSTEM_ACTOR,
            occurred_at=self._clock.now(),
            payload=_assignee_payload(task),
        )
        with LogContext.bind(tenant_id=tenant_id, approval_instance_id=instance.id):
            logger.info("approval_sla_reminder_sent", extra={"task_id": str(task.id)})
        return True

    def process_escalation(
        self,
        task_id: UUID,
        tenant_id: str,
        kind: str = SLA_BREACH,
        payload: dict[str, Any] | None = None,
    ) -> ApprovalEscalation | None:
        """Record an escalation for a task whose SLA ran out.

        Returns:
            The escalation row, or None when the task no longer waits on
            a decision.
        """
        live = self._live_task(task_id, tenant_id, ESCALATION)
        if live is None:
            return None
        task, instance = live
        now = self._clock.now()
        due_at = task.due_at.isoformat() if task.due_at else None

        escalation = self._store.add(ApprovalEscalationModel(
            tenant_id=tenant_id,
            approval_instance_id=instance.id,
            approval_task_id=task.id,
            kind=kind,
            payload={"due_at": due_at, **(payload or {})},
            occurred_at=now,
        ))
        self._store.append_event(
            tenant_id=tenant_id,
            instance_id=instance.id,
            task_id=task.id,
            event_type=ApprovalEventType.SLA_ESCALATION_EXECUTED,
            actor_id=SYSTEM_ACTOR,
            occurred_at=now,
            payload={
                "escalation_id": str(escalation.id),
                "kind": kind,
                **_assignee_payload(task),
            },
        )
        emit_audit(self._audit, AuditRecord(
            action=AUDIT_ACTION_ESCALATED,
            tenant_id=tenant_id,
            actor_id=SYSTEM_ACTOR,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            occurred_at=now,
            payload={
                "approval_instance_id": str(instance.id),
                "task_id": str(task.id),
                "kind": kind,
            },
        ))
        with LogContext.bind(tenant_id=tenant_id, approval_instance_id=instance.id):
            logger.warning(
                "approval_sla_escalated",
                extra={"task_id": str(task.id), "kind": kind},
            )
        return escalation.to_dto()

    def rehydrate_pending_timers(self, tenant_id: str) -> int:
        """Schedule again the timers of every task whose SLA has not run out.

        Returns:
            Number of tasks whose timers were scheduled.
        """
        now = self._clock.now()
        scheduled = 0
        for task in self._store.get_timed_pending_tasks(tenant_id, due_after=now):
            self._timers.cancel(task.id, tenant_id)
            reminder_at = now + (task.due_at - now) * self._reminder_ratio
            if self._timers.schedule(
                task.id, tenant_id, reminder_at=reminder_at, escalation_at=task.due_at,
            ):
                scheduled += 1

        with LogContext.bind(tenant_id=tenant_id):
            logger.info("approval_sla_timers_rehydrated", extra={"task_count": scheduled})
        return scheduled

    def get_escalations(self, instance_id: UUID, tenant_id: str) -> list[ApprovalEscalation]:
        return [e.to_dto() for e in self._store.get_escalations(instance_id, tenant_id)]

    def _live_task(
        self, task_id: UUID, tenant_id: str, kind: str,
    ) -> tuple[ApprovalTaskModel, ApprovalInstanceModel] | None:
        task = self._store.get_task(task_id, tenant_id)
        instance = stage = None
        if task is not None:
            instance = self._store.get_instance(task.approval_instance_id, tenant_id)
            stage = self._store.get_stage(task.approval_stage_id, tenant_id)

        if (
            task is None
            or task.task_type != TaskType.APPROVER.value
            or task.status != TaskStatus.PENDING.value
            or instance is None
            or instance.status != ApprovalInstanceStatus.OPEN.value
            or stage is None
            or stage.status != StageStatus.PENDING.value
        ):
            logger.debug("sla_timer_stale", extra={"task_id": str(task_id), "kind": kind})
            return None
        return task, instance


def _assignee_payload(task: ApprovalTaskModel) -> dict[str, Any]:
    return {
        "assignee_principal_id": task.assignee_principal_id,
        "assignee_group_id": task.assignee_group_id,
    }
