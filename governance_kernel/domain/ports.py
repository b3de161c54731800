"""
Ports -- narrow interfaces to collaborators outside the governance core.

Consumed:
    PolicyGate      -- permission evaluation (external)
    AuditLogger     -- business audit trail (external, fire-and-forget)
    TimerScheduler  -- SLA reminder / escalation timers (external)

Between the two halves of the core, wired by constructor injection:
    LifecycleTransitioner -- the approval side resumes transitions through it
    ApprovalGateway       -- the gate evaluator opens / queries approvals through it
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from governance_kernel.domain.approval import (
    ApprovalCreationResult,
    ApprovalInstance,
)
from governance_kernel.domain.context import RequestContext
from governance_kernel.domain.lifecycle import TransitionResult


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str | None = None


@runtime_checkable
class PolicyGate(Protocol):
    def authorize(
        self,
        operation_code: str,
        entity_name: str,
        ctx: RequestContext,
        record: dict[str, Any] | None = None,
    ) -> PolicyDecision:
        ...


@dataclass(frozen=True)
class AuditRecord:
    """A business event handed to the audit logger."""

    action: str
    tenant_id: str
    actor_id: str
    entity_name: str
    entity_id: str
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class AuditLogger(Protocol):
    def log(self, record: AuditRecord) -> None:
        ...


@runtime_checkable
class TimerScheduler(Protocol):
    def schedule_reminder(self, task_id: UUID, tenant_id: str, fire_at: datetime) -> None:
        ...

    def schedule_escalation(self, task_id: UUID, tenant_id: str, fire_at: datetime) -> None:
        ...

    def cancel_timers(self, task_id: UUID, tenant_id: str) -> int:
        """Cancel every pending timer for the task; return how many were cancelled."""
        ...


@runtime_checkable
class LifecycleTransitioner(Protocol):
    def transition(
        self,
        entity_name: str,
        entity_id: str,
        operation_code: str,
        ctx: RequestContext,
        payload: dict[str, Any] | None = None,
        expected_transition_id: UUID | None = None,
    ) -> TransitionResult:
        ...


@runtime_checkable
class ApprovalGateway(Protocol):
    def get_instance_for_entity(
        self, entity_name: str, entity_id: str, tenant_id: str
    ) -> ApprovalInstance | None:
        ...

    def create_approval_instance(
        self,
        entity_name: str,
        entity_id: str,
        transition_id: UUID | None,
        approval_template_id: UUID,
        ctx: RequestContext,
        assignment_context: dict[str, Any] | None = None,
    ) -> ApprovalCreationResult:
        ...
