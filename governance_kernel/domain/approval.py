"""
Approval domain types (``governance_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval workflow: the instance / stage / task
status enums, the definition DTOs an Approval Template is built from, the
runtime DTOs the store hands out, and the result objects returned across the
public boundary.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``models/``, ``services/``, or outer layers.

Invariants enforced
-------------------
* Task state machine -- ``TASK_TRANSITIONS``: pending -> approved | rejected,
  both terminal.
* Stage state machine -- ``STAGE_TRANSITIONS``: pending -> completed |
  canceled, both terminal.
* Instance state machine -- ``INSTANCE_TRANSITIONS``: open -> completed |
  canceled, both terminal.
* Result objects carry validation failures; they are never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


# =========================================================================
# Status enums and state machines
# =========================================================================


class ApprovalInstanceStatus(str, Enum):
    """Stored approval instance status."""

    OPEN = "open"
    COMPLETED = "completed"
    CANCELED = "canceled"


class ApprovalOutcome(str, Enum):
    """Explicit outcome of an approval instance."""

    OPEN = "open"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELED = "canceled"


class ExternalApprovalStatus(str, Enum):
    """Status as reported to callers (see ``governance_engines.status_mapper``)."""

    OPEN = "open"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELED = "canceled"


class StageMode(str, Enum):
    """How the tasks of a stage combine into a stage outcome."""

    ALL = "all"
    ANY = "any"
    MAJORITY = "majority"
    QUORUM = "quorum"


class StageStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELED = "canceled"


class TaskStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskType(str, Enum):
    APPROVER = "approver"
    OBSERVER = "observer"


class ApprovalDecision(str, Enum):
    """Decision an approver submits for a task."""

    APPROVE = "approve"
    REJECT = "reject"

    @property
    def task_status(self) -> TaskStatus:
        if self is ApprovalDecision.APPROVE:
            return TaskStatus.APPROVED
        return TaskStatus.REJECTED


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.APPROVED, TaskStatus.REJECTED}),
    TaskStatus.APPROVED: frozenset(),
    TaskStatus.REJECTED: frozenset(),
}

STAGE_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.COMPLETED, StageStatus.CANCELED}),
    StageStatus.COMPLETED: frozenset(),
    StageStatus.CANCELED: frozenset(),
}

INSTANCE_TRANSITIONS: dict[ApprovalInstanceStatus, frozenset[ApprovalInstanceStatus]] = {
    ApprovalInstanceStatus.OPEN: frozenset({
        ApprovalInstanceStatus.COMPLETED,
        ApprovalInstanceStatus.CANCELED,
    }),
    ApprovalInstanceStatus.COMPLETED: frozenset(),
    ApprovalInstanceStatus.CANCELED: frozenset(),
}

TERMINAL_TASK_STATUSES: frozenset[TaskStatus] = frozenset({
    TaskStatus.APPROVED,
    TaskStatus.REJECTED,
})


class ApprovalEventType:
    """Event type strings written to the approval event log."""

    INSTANCE_CREATED = "instance_created"
    STAGE_ACTIVATED = "stage_activated"
    TASK_APPROVED = "task_approved"
    TASK_REJECTED = "task_rejected"
    SLA_TIMERS_CANCELLED = "sla_timers_cancelled"
    STAGE_COMPLETED = "stage_completed"
    STAGE_REJECTED = "stage_rejected"
    INSTANCE_COMPLETED = "instance_completed"
    INSTANCE_REJECTED = "instance_rejected"
    INSTANCE_CANCELED = "instance_canceled"
    LIFECYCLE_RESUMED = "lifecycle_resumed"
    LIFECYCLE_RESUME_FAILED = "lifecycle_resume_failed"
    SLA_REMINDER_SENT = "sla_reminder_sent"
    SLA_ESCALATION_EXECUTED = "sla_escalation_executed"


# =========================================================================
# Definition DTOs
# =========================================================================


@dataclass(frozen=True)
class QuorumSpec:
    """Required approvals for a quorum stage: a count or a percentage."""

    type: str
    value: float

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> QuorumSpec | None:
        if not data:
            return None
        kind = data.get("type", "count")
        if kind not in ("count", "percentage"):
            raise ValueError(f"Unknown quorum type: {kind!r}")
        return cls(type=kind, value=float(data.get("value", 0)))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "value": self.value}


@dataclass(frozen=True)
class ApprovalTemplate:
    id: UUID
    tenant_id: str
    code: str
    name: str


@dataclass(frozen=True)
class ApprovalTemplateStage:
    """One stage of a template.  ``sla_hours`` drives task due dates."""

    id: UUID
    approval_template_id: UUID
    stage_no: int
    mode: StageMode
    quorum: QuorumSpec | None = None
    sla_hours: int | None = None


@dataclass(frozen=True)
class ApprovalRoutingRule:
    """Resolves approvers for a stage.

    ``stage_no`` of None means the rule applies to every stage.  Lower
    ``priority`` is evaluated first.  ``assign_to`` is the pre-resolved
    assignment target: ``{"assignees": [{"principal_id": ...} |
    {"group_id": ...}, ...], "observers": [...]}`` or a single assignee dict.
    """

    id: UUID
    approval_template_id: UUID
    priority: int = 100
    stage_no: int | None = None
    is_fallback: bool = False
    conditions: dict[str, Any] | None = None
    assign_to: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedAssignee:
    """A concrete approver or observer: exactly one of principal / group."""

    principal_id: str | None = None
    group_id: str | None = None
    task_type: TaskType = TaskType.APPROVER

    def __post_init__(self) -> None:
        if (self.principal_id is None) == (self.group_id is None):
            raise ValueError(
                "ResolvedAssignee needs exactly one of principal_id or group_id"
            )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"task_type": self.task_type.value}
        if self.principal_id is not None:
            data["principal_id"] = self.principal_id
        else:
            data["group_id"] = self.group_id
        return data


@dataclass(frozen=True)
class AssigneeResolution:
    """Outcome of routing for one stage."""

    stage_no: int
    assignees: tuple[ResolvedAssignee, ...] = ()
    rule_id: UUID | None = None

    @property
    def approvers(self) -> tuple[ResolvedAssignee, ...]:
        return tuple(a for a in self.assignees if a.task_type is TaskType.APPROVER)


# =========================================================================
# Runtime DTOs
# =========================================================================


@dataclass(frozen=True)
class ApprovalInstance:
    id: UUID
    tenant_id: str
    entity_name: str
    entity_id: str
    transition_id: UUID | None
    approval_template_id: UUID
    status: ApprovalInstanceStatus
    outcome: ApprovalOutcome | None
    context: dict[str, Any]
    created_at: datetime
    created_by: str
    completed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status is ApprovalInstanceStatus.OPEN


@dataclass(frozen=True)
class ApprovalStage:
    id: UUID
    approval_instance_id: UUID
    stage_no: int
    mode: StageMode
    quorum: QuorumSpec | None
    status: StageStatus
    activated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalTask:
    id: UUID
    tenant_id: str
    approval_instance_id: UUID
    approval_stage_id: UUID
    assignee_principal_id: str | None
    assignee_group_id: str | None
    task_type: TaskType
    status: TaskStatus
    created_at: datetime
    decided_by: str | None = None
    decision_note: str | None = None
    due_at: datetime | None = None
    decided_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status is TaskStatus.PENDING


@dataclass(frozen=True)
class AssignmentSnapshot:
    id: UUID
    approval_instance_id: UUID
    approval_stage_id: UUID
    approval_task_id: UUID | None
    resolved_assignment: dict[str, Any]
    resolved_from_rule_id: UUID | None
    created_at: datetime
    created_by: str


@dataclass(frozen=True)
class ApprovalEvent:
    id: UUID
    approval_instance_id: UUID
    approval_task_id: UUID | None
    event_type: str
    payload: dict[str, Any]
    actor_id: str
    occurred_at: datetime


@dataclass(frozen=True)
class ApprovalEscalation:
    id: UUID
    approval_instance_id: UUID
    approval_task_id: UUID
    kind: str
    payload: dict[str, Any]
    occurred_at: datetime


# =========================================================================
# Results
# =========================================================================


@dataclass(frozen=True)
class ApprovalCreationResult:
    """Result of create_approval_instance."""

    success: bool
    instance_id: UUID | None = None
    stage_count: int | None = None
    task_count: int | None = None
    error: str | None = None

    @classmethod
    def ok(cls, instance_id: UUID, stage_count: int, task_count: int) -> ApprovalCreationResult:
        return cls(
            success=True,
            instance_id=instance_id,
            stage_count=stage_count,
            task_count=task_count,
        )

    @classmethod
    def failure(cls, error: str) -> ApprovalCreationResult:
        return cls(success=False, error=error)


@dataclass(frozen=True)
class ApprovalDecisionResult:
    """Result of make_decision.

    ``stage_status`` is ``"completed"`` or ``"rejected"`` when the decision
    closed the stage, else None.  ``instance_status`` is the external status
    of the instance when the decision closed it, else None.
    """

    success: bool
    task_id: UUID | None = None
    task_status: str | None = None
    stage_status: str | None = None
    instance_status: str | None = None
    transition_triggered: bool = False
    error: str | None = None

    @classmethod
    def failure(cls, error: str, task_id: UUID | None = None) -> ApprovalDecisionResult:
        return cls(success=False, task_id=task_id, error=error)
