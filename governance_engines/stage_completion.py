"""
governance_engines.stage_completion -- Stage completion and outcome rules.

Responsibility:
    Given a stage's mode (all / any / majority / quorum), its quorum spec,
    and the statuses of its approver tasks, decide whether the stage is
    complete and, if so, whether it was approved or rejected.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Observer tasks never count; callers pass approver tasks only.
    - ``all``: approved once every task is approved; rejected at the first
      rejection, since unanimity can no longer be reached.
    - ``any``: complete at the first terminal task; the earliest decided
      task's status is the outcome.
    - ``majority`` / ``quorum``: complete once the required approvals are
      reached (approved) or can no longer be reached (rejected).  A tie
      therefore resolves to rejection.
    - A stage with no approver tasks is never complete.

Failure modes:
    - ValueError for an unknown mode.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from governance_engines.tracer import traced_engine
from governance_kernel.domain.approval import (
    QuorumSpec,
    StageMode,
    TaskStatus,
)


@dataclass(frozen=True)
class StageEvaluation:
    """Result of evaluating one stage.

    ``outcome`` is ``TaskStatus.APPROVED`` / ``TaskStatus.REJECTED`` when
    complete, else None.
    """

    complete: bool
    outcome: TaskStatus | None = None
    approvals: int = 0
    rejections: int = 0
    required: int = 0

    @property
    def approved(self) -> bool:
        return self.complete and self.outcome is TaskStatus.APPROVED

    @property
    def rejected(self) -> bool:
        return self.complete and self.outcome is TaskStatus.REJECTED


def required_approvals(
    mode: StageMode,
    task_count: int,
    quorum: QuorumSpec | None = None,
) -> int:
    """Approvals needed for the stage to be approved."""
    if task_count <= 0:
        return 0
    if mode is StageMode.ALL:
        return task_count
    if mode is StageMode.ANY:
        return 1
    if mode is StageMode.QUORUM and quorum is not None:
        if quorum.type == "percentage":
            needed = math.ceil(task_count * quorum.value / 100)
        else:
            needed = int(quorum.value)
        return max(1, min(task_count, needed))
    return task_count // 2 + 1


@traced_engine(
    "stage_completion",
    "1.0",
    fingerprint_fields=("mode", "statuses", "quorum"),
    summarize=lambda r: r.outcome.value if r.complete else "pending",
)
def evaluate_stage(
    *,
    mode: StageMode | str,
    statuses: Sequence[TaskStatus | str],
    quorum: QuorumSpec | None = None,
) -> StageEvaluation:
    """Evaluate a stage from its approver task statuses.

    Args:
        mode: Stage mode.
        statuses: Approver task statuses, ordered by decision time for
            decided tasks (the first decided task decides an ``any`` stage).
        quorum: Required approvals for ``quorum`` mode (None = majority).

    Returns:
        StageEvaluation.
    """
    stage_mode = StageMode(mode)
    states = [TaskStatus(s) for s in statuses]
    total = len(states)
    approvals = sum(1 for s in states if s is TaskStatus.APPROVED)
    rejections = sum(1 for s in states if s is TaskStatus.REJECTED)
    required = required_approvals(stage_mode, total, quorum)

    def _result(outcome: TaskStatus | None) -> StageEvaluation:
        return StageEvaluation(
            complete=outcome is not None,
            outcome=outcome,
            approvals=approvals,
            rejections=rejections,
            required=required,
        )

    if total == 0:
        return _result(None)

    if stage_mode is StageMode.ALL:
        if rejections:
            return _result(TaskStatus.REJECTED)
        if approvals < total:
            return _result(None)
        return _result(TaskStatus.APPROVED)

    if stage_mode is StageMode.ANY:
        for status in states:
            if status is not TaskStatus.PENDING:
                return _result(status)
        return _result(None)

    # majority / quorum
    if approvals >= required:
        return _result(TaskStatus.APPROVED)
    if rejections > total - required:
        return _result(TaskStatus.REJECTED)
    return _result(None)
