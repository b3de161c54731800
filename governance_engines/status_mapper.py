"""
governance_engines.status_mapper -- Stored approval status to external status.

Responsibility:
    Translate an approval instance's stored ``status`` (plus its explicit
    ``outcome`` column, or, for rows written without one, the legacy
    ``context["reason"]`` annotation) into the status reported to callers.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - ``canceled`` annotated as a rejection reports ``rejected``; any other
      ``canceled`` reports ``canceled``.
    - A stored ``open`` reports ``open`` whatever the outcome column says.
    - For a closed row, an explicit outcome is authoritative over the
      context annotation.

Failure modes:
    - ValueError for a stored status outside {open, completed, canceled}.
"""

from __future__ import annotations

from typing import Any

from governance_kernel.domain.approval import (
    ApprovalInstance,
    ApprovalInstanceStatus,
    ApprovalOutcome,
    ExternalApprovalStatus,
)

REJECTED_REASON = "rejected"

_OUTCOME_TO_EXTERNAL: dict[ApprovalOutcome, ExternalApprovalStatus] = {
    ApprovalOutcome.OPEN: ExternalApprovalStatus.OPEN,
    ApprovalOutcome.APPROVED: ExternalApprovalStatus.COMPLETED,
    ApprovalOutcome.REJECTED: ExternalApprovalStatus.REJECTED,
    ApprovalOutcome.CANCELED: ExternalApprovalStatus.CANCELED,
}


def map_instance_status(
    status: str | ApprovalInstanceStatus,
    context: dict[str, Any] | None = None,
    outcome: str | ApprovalOutcome | None = None,
) -> ExternalApprovalStatus:
    """Map a stored instance status to its externally visible status.

    Args:
        status: Stored status (open / completed / canceled).
        context: Instance context blob; ``reason`` is consulted only for
            ``canceled`` rows without an explicit outcome.
        outcome: Explicit outcome column, when the row has one.  Consulted
            only for closed (completed or canceled) rows.

    Returns:
        The external status.
    """
    stored = ApprovalInstanceStatus(status)
    if stored is ApprovalInstanceStatus.OPEN:
        return ExternalApprovalStatus.OPEN

    if outcome is not None and ApprovalOutcome(outcome) is not ApprovalOutcome.OPEN:
        return _OUTCOME_TO_EXTERNAL[ApprovalOutcome(outcome)]

    if stored is ApprovalInstanceStatus.COMPLETED:
        return ExternalApprovalStatus.COMPLETED

    reason = (context or {}).get("reason")
    if reason == REJECTED_REASON:
        return ExternalApprovalStatus.REJECTED
    return ExternalApprovalStatus.CANCELED


def external_status_of(instance: ApprovalInstance) -> ExternalApprovalStatus:
    """Convenience wrapper over an ApprovalInstance DTO."""
    return map_instance_status(instance.status, instance.context, instance.outcome)
