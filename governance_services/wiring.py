"""
governance_services.wiring -- Central DI container for the governance core.

Responsibility:
    Creates every governance service exactly once per session and wires
    the two halves of the core together by constructor injection:

        ApprovalInstanceManager            (ApprovalGateway)
            -> TransitionGateEvaluator
                -> LifecycleTransitionOrchestrator   (LifecycleTransitioner)
                    -> DecisionProcessor
                        -> ApprovalService facade
        SlaProcessor                       (fired SLA timers)

    No service constructs another internally and no setter wiring exists.

Usage:
    with session_scope() as session:
        services = build_governance_services(session, policy_gate=gate)
        services.lifecycle.transition("travel_request", "tr-1", "SUBMIT", ctx)
"""

from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from governance_config.settings import GovernanceSettings
from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.ports import AuditLogger, PolicyGate, TimerScheduler
from governance_kernel.services.audit import LoggingAuditLogger
from governance_kernel.services.timers import NullTimerScheduler
from governance_services.approval_instance_manager import (
    DEFAULT_REMINDER_RATIO,
    ApprovalInstanceManager,
)
from governance_services.approval_service import ApprovalService
from governance_services.decision_processor import DecisionProcessor
from governance_services.gate_evaluator import TransitionGateEvaluator
from governance_services.lifecycle_orchestrator import LifecycleTransitionOrchestrator
from governance_services.policy_gate import AllowAllPolicyGate
from governance_services.sla_processor import SlaProcessor


class GovernanceServices:
    """All governance services bound to one session."""

    def __init__(
        self,
        session: Session,
        policy_gate: PolicyGate | None = None,
        audit_logger: AuditLogger | None = None,
        timers: TimerScheduler | None = None,
        clock: Clock | None = None,
        settings: GovernanceSettings | None = None,
        outcome_sink: Callable[[dict], None] | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._policy_gate = policy_gate or AllowAllPolicyGate()
        self._audit_logger = audit_logger or LoggingAuditLogger()
        self._timers = timers or NullTimerScheduler()

        self._manager = ApprovalInstanceManager(
            session,
            audit_logger=self._audit_logger,
            timers=self._timers,
            clock=self._clock,
            reminder_ratio=settings.reminder_ratio if settings else DEFAULT_REMINDER_RATIO,
            default_sla_hours=settings.default_sla_hours if settings else None,
        )
        self._gate_evaluator = TransitionGateEvaluator(
            session, self._policy_gate, approvals=self._manager,
        )
        self._lifecycle = LifecycleTransitionOrchestrator(
            session,
            self._gate_evaluator,
            audit_logger=self._audit_logger,
            clock=self._clock,
            outcome_sink=outcome_sink,
        )
        self._processor = DecisionProcessor(
            session,
            transitioner=self._lifecycle,
            audit_logger=self._audit_logger,
            timers=self._timers,
            clock=self._clock,
        )
        self._approvals = ApprovalService(self._manager, self._processor)
        self._sla = SlaProcessor(
            session,
            audit_logger=self._audit_logger,
            timers=self._timers,
            clock=self._clock,
            reminder_ratio=settings.reminder_ratio if settings else DEFAULT_REMINDER_RATIO,
        )

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def approvals(self) -> ApprovalService:
        return self._approvals

    @property
    def instance_manager(self) -> ApprovalInstanceManager:
        return self._manager

    @property
    def decision_processor(self) -> DecisionProcessor:
        return self._processor

    @property
    def sla(self) -> SlaProcessor:
        return self._sla

    @property
    def gate_evaluator(self) -> TransitionGateEvaluator:
        return self._gate_evaluator

    @property
    def lifecycle(self) -> LifecycleTransitionOrchestrator:
        return self._lifecycle


def build_governance_services(
    session: Session,
    policy_gate: PolicyGate | None = None,
    audit_logger: AuditLogger | None = None,
    timers: TimerScheduler | None = None,
    clock: Clock | None = None,
    settings: GovernanceSettings | None = None,
) -> GovernanceServices:
    """Build the service container (single entrypoint for production).

    Unset collaborators default to AllowAllPolicyGate, LoggingAuditLogger,
    NullTimerScheduler, and SystemClock.
    """
    return GovernanceServices(
        session,
        policy_gate=policy_gate,
        audit_logger=audit_logger,
        timers=timers,
        clock=clock,
        settings=settings,
    )
