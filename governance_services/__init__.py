"""
governance_services -- Package init and public API.

Responsibility:
    Coordinators that compose the pure engines (governance_engines/) with
    database sessions and the external ports: approval instance creation,
    decision processing, SLA timer handling, transition gate evaluation,
    and the lifecycle transition orchestrator.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        governance_services/ -> governance_engines/  (allowed)
        governance_services/ -> governance_kernel/   (allowed)
        governance_engines/  -> governance_services/ (FORBIDDEN)
        governance_kernel/   -> governance_services/ (FORBIDDEN)
"""

from governance_services.approval_instance_manager import ApprovalInstanceManager
from governance_services.approval_service import ApprovalService
from governance_services.decision_processor import DecisionProcessor
from governance_services.gate_evaluator import TransitionGateEvaluator
from governance_services.lifecycle_orchestrator import LifecycleTransitionOrchestrator
from governance_services.policy_gate import AllowAllPolicyGate, RolePolicyGate
from governance_services.sla_processor import SlaProcessor
from governance_services.wiring import GovernanceServices, build_governance_services

__all__ = [
    "AllowAllPolicyGate",
    "ApprovalInstanceManager",
    "ApprovalService",
    "DecisionProcessor",
    "GovernanceServices",
    "LifecycleTransitionOrchestrator",
    "RolePolicyGate",
    "SlaProcessor",
    "TransitionGateEvaluator",
    "build_governance_services",
]
