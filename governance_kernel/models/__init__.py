"""ORM models for the governance kernel."""

from governance_kernel.models.approval import (
    ApprovalEscalationModel,
    ApprovalEventModel,
    ApprovalInstanceModel,
    ApprovalRoutingRuleModel,
    ApprovalStageModel,
    ApprovalTaskModel,
    ApprovalTemplateModel,
    ApprovalTemplateStageModel,
    AssignmentSnapshotModel,
)
from governance_kernel.models.lifecycle import (
    LifecycleEventModel,
    LifecycleInstanceModel,
    LifecycleModel,
    LifecycleStateModel,
    LifecycleTransitionModel,
    TransitionGateModel,
)

__all__ = [
    "ApprovalEscalationModel",
    "ApprovalEventModel",
    "ApprovalInstanceModel",
    "ApprovalRoutingRuleModel",
    "ApprovalStageModel",
    "ApprovalTaskModel",
    "ApprovalTemplateModel",
    "ApprovalTemplateStageModel",
    "AssignmentSnapshotModel",
    "LifecycleEventModel",
    "LifecycleInstanceModel",
    "LifecycleModel",
    "LifecycleStateModel",
    "LifecycleTransitionModel",
    "TransitionGateModel",
]
