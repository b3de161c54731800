"""
governance_services.approval_service -- Approval subsystem facade.

Single entry point for callers of the approval workflow: creation and
reads delegate to ApprovalInstanceManager, decisions to DecisionProcessor.
When a decision completes a non-final stage, the facade activates the next
stage after the decision has been recorded; if that stage has no approvers
the instance is canceled and the result reports it.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any
from uuid import UUID

from governance_engines.status_mapper import external_status_of
from governance_kernel.domain.approval import (
    ApprovalCreationResult,
    ApprovalDecision,
    ApprovalDecisionResult,
    ApprovalEvent,
    ApprovalInstance,
    ApprovalInstanceStatus,
    ApprovalStage,
    ApprovalTask,
    AssignmentSnapshot,
)
from governance_kernel.domain.context import RequestContext
from governance_kernel.logging_config import get_logger
from governance_services.approval_instance_manager import ApprovalInstanceManager
from governance_services.decision_processor import STAGE_RESULT_COMPLETED, DecisionProcessor

logger = get_logger("services.approval_service")


class ApprovalService:
    def __init__(self, manager: ApprovalInstanceManager, processor: DecisionProcessor) -> None:
        self._manager = manager
        self._processor = processor

    def create_approval_instance(
        self,
        entity_name: str,
        entity_id: str,
        transition_id: UUID | None,
        approval_template_id: UUID,
        ctx: RequestContext,
        assignment_context: dict[str, Any] | None = None,
    ) -> ApprovalCreationResult:
        return self._manager.create_approval_instance(
            entity_name, entity_id, transition_id, approval_template_id, ctx,
            assignment_context=assignment_context,
        )

    def make_decision(
        self,
        task_id: UUID,
        decision: ApprovalDecision | str,
        ctx: RequestContext,
        note: str | None = None,
    ) -> ApprovalDecisionResult:
        result = self._processor.make_decision(task_id, decision, ctx, note=note)
        if (
            result.success
            and result.stage_status == STAGE_RESULT_COMPLETED
            and result.instance_status is None
        ):
            task = self._manager.get_task(task_id, ctx.tenant_id)
            if task is not None:
                activated = self._manager.activate_next_stage(task.approval_instance_id, ctx)
                if activated is None:
                    logger.warning(
                        "approval_next_stage_not_activated",
                        extra={"approval_instance_id": str(task.approval_instance_id)},
                    )
                    instance = self._manager.get_instance(task.approval_instance_id, ctx.tenant_id)
                    if instance is not None and instance.status is not ApprovalInstanceStatus.OPEN:
                        return replace(result, instance_status=external_status_of(instance).value)
        return result

    def activate_next_stage(self, instance_id: UUID, ctx: RequestContext) -> ApprovalStage | None:
        return self._manager.activate_next_stage(instance_id, ctx)

    # Reads

    def get_instance(self, instance_id: UUID, tenant_id: str) -> ApprovalInstance | None:
        return self._manager.get_instance(instance_id, tenant_id)

    def get_instance_for_entity(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> ApprovalInstance | None:
        return self._manager.get_instance_for_entity(entity_name, entity_id, tenant_id)

    def list_instances_for_entity(
        self, entity_name: str, entity_id: str, tenant_id: str,
    ) -> list[ApprovalInstance]:
        return self._manager.list_instances_for_entity(entity_name, entity_id, tenant_id)

    def get_task(self, task_id: UUID, tenant_id: str) -> ApprovalTask | None:
        return self._manager.get_task(task_id, tenant_id)

    def get_tasks_for_instance(self, instance_id: UUID, tenant_id: str) -> list[ApprovalTask]:
        return self._manager.get_tasks_for_instance(instance_id, tenant_id)

    def get_stages_for_instance(self, instance_id: UUID, tenant_id: str) -> list[ApprovalStage]:
        return self._manager.get_stages_for_instance(instance_id, tenant_id)

    def get_assignment_snapshots(
        self, instance_id: UUID, tenant_id: str,
    ) -> list[AssignmentSnapshot]:
        return self._manager.get_assignment_snapshots(instance_id, tenant_id)

    def get_events(self, instance_id: UUID, tenant_id: str) -> list[ApprovalEvent]:
        return self._manager.get_events(instance_id, tenant_id)

    def get_pending_tasks_for_user(
        self, user_id: str, tenant_id: str, *, limit: int = 50, offset: int = 0,
    ) -> list[ApprovalTask]:
        return self._manager.get_pending_tasks_for_user(
            user_id, tenant_id, limit=limit, offset=offset,
        )
