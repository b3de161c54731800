"""
Tests for DecisionProcessor -- approver decisions on approval tasks.

Covers:
- validation: invalid decision, unknown task, observer task, task not
  pending, instance no longer open (nothing mutated on failure)
- stage evaluation per mode and instance completion / rejection
- a decision that loses the stage or instance closing write stays silent
- closed instances drop out of approver inboxes
- SLA timer cancellation for the decided task and the rest of the instance
- resumption of the blocked transition under a bypassing system context
- resumption failures recorded as events, never raised
- audit and timer failures swallowed
"""

from uuid import uuid4

import pytest

from governance_kernel.domain.approval import (
    ApprovalDecision,
    ApprovalEventType,
    ApprovalInstanceStatus,
    ApprovalOutcome,
    StageStatus,
    TaskStatus,
)
from governance_kernel.services.approval_store import ApprovalStore
from governance_kernel.services.timers import InMemoryTimerScheduler
from governance_services.decision_processor import (
    ERROR_INSTANCE_NOT_OPEN,
    ERROR_NOT_APPROVER_TASK,
    ERROR_TASK_NOT_FOUND,
    ERROR_TASK_NOT_PENDING,
    DecisionProcessor,
)
from tests.factories import (
    OTHER_TENANT,
    PURCHASE_ENTITY,
    TENANT,
    TRAVEL_ENTITY,
    FailingAuditLogger,
    FailingTimerScheduler,
    approval_template,
    current_state,
    purchase_set,
    start_approval,
    tasks_by_principal,
)

APPROVE = ApprovalDecision.APPROVE
REJECT = ApprovalDecision.REJECT


def _approvers(*principals):
    return [{"priority": 10, "assign_to": {"assignees": [{"principal_id": p} for p in principals]}}]


def _event_types(services, instance_id):
    return [e.event_type for e in services.approvals.get_events(instance_id, TENANT)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def open_po(services, install_set, requester_ctx):
    """Install a purchase-order set and push po-1 into approval."""

    def _open(template=None, entity_id="po-1"):
        install_set(purchase_set(template))
        return start_approval(services, requester_ctx, entity_id)

    return _open


@pytest.fixture
def decide(services, make_ctx):
    """Decide the task assigned to ``principal`` as that principal."""

    def _decide(instance, principal, decision=APPROVE, note=None, processor=None):
        task = tasks_by_principal(services, instance.id)[principal]
        return (processor or services.decision_processor).make_decision(
            task.id, decision, make_ctx(principal, roles=("manager",)), note=note,
        )

    return _decide


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestDecisionValidation:
    def test_invalid_decision(self, open_po, decide):
        instance = open_po()
        result = decide(instance, "approver-1", decision="maybe")

        assert result.success is False
        assert result.error == "Invalid decision: maybe"

    def test_unknown_task(self, services, make_ctx, open_po):
        open_po()
        result = services.decision_processor.make_decision(uuid4(), APPROVE, make_ctx("approver-1"))
        assert result.error == ERROR_TASK_NOT_FOUND

    def test_task_of_other_tenant_not_found(self, services, make_ctx, open_po):
        instance = open_po()
        task = tasks_by_principal(services, instance.id)["approver-1"]

        result = services.decision_processor.make_decision(
            task.id, APPROVE, make_ctx("approver-1", tenant_id=OTHER_TENANT),
        )

        assert result.error == ERROR_TASK_NOT_FOUND
        assert services.approvals.get_task(task.id, TENANT).status is TaskStatus.PENDING

    def test_string_decision_accepted(self, open_po, decide):
        instance = open_po()
        assert decide(instance, "approver-1", decision="approve").success is True

    def test_second_decision_on_same_task(self, services, open_po, decide):
        instance = open_po()
        decide(instance, "approver-1", APPROVE)
        events_before = _event_types(services, instance.id)

        result = decide(instance, "approver-1", REJECT)

        assert result.success is False
        assert result.error == ERROR_TASK_NOT_PENDING
        task = tasks_by_principal(services, instance.id)["approver-1"]
        assert task.status is TaskStatus.APPROVED
        assert _event_types(services, instance.id) == events_before

    def test_observer_task_cannot_decide(
        self, services, installed, submitted_request, requester_ctx, make_ctx,
    ):
        entity_id = submitted_request()
        services.lifecycle.transition(
            TRAVEL_ENTITY, entity_id, "APPROVE", requester_ctx, payload={"amount": 7500},
        )
        instance = services.approvals.get_instance_for_entity(TRAVEL_ENTITY, entity_id, TENANT)
        observer = tasks_by_principal(services, instance.id)["travel-desk"]

        result = services.decision_processor.make_decision(
            observer.id, APPROVE, make_ctx("travel-desk"),
        )

        assert result.error == ERROR_NOT_APPROVER_TASK

    def test_decision_after_instance_rejected(self, services, open_po, decide):
        instance = open_po()
        decide(instance, "approver-1", REJECT)

        result = decide(instance, "approver-2", APPROVE)

        assert result.success is False
        assert result.error == ERROR_INSTANCE_NOT_OPEN
        task = tasks_by_principal(services, instance.id)["approver-2"]
        assert task.status is TaskStatus.PENDING

    def test_closed_instance_leaves_no_pending_tasks_in_inbox(self, services, open_po, decide):
        instance = open_po()
        assert len(services.approvals.get_pending_tasks_for_user("approver-2", TENANT)) == 1

        decide(instance, "approver-1", REJECT)

        assert services.approvals.get_pending_tasks_for_user("approver-2", TENANT) == []

    def test_early_completion_clears_inboxes(self, services, open_po, decide):
        instance = open_po(approval_template(
            stages=[{"stage_no": 1, "mode": "any"}],
            routing_rules=_approvers("approver-1", "approver-2"),
        ))

        decide(instance, "approver-1")

        assert services.approvals.get_pending_tasks_for_user("approver-2", TENANT) == []


# ---------------------------------------------------------------------------
# Stage and instance outcomes
# ---------------------------------------------------------------------------


class TestAllMode:
    def test_first_approval_leaves_stage_open(self, services, open_po, decide, deterministic_clock):
        instance = open_po()
        decided_at = deterministic_clock.advance(hours=3)

        result = decide(instance, "approver-1", APPROVE, note="looks fine")

        assert result.success is True
        assert result.task_status == "approved"
        assert result.stage_status is None
        assert result.instance_status is None
        assert result.transition_triggered is False
        task = tasks_by_principal(services, instance.id)["approver-1"]
        assert task.decided_by == "approver-1"
        assert task.decision_note == "looks fine"
        assert task.decided_at == decided_at
        assert task.created_at == instance.created_at
        assert current_state(services, PURCHASE_ENTITY, "po-1") == "pending"

    def test_all_approvals_complete_and_resume(self, services, open_po, decide):
        instance = open_po()
        decide(instance, "approver-1")

        result = decide(instance, "approver-2")

        assert result.task_status == "approved"
        assert result.stage_status == "completed"
        assert result.instance_status == "completed"
        assert result.transition_triggered is True
        assert current_state(services, PURCHASE_ENTITY, "po-1") == "approved"

        closed = services.approvals.get_instance(instance.id, TENANT)
        assert closed.status is ApprovalInstanceStatus.COMPLETED
        assert closed.outcome is ApprovalOutcome.APPROVED
        assert closed.completed_at is not None
        (stage,) = services.approvals.get_stages_for_instance(instance.id, TENANT)
        assert stage.status is StageStatus.COMPLETED

    def test_completion_event_sequence(self, services, open_po, decide):
        instance = open_po()
        decide(instance, "approver-1")
        decide(instance, "approver-2")

        assert _event_types(services, instance.id)[-4:] == [
            ApprovalEventType.TASK_APPROVED,
            ApprovalEventType.STAGE_COMPLETED,
            ApprovalEventType.INSTANCE_COMPLETED,
            ApprovalEventType.LIFECYCLE_RESUMED,
        ]

    def test_resumed_transition_recorded_as_system(self, services, open_po, decide):
        instance = open_po()
        decide(instance, "approver-1")
        decide(instance, "approver-2")

        last = services.lifecycle.get_history(PURCHASE_ENTITY, "po-1", TENANT)[-1]
        assert last.operation_code == "APPROVE"
        assert last.actor_id == "system"
        assert last.payload == {"approval_instance_id": str(instance.id)}

    def test_first_rejection_rejects_instance(self, services, open_po, decide):
        instance = open_po()

        result = decide(instance, "approver-1", REJECT, note="over budget")

        assert result.task_status == "rejected"
        assert result.stage_status == "rejected"
        assert result.instance_status == "rejected"
        assert result.transition_triggered is False

        closed = services.approvals.get_instance(instance.id, TENANT)
        assert closed.status is ApprovalInstanceStatus.CANCELED
        assert closed.outcome is ApprovalOutcome.REJECTED
        assert closed.context["reason"] == "rejected"
        (stage,) = services.approvals.get_stages_for_instance(instance.id, TENANT)
        assert stage.status is StageStatus.CANCELED
        assert current_state(services, PURCHASE_ENTITY, "po-1") == "pending"
        assert _event_types(services, instance.id)[-2:] == [
            ApprovalEventType.STAGE_REJECTED,
            ApprovalEventType.INSTANCE_REJECTED,
        ]

    def test_rejection_after_approval(self, services, open_po, decide):
        instance = open_po()
        decide(instance, "approver-1", APPROVE)

        result = decide(instance, "approver-2", REJECT)

        assert result.instance_status == "rejected"
        assert current_state(services, PURCHASE_ENTITY, "po-1") == "pending"


class TestOtherModes:
    def test_any_mode_first_approval_completes(self, services, open_po, decide):
        instance = open_po(approval_template(
            stages=[{"stage_no": 1, "mode": "any"}],
            routing_rules=_approvers("approver-1", "approver-2", "approver-3"),
        ))

        result = decide(instance, "approver-2")

        assert result.instance_status == "completed"
        assert result.transition_triggered is True
        assert tasks_by_principal(services, instance.id)["approver-1"].status is TaskStatus.PENDING

    def test_majority_waits_for_more_than_half(self, services, open_po, decide):
        instance = open_po(approval_template(
            stages=[{"stage_no": 1, "mode": "majority"}],
            routing_rules=_approvers("approver-1", "approver-2", "approver-3"),
        ))

        first = decide(instance, "approver-1")
        second = decide(instance, "approver-3")

        assert first.stage_status is None
        assert second.instance_status == "completed"
        assert current_state(services, PURCHASE_ENTITY, "po-1") == "approved"

    def test_majority_rejected_once_unreachable(self, open_po, decide):
        instance = open_po(approval_template(
            stages=[{"stage_no": 1, "mode": "majority"}],
            routing_rules=_approvers("approver-1", "approver-2", "approver-3"),
        ))

        decide(instance, "approver-1", REJECT)
        result = decide(instance, "approver-2", REJECT)

        assert result.instance_status == "rejected"

    def test_quorum_count(self, open_po, decide):
        instance = open_po(approval_template(
            stages=[{"stage_no": 1, "mode": "quorum", "quorum": {"type": "count", "value": 2}}],
            routing_rules=_approvers("approver-1", "approver-2", "approver-3", "approver-4"),
        ))

        assert decide(instance, "approver-1", REJECT).stage_status is None
        assert decide(instance, "approver-2").stage_status is None
        assert decide(instance, "approver-3").instance_status == "completed"


# ---------------------------------------------------------------------------
# Lost races on stage and instance closure
# ---------------------------------------------------------------------------


class TestConcurrentClosure:
    """A decision whose closing write finds the row already closed stays silent."""

    CLOSING_EVENTS = {
        ApprovalEventType.STAGE_COMPLETED,
        ApprovalEventType.STAGE_REJECTED,
        ApprovalEventType.INSTANCE_COMPLETED,
        ApprovalEventType.INSTANCE_REJECTED,
        ApprovalEventType.LIFECYCLE_RESUMED,
        ApprovalEventType.LIFECYCLE_RESUME_FAILED,
    }

    @pytest.fixture
    def close_first(self, monkeypatch):
        """Let a competing writer close the instance just before our own write."""
        original = ApprovalStore.close_instance

        def _competing(self, instance_id, tenant_id, **kwargs):
            original(self, instance_id, tenant_id, **kwargs)
            return original(self, instance_id, tenant_id, **kwargs)

        monkeypatch.setattr(ApprovalStore, "close_instance", _competing)

    def _closing_events(self, services, instance_id):
        return [t for t in _event_types(services, instance_id) if t in self.CLOSING_EVENTS]

    def test_stage_already_completed(
        self, services, session, open_po, decide, deterministic_clock, audit_log, captured_logs,
    ):
        instance = open_po()
        decide(instance, "approver-1")
        (stage,) = services.approvals.get_stages_for_instance(instance.id, TENANT)
        assert ApprovalStore(session).complete_stage(
            stage.id, TENANT, status=StageStatus.COMPLETED, completed_at=deterministic_clock.now(),
        )

        result = decide(instance, "approver-2")

        assert result.success is True
        assert result.task_status == "approved"
        assert result.stage_status is None
        assert result.instance_status is None
        assert result.transition_triggered is False
        assert self._closing_events(services, instance.id) == []
        assert services.approvals.get_instance(instance.id, TENANT).status is (
            ApprovalInstanceStatus.OPEN
        )
        assert current_state(services, PURCHASE_ENTITY, "po-1") == "pending"
        assert "approval.instance_completed" not in audit_log.actions()
        assert any(r["message"] == "approval_stage_already_closed" for r in captured_logs())

    def test_stage_already_rejected(self, services, session, open_po, decide, deterministic_clock):
        instance = open_po()
        (stage,) = services.approvals.get_stages_for_instance(instance.id, TENANT)
        ApprovalStore(session).complete_stage(
            stage.id, TENANT, status=StageStatus.CANCELED, completed_at=deterministic_clock.now(),
        )

        result = decide(instance, "approver-1", REJECT)

        assert result.instance_status is None
        assert self._closing_events(services, instance.id) == []

    def test_instance_completed_elsewhere_is_not_resumed_twice(
        self, services, open_po, decide, close_first, audit_log, captured_logs,
    ):
        instance = open_po()
        decide(instance, "approver-1")
        history = services.lifecycle.get_history(PURCHASE_ENTITY, "po-1", TENANT)

        result = decide(instance, "approver-2")

        assert result.success is True
        assert result.stage_status == "completed"
        assert result.instance_status is None
        assert result.transition_triggered is False
        assert self._closing_events(services, instance.id) == [ApprovalEventType.STAGE_COMPLETED]
        assert current_state(services, PURCHASE_ENTITY, "po-1") == "pending"
        assert services.lifecycle.get_history(PURCHASE_ENTITY, "po-1", TENANT) == history
        assert "approval.instance_completed" not in audit_log.actions()
        assert any(r["message"] == "approval_instance_already_closed" for r in captured_logs())

    def test_instance_rejected_elsewhere_writes_no_rejection(
        self, services, open_po, decide, close_first, audit_log,
    ):
        instance = open_po()

        result = decide(instance, "approver-1", REJECT)

        assert result.stage_status == "rejected"
        assert result.instance_status is None
        assert self._closing_events(services, instance.id) == [ApprovalEventType.STAGE_REJECTED]
        assert "approval.instance_rejected" not in audit_log.actions()


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------


class TestTimerCancellation:
    @pytest.fixture
    def timed_po(self, open_po):
        return lambda: open_po(approval_template(stages=[{"stage_no": 1, "sla_hours": 24}]))

    def test_decided_task_timers_cancelled(self, services, timed_po, decide, timer_scheduler):
        instance = timed_po()
        task = tasks_by_principal(services, instance.id)["approver-1"]
        assert len(timer_scheduler.pending_for(task.id, TENANT)) == 2

        decide(instance, "approver-1")

        assert timer_scheduler.pending_for(task.id, TENANT) == []
        cancelled = [
            e for e in services.approvals.get_events(instance.id, TENANT)
            if e.event_type == ApprovalEventType.SLA_TIMERS_CANCELLED
        ]
        assert cancelled[0].payload == {"cancelled": 2}
        assert cancelled[0].approval_task_id == task.id

    def test_rejection_cancels_outstanding_timers(
        self, services, timed_po, decide, timer_scheduler,
    ):
        instance = timed_po()
        other = tasks_by_principal(services, instance.id)["approver-2"]

        decide(instance, "approver-1", REJECT)

        assert timer_scheduler.pending_for(other.id, TENANT) == []

    def test_scheduler_failure_swallowed(
        self, services, session, timed_po, decide, deterministic_clock, captured_logs,
    ):
        instance = timed_po()
        processor = DecisionProcessor(
            session,
            transitioner=services.lifecycle,
            timers=FailingTimerScheduler(),
            clock=deterministic_clock,
        )

        result = decide(instance, "approver-1", processor=processor)

        assert result.success is True
        assert ApprovalEventType.SLA_TIMERS_CANCELLED not in _event_types(services, instance.id)
        assert any(r["message"] == "timer_cancel_failed" for r in captured_logs())


# ---------------------------------------------------------------------------
# Resumption
# ---------------------------------------------------------------------------


class TestResumption:
    def test_no_transitioner(self, services, session, open_po, decide, deterministic_clock):
        instance = open_po()
        processor = DecisionProcessor(session, clock=deterministic_clock)
        decide(instance, "approver-1", processor=processor)

        result = decide(instance, "approver-2", processor=processor)

        assert result.instance_status == "completed"
        assert result.transition_triggered is False
        failed = services.approvals.get_events(instance.id, TENANT)[-1]
        assert failed.event_type == ApprovalEventType.LIFECYCLE_RESUME_FAILED
        assert failed.payload == {"reason": "No lifecycle transitioner configured"}
        assert current_state(services, PURCHASE_ENTITY, "po-1") == "pending"

    def test_instance_without_transition(
        self, services, install_set, requester_ctx, make_ctx,
    ):
        installed_set = install_set(purchase_set())
        created = services.approvals.create_approval_instance(
            PURCHASE_ENTITY, "po-9", None,
            installed_set.approval_templates["po_approval"], requester_ctx,
        )
        tasks = services.approvals.get_tasks_for_instance(created.instance_id, TENANT)
        for task in tasks:
            result = services.approvals.make_decision(
                task.id, APPROVE, make_ctx(task.assignee_principal_id),
            )

        assert result.instance_status == "completed"
        assert result.transition_triggered is False
        last = services.approvals.get_events(created.instance_id, TENANT)[-1]
        assert last.payload["reason"] == "Approval instance has no transition"

    def test_entity_moved_on_before_approval(self, services, open_po, decide, requester_ctx):
        instance = open_po()
        canceled = services.lifecycle.transition(PURCHASE_ENTITY, "po-1", "CANCEL", requester_ctx)
        assert canceled.success
        decide(instance, "approver-1")

        result = decide(instance, "approver-2")

        assert result.instance_status == "completed"
        assert result.transition_triggered is False
        last = services.approvals.get_events(instance.id, TENANT)[-1]
        assert last.event_type == ApprovalEventType.LIFECYCLE_RESUME_FAILED
        assert last.payload["reason"] == "State 'canceled' is terminal"
        assert current_state(services, PURCHASE_ENTITY, "po-1") == "canceled"


# ---------------------------------------------------------------------------
# Audit and logging
# ---------------------------------------------------------------------------


class TestAuditAndLogging:
    def test_audit_trail(self, open_po, decide, audit_log):
        instance = open_po()
        decide(instance, "approver-1")
        decide(instance, "approver-2")

        actions = audit_log.actions()
        assert actions.count("approval.decision") == 2
        assert actions[-2:] == ["approval.instance_completed", "lifecycle.transition"]

    def test_rejection_audited(self, open_po, decide, audit_log):
        instance = open_po()
        decide(instance, "approver-1", REJECT, note="no")

        decision, rejected = audit_log.records[-2:]
        assert decision.payload["decision"] == "reject"
        assert decision.payload["note"] == "no"
        assert rejected.action == "approval.instance_rejected"

    def test_audit_failure_swallowed(
        self, services, session, open_po, decide, deterministic_clock,
    ):
        instance = open_po()
        processor = DecisionProcessor(
            session,
            transitioner=services.lifecycle,
            audit_logger=FailingAuditLogger(),
            timers=InMemoryTimerScheduler(),
            clock=deterministic_clock,
        )

        decide(instance, "approver-1", processor=processor)
        result = decide(instance, "approver-2", processor=processor)

        assert result.transition_triggered is True

    def test_decision_logged_with_instance_id(self, open_po, decide, captured_logs):
        instance = open_po()
        decide(instance, "approver-1")

        (recorded,) = [r for r in captured_logs() if r["message"] == "approval_decision_recorded"]
        assert recorded["approval_instance_id"] == str(instance.id)
        assert recorded["actor_id"] == "approver-1"
