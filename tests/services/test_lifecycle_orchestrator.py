"""
Tests for LifecycleTransitionOrchestrator.

Covers:
- create_instance(): initial state, idempotency, CREATE event, missing
  lifecycle / states
- transition(): happy path, gate blocks, unknown instance, unknown
  operation, terminal states, stale transition ids, concurrent change
- approval-gated transitions: initiate, pending, below threshold, bypass
- can_transition(): dry run leaves no trace
- get_available_transitions(): permission outcome and approval flag
- terminal-state helpers, history, outcome sink, audit records
"""

import pytest

from governance_config.installer import install_definitions
from governance_config.loader import parse_definition_set
from governance_kernel.domain.context import RequestContext
from governance_kernel.exceptions import (
    NoInitialStateError,
    NoLifecycleDefinedError,
    TerminalStateError,
)
from governance_kernel.services.lifecycle_store import LifecycleStore
from governance_services.gate_evaluator import (
    REASON_APPROVAL_INITIATED,
    REASON_APPROVAL_PENDING,
    REASON_APPROVAL_REQUIRED,
)
from governance_services.wiring import GovernanceServices
from tests.factories import OTHER_TENANT, TENANT, TRAVEL_ENTITY, TRAVEL_LIFECYCLE


@pytest.fixture
def lifecycle(services):
    return services.lifecycle


@pytest.fixture
def manager_ctx(make_ctx):
    return make_ctx("manager-1", roles=("manager",))


def state_code(lifecycle, entity_id, tenant_id=TENANT):
    return lifecycle.get_current_state(TRAVEL_ENTITY, entity_id, tenant_id).code


# ---------------------------------------------------------------------------
# create_instance
# ---------------------------------------------------------------------------


class TestCreateInstance:
    def test_starts_in_lowest_sort_order_state(self, lifecycle, installed, requester_ctx):
        instance = lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)

        assert instance.state_id == installed.state_id(TRAVEL_LIFECYCLE, "draft")
        assert instance.lifecycle_id == installed.lifecycles[TRAVEL_LIFECYCLE]
        assert state_code(lifecycle, "tr-1") == "draft"

    def test_idempotent(self, lifecycle, installed, requester_ctx):
        first = lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)
        second = lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)

        assert first.id == second.id
        assert len(lifecycle.get_history(TRAVEL_ENTITY, "tr-1", TENANT)) == 1

    def test_records_create_event(self, lifecycle, installed, requester_ctx):
        lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)

        (event,) = lifecycle.get_history(TRAVEL_ENTITY, "tr-1", TENANT)
        assert event.operation_code == "CREATE"
        assert event.from_state_id is None
        assert event.transition_id is None
        assert event.actor_id == "requester-1"

    def test_audits_creation(self, lifecycle, installed, requester_ctx, audit_log):
        lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)
        assert audit_log.actions() == ["lifecycle.created"]
        assert audit_log.records[0].payload["state"] == "draft"

    def test_unknown_entity_raises(self, lifecycle, installed, requester_ctx):
        with pytest.raises(NoLifecycleDefinedError) as exc_info:
            lifecycle.create_instance("invoice", "inv-1", requester_ctx)
        assert exc_info.value.code == "NO_LIFECYCLE_DEFINED"

    def test_lifecycle_without_states_raises(self, lifecycle, session, requester_ctx):
        empty = parse_definition_set({
            "set_id": "empty",
            "lifecycles": [{"code": "bare", "entity_name": "bare_entity"}],
        })
        install_definitions(session, empty, TENANT)

        with pytest.raises(NoInitialStateError):
            lifecycle.create_instance("bare_entity", "b-1", requester_ctx)

    def test_lifecycle_is_tenant_scoped(self, lifecycle, installed, make_ctx):
        with pytest.raises(NoLifecycleDefinedError):
            lifecycle.create_instance(
                TRAVEL_ENTITY, "tr-1", make_ctx("u", tenant_id=OTHER_TENANT),
            )


# ---------------------------------------------------------------------------
# transition
# ---------------------------------------------------------------------------


class TestTransition:
    def test_submit_moves_state(self, lifecycle, installed, requester_ctx, audit_log):
        lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)

        result = lifecycle.transition(TRAVEL_ENTITY, "tr-1", "SUBMIT", requester_ctx)

        assert result.success is True
        assert result.new_state_code == "submitted"
        assert result.new_state_id == installed.state_id(TRAVEL_LIFECYCLE, "submitted")
        assert result.event_id is not None
        assert state_code(lifecycle, "tr-1") == "submitted"
        assert audit_log.actions() == ["lifecycle.created", "lifecycle.transition"]

    def test_event_appended_per_transition(self, lifecycle, installed, requester_ctx):
        lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)
        result = lifecycle.transition(
            TRAVEL_ENTITY, "tr-1", "SUBMIT", requester_ctx, payload={"note": "trip"},
        )

        history = lifecycle.get_history(TRAVEL_ENTITY, "tr-1", TENANT)
        assert [e.operation_code for e in history] == ["CREATE", "SUBMIT"]
        assert history[1].id == result.event_id
        assert history[1].payload == {"note": "trip"}
        assert history[1].from_state_id == installed.state_id(TRAVEL_LIFECYCLE, "draft")

    def test_permission_denied(self, lifecycle, installed, requester_ctx, make_ctx):
        lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)
        outsider = make_ctx("outsider-1")

        result = lifecycle.transition(TRAVEL_ENTITY, "tr-1", "SUBMIT", outsider)

        assert result.success is False
        assert result.error == "Gate validation failed"
        assert result.reason.startswith("Missing required operation: travel.submit")
        assert state_code(lifecycle, "tr-1") == "draft"
        assert len(lifecycle.get_history(TRAVEL_ENTITY, "tr-1", TENANT)) == 1

    def test_missing_instance(self, lifecycle, installed, requester_ctx):
        result = lifecycle.transition(TRAVEL_ENTITY, "nope", "SUBMIT", requester_ctx)
        assert result.success is False
        assert result.error == "Lifecycle instance not found"

    def test_unknown_operation(self, lifecycle, installed, requester_ctx):
        lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)

        result = lifecycle.transition(TRAVEL_ENTITY, "tr-1", "APPROVE", requester_ctx)

        assert result.error == "Transition not found"
        assert result.reason == "No transition from 'draft' via 'APPROVE'"

    def test_terminal_state_blocks(self, lifecycle, submitted_request, manager_ctx):
        entity_id = submitted_request()
        assert lifecycle.transition(TRAVEL_ENTITY, entity_id, "REJECT", manager_ctx).success

        result = lifecycle.transition(TRAVEL_ENTITY, entity_id, "SUBMIT", manager_ctx)

        assert result.success is False
        assert result.error == "Cannot transition from terminal state"
        assert result.reason == "State 'rejected' is terminal"

    def test_expected_transition_mismatch(
        self, lifecycle, installed, submitted_request, manager_ctx,
    ):
        entity_id = submitted_request()
        wrong = installed.transition_id(TRAVEL_LIFECYCLE, "submitted", "REJECT")

        result = lifecycle.transition(
            TRAVEL_ENTITY, entity_id, "APPROVE", manager_ctx,
            record={"amount": 10}, expected_transition_id=wrong,
        )

        assert result.error == "Transition mismatch"
        assert state_code(lifecycle, entity_id) == "submitted"

    def test_concurrent_change_detected(
        self, lifecycle, submitted_request, manager_ctx, monkeypatch,
    ):
        entity_id = submitted_request()
        monkeypatch.setattr(LifecycleStore, "move_instance", lambda self, *a, **kw: False)

        result = lifecycle.transition(TRAVEL_ENTITY, entity_id, "REJECT", manager_ctx)

        assert result.success is False
        assert result.error == "Lifecycle state changed concurrently"

    def test_other_tenant_cannot_transition(
        self, lifecycle, submitted_request, make_ctx,
    ):
        entity_id = submitted_request()
        foreign = make_ctx("manager-9", roles=("manager",), tenant_id=OTHER_TENANT)

        result = lifecycle.transition(TRAVEL_ENTITY, entity_id, "REJECT", foreign)

        assert result.error == "Lifecycle instance not found"

    def test_applied_transition_logged(
        self, lifecycle, submitted_request, manager_ctx, captured_logs,
    ):
        entity_id = submitted_request()
        lifecycle.transition(TRAVEL_ENTITY, entity_id, "REJECT", manager_ctx)

        logs = captured_logs()
        applied = [r for r in logs if r["message"] == "lifecycle_transition_applied"]
        assert applied[-1]["to_state"] == "rejected"
        traces = [r for r in logs if r["message"] == "lifecycle_transition"]
        assert traces[-1]["outcome"] == "success"


class TestApprovalGatedTransition:
    def test_below_threshold_moves_directly(
        self, lifecycle, services, submitted_request, manager_ctx,
    ):
        entity_id = submitted_request()

        result = lifecycle.transition(
            TRAVEL_ENTITY, entity_id, "APPROVE", manager_ctx, record={"amount": 800},
        )

        assert result.success is True
        assert result.new_state_code == "approved"
        assert services.approvals.list_instances_for_entity(TRAVEL_ENTITY, entity_id, TENANT) == []

    def test_above_threshold_initiates_then_pends(
        self, lifecycle, services, submitted_request, manager_ctx,
    ):
        entity_id = submitted_request()

        first = lifecycle.transition(
            TRAVEL_ENTITY, entity_id, "APPROVE", manager_ctx, record={"amount": 2500},
        )
        second = lifecycle.transition(
            TRAVEL_ENTITY, entity_id, "APPROVE", manager_ctx, record={"amount": 2500},
        )

        assert first.success is False
        assert first.reason == REASON_APPROVAL_INITIATED
        assert second.reason == REASON_APPROVAL_PENDING
        assert state_code(lifecycle, entity_id) == "submitted"
        instances = services.approvals.list_instances_for_entity(TRAVEL_ENTITY, entity_id, TENANT)
        assert len(instances) == 1

    def test_payload_doubles_as_record(self, lifecycle, services, submitted_request, manager_ctx):
        entity_id = submitted_request()

        result = lifecycle.transition(
            TRAVEL_ENTITY, entity_id, "APPROVE", manager_ctx, payload={"amount": 2500},
        )

        assert result.reason == REASON_APPROVAL_INITIATED

    def test_bypass_skips_approval(self, lifecycle, services, submitted_request):
        entity_id = submitted_request()

        result = lifecycle.transition(
            TRAVEL_ENTITY, entity_id, "APPROVE", RequestContext.system(TENANT),
            record={"amount": 2500},
        )

        assert result.success is True
        assert services.approvals.list_instances_for_entity(TRAVEL_ENTITY, entity_id, TENANT) == []


class TestCanTransition:
    def test_dry_run_reports_approval_required(
        self, lifecycle, services, submitted_request, manager_ctx,
    ):
        entity_id = submitted_request()

        result = lifecycle.can_transition(
            TRAVEL_ENTITY, entity_id, "APPROVE", manager_ctx, record={"amount": 2500},
        )

        assert result.success is False
        assert result.reason == REASON_APPROVAL_REQUIRED
        assert services.approvals.list_instances_for_entity(TRAVEL_ENTITY, entity_id, TENANT) == []
        assert state_code(lifecycle, entity_id) == "submitted"

    def test_dry_run_success_does_not_move(self, lifecycle, submitted_request, manager_ctx):
        entity_id = submitted_request()

        result = lifecycle.can_transition(TRAVEL_ENTITY, entity_id, "REJECT", manager_ctx)

        assert result.success is True
        assert result.new_state_code == "rejected"
        assert result.event_id is None
        assert state_code(lifecycle, entity_id) == "submitted"

    def test_dry_run_unknown_operation(self, lifecycle, submitted_request, manager_ctx):
        entity_id = submitted_request()
        result = lifecycle.can_transition(TRAVEL_ENTITY, entity_id, "CLOSE", manager_ctx)
        assert result.error == "Transition not found"


class TestAvailableTransitions:
    def test_lists_outgoing_transitions(self, lifecycle, submitted_request, manager_ctx):
        entity_id = submitted_request()

        available = {
            t.operation_code: t
            for t in lifecycle.get_available_transitions(TRAVEL_ENTITY, entity_id, manager_ctx)
        }

        assert set(available) == {"APPROVE", "REJECT"}
        assert available["APPROVE"].requires_approval is True
        assert available["APPROVE"].authorized is True
        assert available["REJECT"].requires_approval is False
        assert available["REJECT"].to_state_code == "rejected"

    def test_unauthorized_transitions_flagged(
        self, lifecycle, services, submitted_request, make_ctx,
    ):
        entity_id = submitted_request()
        outsider = make_ctx("outsider-1")

        available = lifecycle.get_available_transitions(TRAVEL_ENTITY, entity_id, outsider)

        assert all(t.authorized is False for t in available)
        assert all(t.unauthorized_reason for t in available)

    def test_listing_never_opens_approvals(
        self, lifecycle, services, submitted_request, manager_ctx,
    ):
        entity_id = submitted_request()
        lifecycle.get_available_transitions(
            TRAVEL_ENTITY, entity_id, manager_ctx, record={"amount": 9000},
        )
        assert services.approvals.list_instances_for_entity(TRAVEL_ENTITY, entity_id, TENANT) == []

    def test_terminal_state_has_none(self, lifecycle, submitted_request, manager_ctx):
        entity_id = submitted_request()
        lifecycle.transition(TRAVEL_ENTITY, entity_id, "REJECT", manager_ctx)
        assert lifecycle.get_available_transitions(TRAVEL_ENTITY, entity_id, manager_ctx) == []

    def test_unknown_entity_has_none(self, lifecycle, installed, manager_ctx):
        assert lifecycle.get_available_transitions(TRAVEL_ENTITY, "nope", manager_ctx) == []


class TestTerminalHelpers:
    def test_is_terminal_state(self, lifecycle, submitted_request, manager_ctx):
        entity_id = submitted_request()
        assert lifecycle.is_terminal_state(TRAVEL_ENTITY, entity_id, TENANT) is False
        lifecycle.transition(TRAVEL_ENTITY, entity_id, "REJECT", manager_ctx)
        assert lifecycle.is_terminal_state(TRAVEL_ENTITY, entity_id, TENANT) is True

    def test_enforce_terminal_state(self, lifecycle, submitted_request, manager_ctx):
        entity_id = submitted_request()
        lifecycle.enforce_terminal_state(TRAVEL_ENTITY, entity_id, TENANT)

        lifecycle.transition(TRAVEL_ENTITY, entity_id, "REJECT", manager_ctx)
        with pytest.raises(TerminalStateError) as exc_info:
            lifecycle.enforce_terminal_state(TRAVEL_ENTITY, entity_id, TENANT)
        assert exc_info.value.state_code == "rejected"

    def test_unknown_entity_is_not_terminal(self, lifecycle, installed):
        assert lifecycle.get_current_state(TRAVEL_ENTITY, "nope", TENANT) is None
        assert lifecycle.is_terminal_state(TRAVEL_ENTITY, "nope", TENANT) is False


def test_outcome_sink_receives_every_attempt(session, installed, policy_gate, requester_ctx):
    outcomes = []
    services = GovernanceServices(session, policy_gate=policy_gate, outcome_sink=outcomes.append)
    services.lifecycle.create_instance(TRAVEL_ENTITY, "tr-1", requester_ctx)

    services.lifecycle.transition(TRAVEL_ENTITY, "tr-1", "APPROVE", requester_ctx)
    services.lifecycle.transition(TRAVEL_ENTITY, "tr-1", "SUBMIT", requester_ctx)

    assert [o["outcome"] for o in outcomes] == ["no_transition", "success"]
    assert outcomes[1]["from_state"] == "draft"
    assert outcomes[1]["to_state"] == "submitted"
    assert all(o["message"] == "lifecycle_transition" for o in outcomes)
    assert outcomes[0]["tenant_id"] == TENANT
    assert outcomes[0]["actor_id"] == "requester-1"
