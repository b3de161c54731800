"""Tests for the in-process PolicyGate adapters."""

import pytest

from governance_kernel.domain.context import RequestContext
from governance_services.policy_gate import AllowAllPolicyGate, RolePolicyGate
from tests.factories import ROLE_GRANTS, TENANT


@pytest.fixture
def gate():
    return RolePolicyGate(ROLE_GRANTS)


class TestRolePolicyGate:
    def test_granted_role_allowed(self, gate, make_ctx):
        decision = gate.authorize(
            "travel.submit", "travel_request", make_ctx("u", roles=("employee",)),
        )
        assert decision.allowed is True
        assert decision.reason is None

    def test_any_granted_role_suffices(self, gate, make_ctx):
        ctx = make_ctx("u", roles=("auditor", "manager"))
        assert gate.authorize("travel.approve", "travel_request", ctx).allowed is True

    def test_missing_role_denied_with_reason(self, gate, make_ctx):
        decision = gate.authorize(
            "travel.submit", "travel_request", make_ctx("u", roles=("manager",)),
        )
        assert decision.allowed is False
        assert decision.reason == "user lacks a role granting 'travel.submit'"

    def test_unmapped_operation_denied(self, gate, make_ctx):
        ctx = make_ctx("u", roles=("employee", "manager"))
        assert gate.authorize("travel.delete", "travel_request", ctx).allowed is False

    def test_system_context_allowed_everything(self, gate):
        ctx = RequestContext.system(TENANT)
        assert gate.authorize("travel.delete", "travel_request", ctx).allowed is True

    def test_denial_logged(self, gate, make_ctx, captured_logs):
        gate.authorize("travel.submit", "travel_request", make_ctx("u-9"))

        (denied,) = [r for r in captured_logs() if r["message"] == "policy_denied"]
        assert denied["operation"] == "travel.submit"
        assert denied["user_id"] == "u-9"


class TestAllowAllPolicyGate:
    def test_allows_without_roles(self, make_ctx):
        decision = AllowAllPolicyGate().authorize("anything", "thing", make_ctx("u"))
        assert decision.allowed is True
