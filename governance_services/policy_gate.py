"""
governance_services.policy_gate -- In-process PolicyGate adapters.

Permission evaluation proper is external; these adapters cover wiring
without one (``AllowAllPolicyGate``) and simple role-based deployments
and tests (``RolePolicyGate``).
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from governance_kernel.domain.context import SYSTEM_ACTOR, RequestContext
from governance_kernel.domain.ports import PolicyDecision
from governance_kernel.logging_config import get_logger

logger = get_logger("services.policy_gate")


class AllowAllPolicyGate:
    def authorize(
        self,
        operation_code: str,
        entity_name: str,
        ctx: RequestContext,
        record: dict[str, Any] | None = None,
    ) -> PolicyDecision:
        return PolicyDecision(allowed=True)


class RolePolicyGate:
    """Grants an operation to callers holding any role mapped to it.

    The ``system`` role is granted every operation.  Operations with no
    mapping are denied.
    """

    def __init__(self, grants: Mapping[str, Iterable[str]]) -> None:
        self._grants = {op: frozenset(roles) for op, roles in grants.items()}

    def authorize(
        self,
        operation_code: str,
        entity_name: str,
        ctx: RequestContext,
        record: dict[str, Any] | None = None,
    ) -> PolicyDecision:
        if ctx.has_role(SYSTEM_ACTOR):
            return PolicyDecision(allowed=True)
        allowed_roles = self._grants.get(operation_code, frozenset())
        if allowed_roles.intersection(ctx.roles):
            return PolicyDecision(allowed=True)
        logger.debug(
            "policy_denied",
            extra={
                "operation": operation_code,
                "entity_name": entity_name,
                "user_id": ctx.user_id,
            },
        )
        return PolicyDecision(
            allowed=False,
            reason=f"user lacks a role granting '{operation_code}'",
        )
