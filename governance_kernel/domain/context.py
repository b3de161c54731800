"""
Request context passed explicitly to every governance operation.

There is no ambient "current user" anywhere in the kernel: tenant scoping
and actor attribution both come from this object.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping

APPROVAL_BYPASS_KEY = "_approvalBypass"
APPROVAL_INSTANCE_KEY = "_approvalInstanceId"

SYSTEM_ACTOR = "system"


def _freeze(metadata: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(metadata or {}))


@dataclass(frozen=True)
class RequestContext:
    """Caller identity, tenant scope, and free-form metadata.

    ``metadata`` carries control flags.  The only one the core reads is
    ``_approvalBypass``, set when the approval subsystem resumes a
    transition it already approved.
    """

    user_id: str
    tenant_id: str
    realm_id: str = "default"
    roles: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", tuple(self.roles))
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @property
    def approval_bypass(self) -> bool:
        return self.metadata.get(APPROVAL_BYPASS_KEY) is True

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def with_metadata(self, **values: Any) -> RequestContext:
        merged = dict(self.metadata)
        merged.update(values)
        return replace(self, metadata=merged)

    def as_condition_context(self) -> dict[str, Any]:
        """Flatten into the map that routing-rule conditions are evaluated against."""
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "realm_id": self.realm_id,
            "roles": list(self.roles),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def system(
        cls,
        tenant_id: str,
        approval_instance_id: str | None = None,
    ) -> RequestContext:
        """Context used when the approval subsystem resumes a transition."""
        metadata: dict[str, Any] = {APPROVAL_BYPASS_KEY: True}
        if approval_instance_id is not None:
            metadata[APPROVAL_INSTANCE_KEY] = approval_instance_id
        return cls(
            user_id=SYSTEM_ACTOR,
            tenant_id=tenant_id,
            realm_id=SYSTEM_ACTOR,
            roles=(SYSTEM_ACTOR,),
            metadata=metadata,
        )
