"""
Typed Exception Hierarchy for the Governance Kernel.

===============================================================================
WHEN THESE ARE RAISED
===============================================================================

The public governance operations (validate_gates, transition,
create_approval_instance, make_decision, ...) report *validation* outcomes
as result objects -- callers branch on ``success`` / ``allowed`` and read
``reason`` / ``error``.  Nothing in this module crosses that boundary for
an ordinary "no" answer.

Exceptions here cover the remaining cases:
  - programming errors and broken definition data (a state id that does
    not exist, a lifecycle with no states),
  - append-only violations (approval events, assignment snapshots,
    lifecycle events),
  - configuration loading failures,
  - explicit enforcement helpers (enforce_terminal_state).

Storage failures are NOT wrapped: ``sqlalchemy.exc.SQLAlchemyError``
propagates as-is and ``session_scope()`` rolls the transaction back.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    GovernanceKernelError (base)
    |
    +-- LifecycleError
    |   +-- LifecycleInstanceNotFoundError
    |   +-- LifecycleStateNotFoundError
    |   +-- NoLifecycleDefinedError
    |   +-- NoInitialStateError
    |   +-- TerminalStateError
    |
    +-- ApprovalError
    |   +-- ApprovalInstanceNotFoundError
    |   +-- StageNotFoundError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ConfigurationError
        +-- DefinitionValidationError
        +-- SettingsError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|--------------------------------------
Lifecycle       | LIFECYCLE_INSTANCE_NOT_FOUND  | Entity has no lifecycle instance
                | LIFECYCLE_STATE_NOT_FOUND     | Instance points at a missing state
                | NO_LIFECYCLE_DEFINED          | No lifecycle bound to entity name
                | NO_INITIAL_STATE              | Lifecycle has no states
                | TERMINAL_STATE                | Update attempted in terminal state
----------------|-------------------------------|--------------------------------------
Approval        | APPROVAL_INSTANCE_NOT_FOUND   | Instance id unknown for tenant
                | APPROVAL_STAGE_NOT_FOUND      | Task references a missing stage
----------------|-------------------------------|--------------------------------------
Immutability    | IMMUTABILITY_VIOLATION        | UPDATE/DELETE of append-only row
----------------|-------------------------------|--------------------------------------
Configuration   | DEFINITION_VALIDATION_ERROR   | YAML definition set is inconsistent
                | SETTINGS_ERROR                | Environment settings are invalid
"""


class GovernanceKernelError(Exception):
    """
    Base exception for all governance kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "GOVERNANCE_KERNEL_ERROR"


# Lifecycle exceptions


class LifecycleError(GovernanceKernelError):
    """Base exception for lifecycle errors."""

    code: str = "LIFECYCLE_ERROR"


class LifecycleInstanceNotFoundError(LifecycleError):
    """No lifecycle instance exists for the entity record."""

    code: str = "LIFECYCLE_INSTANCE_NOT_FOUND"

    def __init__(self, entity_name: str, entity_id: str, tenant_id: str):
        self.entity_name = entity_name
        self.entity_id = entity_id
        self.tenant_id = tenant_id
        super().__init__(
            f"Lifecycle instance not found for {entity_name}/{entity_id} "
            f"in tenant {tenant_id}"
        )


class LifecycleStateNotFoundError(LifecycleError):
    """A lifecycle instance or transition references a state that does not exist."""

    code: str = "LIFECYCLE_STATE_NOT_FOUND"

    def __init__(self, state_id: str):
        self.state_id = state_id
        super().__init__(f"Lifecycle state not found: {state_id}")


class NoLifecycleDefinedError(LifecycleError):
    """No lifecycle is bound to the entity name for this tenant."""

    code: str = "NO_LIFECYCLE_DEFINED"

    def __init__(self, entity_name: str, tenant_id: str):
        self.entity_name = entity_name
        self.tenant_id = tenant_id
        super().__init__(
            f"No lifecycle defined for entity '{entity_name}' in tenant {tenant_id}"
        )


class NoInitialStateError(LifecycleError):
    """The lifecycle has no states, so no initial state can be chosen."""

    code: str = "NO_INITIAL_STATE"

    def __init__(self, lifecycle_id: str):
        self.lifecycle_id = lifecycle_id
        super().__init__(f"No initial state defined for lifecycle '{lifecycle_id}'")


class TerminalStateError(LifecycleError):
    """The entity record is in a terminal state and may not be updated."""

    code: str = "TERMINAL_STATE"

    def __init__(self, entity_name: str, entity_id: str, state_code: str):
        self.entity_name = entity_name
        self.entity_id = entity_id
        self.state_code = state_code
        super().__init__(
            f"Cannot update {entity_name}/{entity_id}: record is in terminal "
            f"state '{state_code}'"
        )


# Approval exceptions


class ApprovalError(GovernanceKernelError):
    """Base exception for approval workflow errors."""

    code: str = "APPROVAL_ERROR"


class ApprovalInstanceNotFoundError(ApprovalError):
    """Approval instance id is unknown for the tenant."""

    code: str = "APPROVAL_INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Approval instance not found: {instance_id}")


class StageNotFoundError(ApprovalError):
    """A task references an approval stage that does not exist."""

    code: str = "APPROVAL_STAGE_NOT_FOUND"

    def __init__(self, stage_id: str):
        self.stage_id = stage_id
        super().__init__(f"Approval stage not found: {stage_id}")


# Immutability exceptions


class ImmutabilityError(GovernanceKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# Configuration exceptions


class ConfigurationError(GovernanceKernelError):
    """Base exception for configuration errors."""

    code: str = "CONFIGURATION_ERROR"


class DefinitionValidationError(ConfigurationError):
    """A lifecycle / approval definition set failed structural validation."""

    code: str = "DEFINITION_VALIDATION_ERROR"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (+{len(self.errors) - 5} more)"
        super().__init__(f"Definition validation failed: {summary}")


class SettingsError(ConfigurationError, ValueError):
    """An environment setting has an invalid value."""

    code: str = "SETTINGS_ERROR"

    def __init__(self, name: str, value: str, reason: str):
        self.name = name
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid setting {name}={value!r}: {reason}")
