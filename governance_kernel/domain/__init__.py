"""
Pure domain layer.

Immutable value objects, status enums, the request context, the injectable
clock, and the ports to external collaborators.  NO dependencies on the ORM,
the database, or I/O.
"""

from governance_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from governance_kernel.domain.context import RequestContext

__all__ = [
    "Clock",
    "DeterministicClock",
    "RequestContext",
    "SystemClock",
]
