"""Kernel services: persistence access and adapters for audit and timers."""

from governance_kernel.services.approval_store import ApprovalStore
from governance_kernel.services.audit import LoggingAuditLogger, emit_audit
from governance_kernel.services.lifecycle_store import LifecycleStore
from governance_kernel.services.timers import (
    InMemoryTimerScheduler,
    NullTimerScheduler,
    TimerGuard,
)

__all__ = [
    "ApprovalStore",
    "InMemoryTimerScheduler",
    "LifecycleStore",
    "LoggingAuditLogger",
    "NullTimerScheduler",
    "TimerGuard",
    "emit_audit",
]
