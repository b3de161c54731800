"""
governance_kernel.services.timers -- Timer scheduler adapters.

Responsibility:
    SLA reminder and escalation timers are owned by an external scheduler;
    the core only schedules and cancels through the ``TimerScheduler``
    port.  This module provides:

    - ``NullTimerScheduler``: accepts and discards (default wiring).
    - ``InMemoryTimerScheduler``: keeps timers in a dict; used by tests and
      single-process tooling.  ``take_due`` hands fired timers to the SLA
      processor.
    - ``TimerGuard``: wraps any scheduler so a scheduling or cancellation
      failure is logged at WARNING and swallowed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from governance_kernel.domain.ports import TimerScheduler
from governance_kernel.logging_config import get_logger

logger = get_logger("services.timers")

REMINDER = "reminder"
ESCALATION = "escalation"


@dataclass(frozen=True)
class ScheduledTimer:
    task_id: UUID
    tenant_id: str
    kind: str
    fire_at: datetime


class NullTimerScheduler:
    def schedule_reminder(self, task_id: UUID, tenant_id: str, fire_at: datetime) -> None:
        return None

    def schedule_escalation(self, task_id: UUID, tenant_id: str, fire_at: datetime) -> None:
        return None

    def cancel_timers(self, task_id: UUID, tenant_id: str) -> int:
        return 0


class InMemoryTimerScheduler:
    """Thread-safe in-process scheduler.  Cancelling an unknown task is a no-op."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: dict[tuple[str, UUID], list[ScheduledTimer]] = {}

    def _add(self, timer: ScheduledTimer) -> None:
        with self._lock:
            self._timers.setdefault((timer.tenant_id, timer.task_id), []).append(timer)

    def schedule_reminder(self, task_id: UUID, tenant_id: str, fire_at: datetime) -> None:
        self._add(ScheduledTimer(task_id, tenant_id, REMINDER, fire_at))

    def schedule_escalation(self, task_id: UUID, tenant_id: str, fire_at: datetime) -> None:
        self._add(ScheduledTimer(task_id, tenant_id, ESCALATION, fire_at))

    def cancel_timers(self, task_id: UUID, tenant_id: str) -> int:
        with self._lock:
            return len(self._timers.pop((tenant_id, task_id), []))

    def pending_for(self, task_id: UUID, tenant_id: str) -> list[ScheduledTimer]:
        with self._lock:
            return list(self._timers.get((tenant_id, task_id), []))

    def take_due(self, now: datetime) -> list[ScheduledTimer]:
        """Remove and return the timers whose fire time has passed, by fire time."""
        fired: list[ScheduledTimer] = []
        with self._lock:
            for key, timers in list(self._timers.items()):
                remaining = [t for t in timers if t.fire_at > now]
                fired.extend(t for t in timers if t.fire_at <= now)
                if remaining:
                    self._timers[key] = remaining
                else:
                    del self._timers[key]
        return sorted(fired, key=lambda t: t.fire_at)


class TimerGuard:
    """Fire-and-forget wrapper around a TimerScheduler."""

    def __init__(self, scheduler: TimerScheduler | None) -> None:
        self._scheduler = scheduler or NullTimerScheduler()

    def schedule(
        self,
        task_id: UUID,
        tenant_id: str,
        *,
        reminder_at: datetime | None,
        escalation_at: datetime | None,
    ) -> bool:
        try:
            if reminder_at is not None:
                self._scheduler.schedule_reminder(task_id, tenant_id, reminder_at)
            if escalation_at is not None:
                self._scheduler.schedule_escalation(task_id, tenant_id, escalation_at)
        except Exception:  # noqa: BLE001
            logger.warning(
                "timer_schedule_failed",
                extra={"task_id": str(task_id)},
                exc_info=True,
            )
            return False
        return True

    def cancel(self, task_id: UUID, tenant_id: str) -> int | None:
        """Cancel a task's timers.  None when the scheduler failed."""
        try:
            return self._scheduler.cancel_timers(task_id, tenant_id)
        except Exception:  # noqa: BLE001
            logger.warning(
                "timer_cancel_failed",
                extra={"task_id": str(task_id)},
                exc_info=True,
            )
            return None
