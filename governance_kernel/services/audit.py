"""
governance_kernel.services.audit -- Audit logger adapters.

Responsibility:
    ``LoggingAuditLogger`` writes audit records to the structured log (the
    default when no external audit trail is wired).  ``emit_audit`` is the
    fire-and-forget call every service uses: an audit failure is logged at
    WARNING and never fails the business operation.

Architecture position:
    Kernel > Services.  Audit-trail storage and export live outside this
    package; they plug in through the ``AuditLogger`` port.
"""

from __future__ import annotations

from governance_kernel.domain.ports import AuditLogger, AuditRecord
from governance_kernel.logging_config import get_logger

logger = get_logger("services.audit")


class LoggingAuditLogger:
    """AuditLogger that emits one ``audit_event`` log record per business event."""

    def log(self, record: AuditRecord) -> None:
        logger.info(
            "audit_event",
            extra={
                "audit_action": record.action,
                "tenant_id": record.tenant_id,
                "actor_id": record.actor_id,
                "entity_name": record.entity_name,
                "entity_id": record.entity_id,
                "occurred_at": record.occurred_at,
                "audit_payload": record.payload,
            },
        )


def emit_audit(audit_logger: AuditLogger | None, record: AuditRecord) -> bool:
    """Send a record to the audit logger; swallow and log any failure.

    Returns:
        True if the audit logger accepted the record.
    """
    if audit_logger is None:
        return False
    try:
        audit_logger.log(record)
    except Exception:  # noqa: BLE001
        logger.warning(
            "audit_log_failed",
            extra={
                "audit_action": record.action,
                "entity_name": record.entity_name,
                "entity_id": record.entity_id,
            },
            exc_info=True,
        )
        return False
    return True
