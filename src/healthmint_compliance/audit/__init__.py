"""Audit trail for compliance-relevant actions.

HIPAA Citation: 45 CFR 164.312(b) - Audit Controls
"""

from .context import AuditContext, audit_context, get_audit_context, set_audit_context
from .models import (
    SENSITIVE_ACTIONS,
    AuditLogEntry,
    DeliveryResult,
    DeliveryState,
    RetryQueueEntry,
    RetryReport,
    redact_audit_entries,
)
from .pipeline import AuditPipeline
from .queue import PersistentQueue

__all__ = [
    "SENSITIVE_ACTIONS",
    "AuditContext",
    "AuditLogEntry",
    "AuditPipeline",
    "DeliveryResult",
    "DeliveryState",
    "PersistentQueue",
    "RetryQueueEntry",
    "RetryReport",
    "audit_context",
    "get_audit_context",
    "redact_audit_entries",
    "set_audit_context",
]
