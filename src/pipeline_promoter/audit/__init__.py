"""
Audit trail for Pipeline Promoter.

Every run transition, approval decision, tag move and policy change is
written as a checksummed JSONL event.

Example:
    >>> from pipeline_promoter.audit import AuditLogger, AuditEventType
    >>> audit = AuditLogger()
    >>> audit.record(AuditEventType.TAG_MOVED, "Promoted dev:latest", target="prod:live")
"""

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLevel",
    "AuditLogger",
    "AuditResult",
    "WriteResult",
]

from .logger import AuditLogger, WriteResult
from .models import AuditEvent, AuditEventType, AuditLevel, AuditResult
