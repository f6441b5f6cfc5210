"""Audit domain — JSONL event log and usage sink."""

from tutorstream.audit.schemas import AuditEvent
from tutorstream.audit.schemas import AuditEventType
from tutorstream.audit.schemas import UsageRecord
from tutorstream.audit.store import AuditLogger
from tutorstream.audit.store import parse_events

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "UsageRecord",
    "parse_events",
]
