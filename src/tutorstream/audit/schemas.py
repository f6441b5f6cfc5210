"""Audit event types and usage records."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(str, Enum):
    """Categories of auditable events."""

    USAGE_RECORDED = "USAGE_RECORDED"
    TURN_FINALIZED = "TURN_FINALIZED"
    RATE_LIMITED = "RATE_LIMITED"


class AuditEvent(BaseModel):
    """A single immutable line of the audit log."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the event occurred.",
    )
    event_type: AuditEventType
    payload: dict[str, Any] = Field(default_factory=dict)


class UsageRecord(BaseModel):
    """Usage and cost of one completed answer."""

    message_id: str
    model: str
    latency_ms: int = Field(ge=0)
    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(ge=0)
    cost_usd: float = Field(ge=0.0)
