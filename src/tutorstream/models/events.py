"""Events produced for one streamed turn.

A turn yields ``meta`` once, zero or more ``delta`` events, then exactly
one of ``done`` / ``error``.  Pre-stream rejections yield a lone ``error``.
"""

from __future__ import annotations

import json
from typing import Any
from typing import ClassVar

from pydantic import BaseModel
from pydantic import Field

from tutorstream.models.schemas import Citation
from tutorstream.models.schemas import ErrorCode
from tutorstream.models.schemas import TokenUsage


class StreamEvent(BaseModel):
    """Base class: ``event`` names the SSE event, ``payload()`` its data."""

    model_config = {"frozen": True}

    event: ClassVar[str] = ""

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_sse(self) -> str:
        """Render as one Server-Sent-Events frame."""
        data = json.dumps(self.payload(), ensure_ascii=False, separators=(",", ":"))
        return f"event: {self.event}\ndata: {data}\n\n"


class MetaEvent(StreamEvent):
    event: ClassVar[str] = "meta"

    request_id: str
    model: str
    difficulty: str
    language: str


class DeltaEvent(StreamEvent):
    event: ClassVar[str] = "delta"

    text: str


class DoneEvent(StreamEvent):
    event: ClassVar[str] = "done"

    status: str = "done"
    usage: TokenUsage
    citations: list[Citation] = Field(default_factory=list)

    def payload(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        if not self.citations:
            data.pop("citations")
        return data


class ErrorEvent(StreamEvent):
    event: ClassVar[str] = "error"

    code: ErrorCode
    message: str
    request_id: str | None = None

    def payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.request_id is not None:
            error["request_id"] = self.request_id
        return {"status": "error", "error": error}
