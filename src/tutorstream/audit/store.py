"""Async JSONL audit log doubling as the usage sink."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path

from pydantic import ValidationError

from tutorstream.audit.schemas import AuditEvent
from tutorstream.audit.schemas import AuditEventType
from tutorstream.audit.schemas import UsageRecord
from tutorstream.config import AuditConfig

logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only JSONL file written from a worker thread.

    Writes are serialized with an ``asyncio.Lock`` so lines never interleave.
    """

    def __init__(self, config: AuditConfig | None = None) -> None:
        self.config = config or AuditConfig()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def log(self, event: AuditEvent) -> None:
        if not self.config.enabled:
            return
        line = event.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(partial(self._append, self.config.file_path, line))

    async def record_usage(
        self,
        message_id: str,
        model: str,
        latency_ms: int,
        prompt_tokens: int,
        completion_tokens: int,
        cost_usd: float,
    ) -> None:
        """Record the usage of one finished answer."""
        record = UsageRecord(
            message_id=message_id,
            model=model,
            latency_ms=max(latency_ms, 0),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost_usd=cost_usd,
        )
        await self.log(
            AuditEvent(
                event_type=AuditEventType.USAGE_RECORDED,
                payload=record.model_dump(),
            )
        )

    @staticmethod
    def _append(path: str, line: str) -> None:
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(line)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        since: float | None = None,
    ) -> list[AuditEvent]:
        """Read events back, skipping malformed lines."""
        path = Path(self.config.file_path)
        if not path.exists():
            return []

        async with self._lock:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return parse_events(raw, source=str(path), event_type=event_type, since=since)


def parse_events(
    raw: str,
    *,
    source: str = "<audit>",
    event_type: AuditEventType | None = None,
    since: float | None = None,
) -> list[AuditEvent]:
    events: list[AuditEvent] = []
    for line_no, line in enumerate(raw.strip().splitlines(), start=1):
        if not line.strip():
            continue
        try:
            evt = AuditEvent.model_validate_json(line)
        except ValidationError:
            logger.warning("Skipping malformed audit line %d in %s", line_no, source)
            continue
        if event_type is not None and evt.event_type != event_type:
            continue
        if since is not None and evt.timestamp < since:
            continue
        events.append(evt)
    return events
