"""Summarize token usage and cost from the JSONL audit log.

Usage:
    python scripts/usage_report.py \
      --audit tutorstream_usage.jsonl \
      --output reports/usage-report.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
from collections import Counter
from pathlib import Path

from tutorstream.audit.schemas import AuditEvent
from tutorstream.audit.schemas import AuditEventType
from tutorstream.audit.schemas import UsageRecord
from tutorstream.audit.store import AuditLogger
from tutorstream.config import AuditConfig


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--audit", default="tutorstream_usage.jsonl")
    parser.add_argument("--output", default="reports/usage-report.json")
    return parser.parse_args()


def _aggregate_usage(events: list[AuditEvent]) -> dict[str, dict]:
    per_model: dict[str, dict] = {}
    for event in events:
        record = UsageRecord.model_validate(event.payload)
        row = per_model.setdefault(
            record.model,
            {
                "turns": 0,
                "prompt_tokens": 0,
                "completion_tokens": 0,
                "cost_usd": 0.0,
                "total_latency_ms": 0,
            },
        )
        row["turns"] += 1
        row["prompt_tokens"] += record.prompt_tokens
        row["completion_tokens"] += record.completion_tokens
        row["cost_usd"] += record.cost_usd
        row["total_latency_ms"] += record.latency_ms

    for row in per_model.values():
        total_latency = row.pop("total_latency_ms")
        row["cost_usd"] = round(row["cost_usd"], 6)
        row["mean_latency_ms"] = round(total_latency / row["turns"], 1)
    return dict(sorted(per_model.items()))


def _count_outcomes(events: list[AuditEvent]) -> dict[str, int]:
    counts = Counter(str(event.payload.get("status", "unknown")) for event in events)
    return dict(sorted(counts.items()))


async def _main() -> int:
    args = _parse_args()
    audit_path = Path(args.audit)
    output_path = Path(args.output)

    audit = AuditLogger(AuditConfig(file_path=str(audit_path)))
    events = await audit.read_events()
    by_type = {
        event_type: [e for e in events if e.event_type == event_type]
        for event_type in AuditEventType
    }

    models = _aggregate_usage(by_type[AuditEventType.USAGE_RECORDED])
    report = {
        "input_audit": str(audit_path),
        "models": models,
        "totals": {
            "turns": sum(row["turns"] for row in models.values()),
            "cost_usd": round(sum(row["cost_usd"] for row in models.values()), 6),
        },
        "outcomes": _count_outcomes(by_type[AuditEventType.TURN_FINALIZED]),
        "rate_limited": len(by_type[AuditEventType.RATE_LIMITED]),
    }

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as handle:
        json.dump(report, handle, indent=2, sort_keys=True, ensure_ascii=True)
        handle.write("\n")

    print(json.dumps(report, indent=2, sort_keys=True, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
