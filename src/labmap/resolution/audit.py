"""Audit side channel.

Every resolved item produces one event and every batch one summary. The
emitter is passed to the resolver explicitly; nothing reads it from
global state.
"""

import math
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Sequence

from ..logging import get_logger
from ..models import Decision, ResolutionDecision


def item_event(
    vocabulary: str,
    decision: ResolutionDecision,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Build the per-item audit event."""
    return {
        "vocabulary": vocabulary,
        "request_id": decision.request_id,
        "key": decision.key,
        "tiers": decision.tiers,
        "final_decision": decision.decision.value,
        "confidence": decision.confidence,
        "chosen_code": decision.chosen_code,
        "learned": decision.learned,
        "review_item_id": str(decision.review_item_id) if decision.review_item_id else None,
        "review_issue": decision.review_issue.value if decision.review_issue else None,
        "dry_run": dry_run,
        "would_learn": decision.would_learn,
        "duration_ms": round(decision.duration_ms, 3),
        "timeout": decision.timeout,
        "note": decision.note,
    }


def percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sequence."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


def build_batch_summary(
    vocabulary: str,
    decisions: Sequence[ResolutionDecision],
    duration_ms: float,
    semantic_calls: int,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Build the per-batch audit summary.

    In a dry run nothing is written; would_learn and would_queue count
    what a real run would have done.
    """
    counts = Counter(d.decision.value for d in decisions)
    latencies = [d.duration_ms for d in decisions]
    return {
        "vocabulary": vocabulary,
        "total": len(decisions),
        "counts": {decision.value: counts.get(decision.value, 0) for decision in Decision},
        "learned": sum(1 for d in decisions if d.learned),
        "queued": sum(1 for d in decisions if d.review_item_id is not None),
        "dry_run": dry_run,
        "would_learn": sum(1 for d in decisions if d.would_learn),
        "would_queue": sum(1 for d in decisions if dry_run and d.review_issue is not None),
        "timeouts": sum(1 for d in decisions if d.timeout),
        "semantic_calls": semantic_calls,
        "duration_ms": round(duration_ms, 3),
        "latency_ms": {
            "p50": round(percentile(latencies, 50), 3),
            "p95": round(percentile(latencies, 95), 3),
            "max": round(max(latencies, default=0.0), 3),
        },
    }


class AuditEmitter(ABC):
    """Receives audit events from the resolver."""

    @abstractmethod
    def emit_item(self, event: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def emit_batch(self, summary: dict[str, Any]) -> None:
        ...


class LoggingAuditEmitter(AuditEmitter):
    """Writes audit events as structured log records."""

    def __init__(self, logger_name: str = "labmap.audit"):
        self.logger = get_logger(logger_name)

    def emit_item(self, event: dict[str, Any]) -> None:
        self.logger.info(
            f"{event['final_decision']} {event['key']!r} -> {event['chosen_code']}",
            extra={**event, "event": "resolution.item"},
        )

    def emit_batch(self, summary: dict[str, Any]) -> None:
        self.logger.info(
            f"Resolved {summary['total']} {summary['vocabulary']} label(s) "
            f"in {summary['duration_ms']:.0f}ms",
            extra={**summary, "event": "resolution.batch"},
        )


class InMemoryAuditEmitter(AuditEmitter):
    """Collects audit events in lists (tests, CLI reports)."""

    def __init__(self):
        self.items: list[dict[str, Any]] = []
        self.batches: list[dict[str, Any]] = []

    def emit_item(self, event: dict[str, Any]) -> None:
        self.items.append(event)

    def emit_batch(self, summary: dict[str, Any]) -> None:
        self.batches.append(summary)
