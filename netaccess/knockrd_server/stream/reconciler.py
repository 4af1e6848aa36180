"""
Reconciliation engine for knockrd.

The Reconciler applies the change events of one batch to every configured
sink. Each sink is attempted exactly once per batch; sinks run
concurrently and a failing sink never prevents the others from running.

Invariants:
    - Failures are collected per sink category and reported together
    - An empty batch issues no remote call at all, and a sink with no
      events for its targets is skipped and reported as such
    - Each invocation observes remote sink state at its own call time;
      several invocations may run concurrently

How to change safely:
    - Sinks must stay idempotent, the whole batch is redelivered on failure
    - Monitor per-sink error counts in production
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Sequence

from .events import ExtractedEvents

if TYPE_CHECKING:
    from ..sinks.base import Sink

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of reconciling one batch.

    Attributes:
        events: Events of the batch
        applied: Sinks that applied the batch
        skipped: Sinks that were not called because nothing in the batch concerned them
        errors: Exception raised by each failed sink, keyed by sink name
        duration_ms: Wall time spent reconciling
    """

    events: ExtractedEvents
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: Dict[str, Exception] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors


class Reconciler:
    """Dispatches change events to sinks.

    Example:
        >>> reconciler = Reconciler([ip_set_sink, consul_sink])
        >>> result = await reconciler.reconcile(extract_events(records))
        >>> result.success
        True
    """

    def __init__(self, sinks: Sequence["Sink"]) -> None:
        """Initialize the reconciler.

        Args:
            sinks: Configured sinks, at most one per category
        """
        names = [sink.name for sink in sinks]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate sink categories: {names}")
        self.sinks = list(sinks)

        self._batch_count = 0
        self._failed_batch_count = 0
        self._sink_error_counts: Dict[str, int] = {name: 0 for name in names}

    async def reconcile(self, events: ExtractedEvents) -> ReconcileResult:
        """Apply one batch to every sink.

        Args:
            events: Per-family events of the batch

        Returns:
            ReconcileResult with the per-sink outcome
        """
        start = time.monotonic()
        result = ReconcileResult(events=events)
        self._batch_count += 1

        if events.is_empty():
            result.skipped = [sink.name for sink in self.sinks]
            logger.debug("no address events in batch, skipping sinks")
            return result

        active = []
        for sink in self.sinks:
            if sink.has_work(events.v4, events.v6):
                active.append(sink)
            else:
                result.skipped.append(sink.name)
        if result.skipped:
            logger.debug(f"nothing to apply for sinks {result.skipped}")

        outcomes = await asyncio.gather(
            *(sink.apply(events.v4, events.v6) for sink in active),
            return_exceptions=True,
        )
        for sink, outcome in zip(active, outcomes):
            if isinstance(outcome, Exception):
                result.errors[sink.name] = outcome
                self._sink_error_counts[sink.name] += 1
                logger.error(
                    f"sink {sink.name} failed: {outcome}",
                    exc_info=outcome,
                    extra={"sink": sink.name, "v4": len(events.v4), "v6": len(events.v6)},
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.applied.append(sink.name)

        if result.errors:
            self._failed_batch_count += 1
        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Reconciled batch",
            extra={
                "v4": len(events.v4),
                "v6": len(events.v6),
                "applied": result.applied,
                "skipped": result.skipped,
                "failed": sorted(result.errors),
                "duration_ms": result.duration_ms,
            },
        )
        return result

    @property
    def stats(self) -> Dict[str, Any]:
        """Get reconciler statistics."""
        return {
            "batch_count": self._batch_count,
            "failed_batch_count": self._failed_batch_count,
            "sink_error_counts": dict(self._sink_error_counts),
        }
