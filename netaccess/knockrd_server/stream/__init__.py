"""
Change stream processing for knockrd.

This module turns the access table change stream into sink updates:
- ChangeRecord / ChangeEvent: raw and normalized changes
- extract_events(): per-family extraction preserving stream order
- Reconciler: dispatches one batch to every configured sink
- StreamHandler: the consumer boundary invoked with each batch

Invariants:
    - A batch is acknowledged as a whole; any sink failure fails it
    - Every sink is safe under at-least-once redelivery
"""

from .events import (
    Action,
    AddressFamily,
    ChangeEvent,
    ChangeRecord,
    ExtractedEvents,
    MutationKind,
    extract_events,
    records_from_stream_event,
)
from .handler import StreamHandler
from .reconciler import Reconciler, ReconcileResult

__all__ = [
    "Action",
    "AddressFamily",
    "ChangeEvent",
    "ChangeRecord",
    "ExtractedEvents",
    "MutationKind",
    "extract_events",
    "records_from_stream_event",
    "StreamHandler",
    "Reconciler",
    "ReconcileResult",
]
