"""
Base protocol for enforcement sinks.

A sink receives the change events of one batch, split by address family,
and brings its remote enforcement point in line with them.

Invariants:
    - apply() is safe to call again with the same batch (redelivery)
    - apply() raises SinkError naming every failed target; it never
      swallows a failure
    - A sink only issues calls for targets that have events

How to change safely:
    - New sinks must tolerate duplicate and out-of-date events
    - Keep sink names stable, they key the per-sink error report
"""

from __future__ import annotations

from abc import abstractmethod
from collections import OrderedDict
from typing import Dict, Protocol, Sequence, runtime_checkable

from ..stream.events import ChangeEvent


@runtime_checkable
class Sink(Protocol):
    """Protocol for enforcement sinks."""

    name: str

    @abstractmethod
    def has_work(self, v4: Sequence[ChangeEvent], v6: Sequence[ChangeEvent]) -> bool:
        """Whether apply() would issue any remote call for this batch."""
        ...

    @abstractmethod
    async def apply(self, v4: Sequence[ChangeEvent], v6: Sequence[ChangeEvent]) -> None:
        """Apply one batch of change events.

        Args:
            v4: IPv4 change events in stream order
            v6: IPv6 change events in stream order

        Raises:
            SinkError: If any target of the sink could not be updated
        """
        ...


def final_actions(events: Sequence[ChangeEvent]) -> Dict[str, ChangeEvent]:
    """Collapse events to the last one per range, keeping first-seen order.

    A later event for the same range overrides an earlier one.
    """
    latest: Dict[str, ChangeEvent] = OrderedDict()
    for event in events:
        latest[event.cidr] = event
    return latest
