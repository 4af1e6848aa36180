"""
Mutation-log consumer boundary.

StreamHandler receives one DynamoDB stream event, extracts the change
events and reconciles them. Any sink failure fails the whole batch so the
upstream delivery mechanism redelivers it.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from ..errors import ReconciliationError
from .events import extract_events, records_from_stream_event
from .reconciler import Reconciler, ReconcileResult

logger = logging.getLogger(__name__)


class StreamHandler:
    """Handles batches of the access table change stream.

    Example:
        >>> handler = StreamHandler(reconciler)
        >>> await handler.handle({"Records": [...]})
    """

    def __init__(self, reconciler: Reconciler) -> None:
        self.reconciler = reconciler

    async def handle(self, event: Mapping[str, Any]) -> ReconcileResult:
        """Process one stream batch.

        Args:
            event: DynamoDB stream event ({"Records": [...]})

        Returns:
            ReconcileResult of the batch

        Raises:
            ReconciliationError: If one or more sinks failed
        """
        records = records_from_stream_event(event)
        events = extract_events(records)
        logger.debug(
            f"extracted {len(events)} events from {len(records)} records",
            extra={"v4": len(events.v4), "v6": len(events.v6)},
        )
        result = await self.reconciler.reconcile(events)
        if not result.success:
            raise ReconciliationError(result.errors)
        return result
