"""
In-process event bus between the source store, the sync engine and the
report cache.

Two kinds of events flow through it:

- source changes (product, option, order, customer, category writes),
  which ReportsSync turns into single-record imports or stock-count
  cache clears;
- lookup lifecycle events (LOOKUP_UPDATED, IMPORT_*, DATA_DELETED), which
  the report cache uses to retire stale report versions.

Every event records the correlation id of the job that emitted it, so a
LOOKUP_UPDATED can be traced back to the batch that wrote the rows.
"""
import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine, Deque, Dict, Iterable, List, Optional, Union

from lookup_analytics.observability import get_correlation_id, get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class AnalyticsEvent(Enum):
    # Lookup table lifecycle
    LOOKUP_UPDATED = "lookup.updated"
    IMPORT_STARTED = "import.started"
    IMPORT_COMPLETED = "import.completed"
    DATA_DELETED = "import.data_deleted"

    # Source store writes
    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    OPTION_UPDATED = "option.updated"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    CATEGORY_UPDATED = "category.updated"

    CACHE_INVALIDATED = "cache.invalidated"


@dataclass
class Event:
    type: AnalyticsEvent
    data: Dict[str, Any]
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    emitted_at: datetime = field(default_factory=datetime.now)
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "event_id": self.event_id,
            "emitted_at": self.emitted_at.isoformat(),
            "correlation_id": self.correlation_id,
        }


class EventBus:
    """
    Async publish/subscribe keyed by AnalyticsEvent.

    Handlers of one event run concurrently. A handler that raises is
    logged and never fails the emitter: a broken cache listener must not
    abort the import batch that published the write.
    """

    def __init__(self, max_history: int = 200):
        self._handlers: Dict[AnalyticsEvent, List[EventHandler]] = {}
        self._history: Deque[Event] = deque(maxlen=max_history)

    def subscribe(self, event_type: AnalyticsEvent, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"{handler.__name__} subscribed to {event_type.value}")

    def on(self, event_type: AnalyticsEvent) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of subscribe()."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def handler_count(self, event_type: AnalyticsEvent) -> int:
        return len(self._handlers.get(event_type, []))

    async def emit(self, event_type: AnalyticsEvent, data: Optional[Dict[str, Any]] = None) -> Event:
        event = Event(type=event_type, data=data or {})
        self._history.append(event)

        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            return event

        results = await asyncio.gather(
            *(handler(event.data) for handler in handlers), return_exceptions=True
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"{handler.__name__} failed on {event_type.value}: {result}",
                    extra={"event_id": event.event_id},
                    exc_info=result,
                )
        return event

    def get_history(
        self, event_type: Optional[AnalyticsEvent] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Recent events, oldest first, optionally filtered by type."""
        history = [e for e in self._history if event_type is None or e.type is event_type]
        if limit is not None:
            history = history[-limit:]
        return [e.to_dict() for e in history]


# Process-wide bus used by get_reports_sync()
events = EventBus()


async def emit_lookup_updated(
    bus: EventBus, contexts: Iterable[str], sync_type: str, **details
) -> Event:
    """Announce a lookup write; ``contexts`` are the report contexts it feeds."""
    return await bus.emit(
        AnalyticsEvent.LOOKUP_UPDATED,
        {"contexts": sorted(set(contexts)), "sync_type": sync_type, **details},
    )


async def emit_cache_invalidated(
    bus: EventBus, context: str, version: Optional[int], **details
) -> Event:
    return await bus.emit(
        AnalyticsEvent.CACHE_INVALIDATED, {"context": context, "version": version, **details}
    )


async def emit_option_updated(bus: EventBus, name: str, old: Any, new: Any) -> Event:
    return await bus.emit(AnalyticsEvent.OPTION_UPDATED, {"name": name, "old": old, "new": new})


async def emit_entity_changed(
    bus: EventBus, event_type: AnalyticsEvent, entity_id: Union[int, str]
) -> Event:
    """Publish a source store write (order/customer/product/category) by id."""
    return await bus.emit(event_type, {"id": int(entity_id)})
