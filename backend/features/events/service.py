"""
backend/features/events/service.py

Domain event emission toward the notification collaborator.

Delivery is at-least-once: emit happens after the owning state change is
durable. Every event is logged; the default sink also keeps the most recent
RECENT_EVENTS_MAX events for inspection. Production wiring swaps in a real
sink with set_event_sink().
"""

import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from backend.core.logging import log_event
from backend.models.events import DomainEvent, EventType


EventSink = Callable[[DomainEvent], None]

RECENT_EVENTS_MAX = 1000

_recorded: Deque[DomainEvent] = deque(maxlen=RECENT_EVENTS_MAX)
_recorded_lock = threading.Lock()


def _record(event: DomainEvent) -> None:
    with _recorded_lock:
        _recorded.append(event)


_sink: EventSink = _record


def set_event_sink(sink: Optional[EventSink]) -> None:
    """Install a sink; None restores the in-memory recorder."""
    global _sink
    _sink = sink or _record


def emit_event(
    event_type: EventType,
    *,
    account_ids: Iterable[str],
    occurred_at: datetime,
    entity_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> DomainEvent:
    event = DomainEvent(
        event_type=event_type,
        occurred_at=occurred_at,
        account_ids=tuple(account_ids),
        entity_id=entity_id,
        payload=dict(payload or {}),
    )
    log_event(
        "info",
        "domain.event",
        account_id=event.account_ids[0] if event.account_ids else None,
        entity_id=entity_id,
        event_type=event_type.value,
    )
    _sink(event)
    return event


def recorded_events(event_type: Optional[EventType] = None) -> List[DomainEvent]:
    with _recorded_lock:
        events = list(_recorded)
    if event_type is not None:
        events = [e for e in events if e.event_type == event_type]
    return events


def clear_events() -> None:
    """Clear recorded events (for testing)"""
    with _recorded_lock:
        _recorded.clear()
