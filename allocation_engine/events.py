"""
Event System Module

Publish/subscribe dispatcher for allocation domain events, and a
transactional outbox. State changes enqueue their events in the same
storage transaction; the relay hands them to the dispatcher only after
that transaction has committed.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock

from .storage import StorageInterface


class DomainEvent(Enum):
    """Domain events that can occur in the allocation engine"""

    # Ownership events
    CASE_ALLOCATED = "case.allocated"
    CASE_REALLOCATED = "case.reallocated"
    CASE_DEALLOCATED = "case.deallocated"
    CASE_CONTACT_UPDATED = "case.contact_updated"

    # Batch events
    BATCH_COMPLETED = "batch.completed"
    BATCH_FAILED = "batch.failed"

    # Job and rule events
    JOB_COMPLETED = "job.completed"
    RULE_APPLIED = "rule.applied"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = logging.getLogger("allocation_engine.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


class EventOutbox:
    """Durable queue of events waiting to be published"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "event_outbox"

    def enqueue(self, event_type: DomainEvent, entity_type: str, entity_id: Any,
                data: Dict[str, Any]) -> EventPayload:
        """Store an event; call inside the transaction of the change it describes"""
        event = EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            data=data
        )
        record = event.to_dict()
        record['delivered'] = False
        record['delivered_at'] = None
        self.storage.save(self.table_name, event.event_id, record)
        return event

    def pending(self, limit: Optional[int] = None) -> List[EventPayload]:
        """Undelivered events, oldest first"""
        records = self.storage.find(self.table_name, {'delivered': False})
        records.sort(key=lambda r: r['timestamp'])
        if limit:
            records = records[:limit]
        return [EventPayload.from_dict(r) for r in records]

    def mark_delivered(self, event_id: str) -> None:
        record = self.storage.load(self.table_name, event_id)
        if record is None:
            return
        record['delivered'] = True
        record['delivered_at'] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table_name, event_id, record)

    def count_pending(self) -> int:
        return len(self.storage.find(self.table_name, {'delivered': False}))


class OutboxRelay:
    """Moves committed outbox events to the dispatcher"""

    def __init__(self, outbox: EventOutbox, dispatcher: EventDispatcher, enabled: bool = True):
        self.outbox = outbox
        self.dispatcher = dispatcher
        self.enabled = enabled
        self._lock = RLock()
        self.logger = logging.getLogger("allocation_engine.events")

    def relay_pending(self, limit: Optional[int] = None) -> int:
        """
        Publish pending events and mark them delivered.

        Does nothing while the calling thread is inside a transaction, since
        the events it would see might still be rolled back.
        """
        if not self.enabled or self.outbox.storage.in_transaction():
            return 0

        delivered = 0
        with self._lock:
            for event in self.outbox.pending(limit):
                self.dispatcher.publish(event)
                self.outbox.mark_delivered(event.event_id)
                delivered += 1

        if delivered:
            self.logger.debug(f"Relayed {delivered} outbox events")
        return delivered
