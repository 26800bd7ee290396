"""
Event Bus - Centralized event coordination system

This module provides a central in-process event bus that:
1. Receives lifecycle transitions from the Lifecycle State Machine
2. Receives daemon reachability changes from the Daemon Registry
3. Fans events out to subscribers (the Streaming Multiplexer, API websockets)

Events flow: Service → EventBus → Subscribers

Subscriber failures are logged and never propagate back to the emitter, so a
broken subscriber cannot roll back a state transition that already happened.
"""

import logging
from typing import Dict, Any, Optional, List, Callable, Awaitable
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Standard event types in the system"""
    # Container lifecycle events
    CONTAINER_STATE_CHANGED = "container_state_changed"
    CONTAINER_DELETED = "container_deleted"

    # Daemon events
    DAEMON_ONLINE = "daemon_online"
    DAEMON_OFFLINE = "daemon_offline"


class Event:
    """
    Standard event object passed through the event bus
    """
    def __init__(
        self,
        event_type: EventType,
        scope_type: str,  # 'container', 'daemon'
        scope_id: str,
        daemon_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ):
        self.event_type = event_type
        self.scope_type = scope_type
        self.scope_id = scope_id
        self.daemon_id = daemon_id
        self.data = data or {}
        self.timestamp = timestamp or datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging/processing"""
        return {
            'event_type': self.event_type.value if isinstance(self.event_type, EventType) else str(self.event_type),
            'scope_type': self.scope_type,
            'scope_id': self.scope_id,
            'daemon_id': self.daemon_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat()
        }


class EventBus:
    """
    Centralized event bus for coordinating lifecycle and daemon events

    Usage:
        bus = EventBus()
        bus.subscribe(EventType.CONTAINER_STATE_CHANGED, multiplexer.on_state_changed)
        await bus.emit(Event(
            event_type=EventType.CONTAINER_STATE_CHANGED,
            scope_type='container',
            scope_id=container_id,
            daemon_id=daemon_id,
            data={'old_state': 'running', 'new_state': 'stopping'}
        ))
    """

    def __init__(self):
        self.subscribers: Dict[str, List[Callable[[Event], Awaitable[None]]]] = {}
        logger.info("EventBus initialized")

    def subscribe(self, event_type: EventType, handler: Callable[[Event], Awaitable[None]]):
        """
        Subscribe to specific event type

        Args:
            event_type: Type of event to subscribe to
            handler: Async function that handles the event
        """
        event_type_str = event_type.value if isinstance(event_type, EventType) else str(event_type)
        if event_type_str not in self.subscribers:
            self.subscribers[event_type_str] = []
        if handler in self.subscribers[event_type_str]:
            return
        self.subscribers[event_type_str].append(handler)
        logger.debug(f"Subscribed handler to event type: {event_type_str}")

    def unsubscribe(self, event_type: EventType, handler: Callable[[Event], Awaitable[None]]):
        """
        Unsubscribe from specific event type

        Args:
            event_type: Type of event to unsubscribe from
            handler: Handler function to remove
        """
        event_type_str = event_type.value if isinstance(event_type, EventType) else str(event_type)
        if event_type_str in self.subscribers:
            try:
                self.subscribers[event_type_str].remove(handler)
                if not self.subscribers[event_type_str]:
                    del self.subscribers[event_type_str]
                logger.debug(f"Unsubscribed handler from event type: {event_type_str}")
            except ValueError:
                logger.warning(f"Handler not found in subscribers for event type: {event_type_str}")

    async def emit(self, event: Event):
        """
        Emit an event to every subscriber of its type, in subscription order

        Args:
            event: Event object to emit
        """
        logger.debug(f"EventBus: Emitting {event.event_type.value} for {event.scope_type}:{event.scope_id[:8]}")
        await self._notify_subscribers(event)

    async def _notify_subscribers(self, event: Event):
        """Notify all subscribers of this event type"""
        event_type_str = event.event_type.value if isinstance(event.event_type, EventType) else str(event.event_type)
        # Copy so handlers may unsubscribe while being notified
        handlers = list(self.subscribers.get(event_type_str, []))

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"EventBus: Error in subscriber handler: {e}", exc_info=True)


# Global singleton instance
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get or create global event bus instance"""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
