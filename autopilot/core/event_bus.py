"""
Autopilot Event Bus — typed pub/sub between the scheduler, the engine and UI consumers.

The scheduler and the decision engine publish, the status projection and the
HTTP layer subscribe. Nothing published here is ever read back by the core.
Handlers may be sync or async; a failing handler is recorded as a dead letter
and never affects the publisher.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class AutopilotEventType(str, Enum):
    ACTION_SCHEDULED = "action-scheduled"
    ACTION_EXECUTING = "action-executing"
    ACTION_COMPLETED = "action-completed"
    ACTION_FAILED = "action-failed"
    ACTIVITY_ADDED = "activity-added"
    CONFIG_CHANGED = "config-changed"


ACTION_EVENTS = (
    AutopilotEventType.ACTION_SCHEDULED,
    AutopilotEventType.ACTION_EXECUTING,
    AutopilotEventType.ACTION_COMPLETED,
    AutopilotEventType.ACTION_FAILED,
)


@dataclass
class AutopilotEvent:
    """An event published to the bus."""
    type: AutopilotEventType
    chat_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")

    @property
    def action_id(self) -> Optional[str]:
        return self.data.get("action_id")

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "chat_id": self.chat_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


Handler = Callable[[AutopilotEvent], Any]


@dataclass
class Subscription:
    """A subscription to one event type (or all, when ``type`` is None)."""
    type: Optional[AutopilotEventType]
    handler: Handler
    subscriber_id: str = ""
    is_async: bool = False


class AutopilotEventBus:
    """
    Fire-and-forget event delivery.

    - Subscriptions per event type, or to everything with ``type=None``
    - Sync and async handlers
    - Bounded history for debugging
    - Dead letter queue for failed deliveries
    """

    def __init__(self, history_size: int = 200):
        self._subscriptions: List[Subscription] = []
        self._history: deque = deque(maxlen=history_size)
        self._dead_letters: deque = deque(maxlen=100)
        self._stats = {
            "published": 0,
            "delivered": 0,
            "failed": 0,
        }

    def subscribe(
        self,
        event_type: Optional[AutopilotEventType],
        handler: Handler,
        subscriber_id: str = "",
    ) -> Subscription:
        sub = Subscription(
            type=event_type,
            handler=handler,
            subscriber_id=subscriber_id,
            is_async=asyncio.iscoroutinefunction(handler),
        )
        self._subscriptions.append(sub)
        label = event_type.value if event_type else "*"
        logger.debug(f"Subscribed {subscriber_id or 'anonymous'} to '{label}'")
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            return True
        return False

    def unsubscribe_all(self, subscriber_id: str) -> int:
        before = len(self._subscriptions)
        self._subscriptions = [s for s in self._subscriptions if s.subscriber_id != subscriber_id]
        return before - len(self._subscriptions)

    async def publish(self, event: AutopilotEvent) -> int:
        """Publish an event. Returns number of handlers notified."""
        self._stats["published"] += 1
        self._history.append(event)

        delivered = 0
        for sub in list(self._subscriptions):
            if sub.type is not None and sub.type != event.type:
                continue
            try:
                if sub.is_async:
                    await sub.handler(event)
                else:
                    sub.handler(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Event handler error for '{event.type.value}' in {sub.subscriber_id}: {e}")
                self._dead_letters.append({
                    "event": event.to_dict(),
                    "error": str(e),
                    "subscriber": sub.subscriber_id,
                })
                self._stats["failed"] += 1

        self._stats["delivered"] += delivered
        return delivered

    async def emit(self, event_type: AutopilotEventType, chat_id: str, **data: Any) -> int:
        """Convenience wrapper: ``await bus.emit(ACTION_COMPLETED, chat_id, action_id=...)``."""
        return await self.publish(AutopilotEvent(type=event_type, chat_id=chat_id, data=data))

    def get_history(
        self,
        event_type: Optional[AutopilotEventType] = None,
        chat_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        if chat_id:
            events = [e for e in events if e.chat_id == chat_id]
        return [e.to_dict() for e in events[-limit:]]

    def get_dead_letters(self, limit: int = 20) -> List[dict]:
        return list(self._dead_letters)[-limit:]

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "total_subscriptions": len(self._subscriptions),
            "history_size": len(self._history),
            "dead_letters": len(self._dead_letters),
        }

    def clear_history(self):
        self._history.clear()
