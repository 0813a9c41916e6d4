"""Activity log writes. Every entry is also announced on the event bus for live UIs."""

import logging
from datetime import datetime
from typing import Any, Optional

from autopilot.core.event_bus import AutopilotEventBus, AutopilotEventType
from autopilot.core.models import ActivityEntry, ActivityType
from autopilot.stores.base import ActivityLog

logger = logging.getLogger(__name__)


async def record_activity(
    log: ActivityLog,
    bus: Optional[AutopilotEventBus],
    chat_id: str,
    agent_id: str,
    activity_type: ActivityType,
    *,
    timestamp: Optional[datetime] = None,
    message_text: Optional[str] = None,
    draft_text: Optional[str] = None,
    error_message: Optional[str] = None,
    **metadata: Any,
) -> ActivityEntry:
    entry = ActivityEntry(
        chat_id=chat_id,
        agent_id=agent_id,
        type=activity_type,
        message_text=message_text,
        draft_text=draft_text,
        error_message=error_message,
        metadata=metadata,
    )
    if timestamp is not None:
        entry.timestamp = timestamp

    await log.append(entry)
    logger.debug(f"[ACTIVITY] {chat_id}: {activity_type.value}")

    if bus is not None:
        await bus.emit(
            AutopilotEventType.ACTIVITY_ADDED,
            chat_id,
            entry_id=entry.id,
            activity_type=activity_type.value,
        )
    return entry
