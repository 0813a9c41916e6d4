"""
Status Projection — read-only scheduler view for UIs.

Derived from the action store on demand; never authoritative. When attached to
the event bus the latest status per chat is recomputed on every action event,
so pollers get fresh numbers without hitting the store.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from autopilot.core.event_bus import ACTION_EVENTS, AutopilotEvent, AutopilotEventBus
from autopilot.core.models import ActionStatus, ScheduledAction, utcnow
from autopilot.stores.base import ActionStore

logger = logging.getLogger(__name__)

IMMINENT_SECONDS = 5
# Anything further out than this is a draft held for approval
APPROVAL_HOLD_THRESHOLD = timedelta(hours=1)


class SchedulerPhase(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    EXECUTING = "executing"


@dataclass
class SchedulerStatus:
    total_pending: int = 0
    total_executing: int = 0
    chat_pending_actions: List[ScheduledAction] = field(default_factory=list)
    chat_executing_action: Optional[ScheduledAction] = None
    next_action_time: Optional[datetime] = None
    seconds_until_next_action: Optional[int] = None
    phase: SchedulerPhase = SchedulerPhase.IDLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pending": self.total_pending,
            "total_executing": self.total_executing,
            "chat_pending_actions": [a.to_dict() for a in self.chat_pending_actions],
            "chat_executing_action": self.chat_executing_action.to_dict() if self.chat_executing_action else None,
            "next_action_time": self.next_action_time.isoformat() if self.next_action_time else None,
            "seconds_until_next_action": self.seconds_until_next_action,
            "phase": self.phase.value,
            "countdown": format_countdown(self.seconds_until_next_action),
        }


@dataclass
class PendingDraft:
    """A manual-approval draft waiting for the user."""
    action_id: str
    chat_id: str
    agent_id: str
    text: str
    message_id: Optional[str]
    scheduled_for: datetime
    parts: List[str] = field(default_factory=list)


def format_countdown(seconds: Optional[int]) -> str:
    if seconds is None:
        return ""
    if seconds <= 0:
        return "now"
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        mins, secs = divmod(seconds, 60)
        return f"{mins}m {secs}s" if secs else f"{mins}m"
    hours = seconds // 3600
    mins = (seconds % 3600) // 60
    return f"{hours}h {mins}m" if mins else f"{hours}h"


class StatusProjection:
    def __init__(self, actions: ActionStore, *, clock: Callable[[], datetime] = utcnow):
        self._actions = actions
        self._clock = clock
        self._latest: Dict[str, SchedulerStatus] = {}

    def attach(self, bus: AutopilotEventBus):
        for event_type in ACTION_EVENTS:
            bus.subscribe(event_type, self._on_action_event, subscriber_id="status-projection")

    async def _on_action_event(self, event: AutopilotEvent):
        self._latest[event.chat_id] = await self.compute(event.chat_id)

    def latest(self, chat_id: str) -> Optional[SchedulerStatus]:
        """Last status computed from an event, if any."""
        return self._latest.get(chat_id)

    async def compute(self, chat_id: Optional[str] = None) -> SchedulerStatus:
        pending = await self._actions.list_by_status(ActionStatus.PENDING)
        executing = await self._actions.list_by_status(ActionStatus.EXECUTING)

        status = SchedulerStatus(total_pending=len(pending), total_executing=len(executing))
        if chat_id is None:
            if executing:
                status.phase = SchedulerPhase.EXECUTING
            elif pending:
                status.phase = SchedulerPhase.WAITING
            return status

        status.chat_pending_actions = [a for a in pending if a.chat_id == chat_id]
        status.chat_executing_action = next((a for a in executing if a.chat_id == chat_id), None)

        if status.chat_pending_actions:
            next_action = status.chat_pending_actions[0]
            status.next_action_time = next_action.scheduled_for
            remaining = (next_action.scheduled_for - self._clock()).total_seconds()
            status.seconds_until_next_action = max(0, round(remaining))

        if status.chat_executing_action is not None:
            status.phase = SchedulerPhase.EXECUTING
        elif status.seconds_until_next_action is not None:
            if status.seconds_until_next_action <= IMMINENT_SECONDS:
                status.phase = SchedulerPhase.EXECUTING
            else:
                status.phase = SchedulerPhase.WAITING
        return status

    async def pending_draft(self, chat_id: str) -> Optional[PendingDraft]:
        """The held manual-approval draft of a chat, with all of its parts."""
        held_after = self._clock() + APPROVAL_HOLD_THRESHOLD
        held = [
            a for a in await self._actions.list_for_chat(chat_id, ActionStatus.PENDING)
            if a.scheduled_for > held_after and not a.approved
        ]
        if not held:
            return None

        first = held[0]
        group = [a for a in held if a.draft_id == first.draft_id] if first.draft_id else [first]
        parts = [a.message_text or "" for a in group]
        return PendingDraft(
            action_id=first.id,
            chat_id=chat_id,
            agent_id=first.agent_id,
            text="\n".join(parts),
            message_id=first.message_id,
            scheduled_for=first.scheduled_for,
            parts=parts,
        )
