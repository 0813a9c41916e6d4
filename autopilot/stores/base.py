"""
Persistence contracts for the autopilot core.

The engine and scheduler only ever talk to these abstract stores; the memory
and SQL backends implement them. Each record is written as a whole by a single
store call; no multi-record transactions are needed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, List, Optional

from autopilot.core.models import (
    ActionStatus,
    ActivityEntry,
    Agent,
    AssistantSuggestion,
    ChatAutopilotConfig,
    HandoffSummary,
    ScheduledAction,
    utcnow,
)


class AgentStore(ABC):
    @abstractmethod
    async def get(self, agent_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def list(self) -> List[Agent]:
        ...

    @abstractmethod
    async def save(self, agent: Agent) -> Agent:
        """Insert or replace an agent."""

    @abstractmethod
    async def delete(self, agent_id: str) -> bool:
        ...


class ConfigStore(ABC):
    @abstractmethod
    async def get(self, chat_id: str) -> Optional[ChatAutopilotConfig]:
        ...

    @abstractmethod
    async def list(self) -> List[ChatAutopilotConfig]:
        ...

    @abstractmethod
    async def save(self, config: ChatAutopilotConfig) -> ChatAutopilotConfig:
        """Insert or replace the config for ``config.chat_id``."""

    @abstractmethod
    async def delete(self, chat_id: str) -> bool:
        ...

    async def update(self, chat_id: str, **changes: Any) -> Optional[ChatAutopilotConfig]:
        """Apply field changes to a stored config. Returns None if it doesn't exist."""
        config = await self.get(chat_id)
        if config is None:
            return None
        changes.setdefault("updated_at", utcnow())
        updated = replace(config, **changes)
        return await self.save(updated)


class ActionStore(ABC):
    @abstractmethod
    async def add(self, action: ScheduledAction) -> ScheduledAction:
        ...

    @abstractmethod
    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        ...

    @abstractmethod
    async def save(self, action: ScheduledAction) -> ScheduledAction:
        """Replace an existing action, keeping its insertion position."""

    @abstractmethod
    async def list_for_chat(
        self,
        chat_id: str,
        status: Optional[ActionStatus] = None,
    ) -> List[ScheduledAction]:
        """Actions of one chat in due order."""

    @abstractmethod
    async def list_by_status(self, status: ActionStatus) -> List[ScheduledAction]:
        """Actions in ``status`` across all chats, in due order."""

    @abstractmethod
    async def next_due(self, now: datetime) -> Optional[ScheduledAction]:
        """
        The pending action with the smallest ``scheduled_for <= now`` across
        all chats. Ties go to the action inserted first.
        """

    @abstractmethod
    async def claim(self, action_id: str) -> Optional[ScheduledAction]:
        """
        Move a pending action to executing as one step.

        Returns the claimed action, or None when it is missing or no longer
        pending (for example cancelled after it was picked).
        """

    @abstractmethod
    async def cleanup(self, failed_before: datetime) -> int:
        """
        Remove completed and cancelled actions, and failed actions created
        before ``failed_before``. Returns the number removed.
        """

    async def list_pending(self) -> List[ScheduledAction]:
        return await self.list_by_status(ActionStatus.PENDING)

    async def update(self, action_id: str, **changes: Any) -> Optional[ScheduledAction]:
        action = await self.get(action_id)
        if action is None:
            return None
        return await self.save(replace(action, **changes))

    async def cancel(self, action_id: str) -> bool:
        """Cancel one action if it is still pending."""
        action = await self.get(action_id)
        if action is None or not action.is_pending:
            return False
        await self.save(replace(action, status=ActionStatus.CANCELLED))
        return True

    async def cancel_chat(self, chat_id: str, message_id: Optional[str] = None) -> int:
        """Cancel the pending actions of a chat, optionally only those drafted from ``message_id``."""
        cancelled = 0
        for action in await self.list_for_chat(chat_id, ActionStatus.PENDING):
            if message_id is not None and action.message_id != message_id:
                continue
            await self.save(replace(action, status=ActionStatus.CANCELLED))
            cancelled += 1
        return cancelled


class ActivityLog(ABC):
    """Append-only activity history. Oldest entries are pruned past the cap."""

    @abstractmethod
    async def append(self, entry: ActivityEntry) -> ActivityEntry:
        ...

    @abstractmethod
    async def list(self, chat_id: Optional[str] = None, limit: int = 100) -> List[ActivityEntry]:
        """Newest first."""

    @abstractmethod
    async def clear(self, chat_id: Optional[str] = None) -> int:
        ...


class HandoffStore(ABC):
    @abstractmethod
    async def save(self, summary: HandoffSummary) -> HandoffSummary:
        ...

    @abstractmethod
    async def get(self, chat_id: str) -> Optional[HandoffSummary]:
        """The latest summary generated for a chat."""


class SuggestionStore(ABC):
    """Suggest-mode side channel: drafts shown to the user, never sent."""

    @abstractmethod
    async def add(self, suggestion: AssistantSuggestion) -> AssistantSuggestion:
        ...

    @abstractmethod
    async def list(self, chat_id: str) -> List[AssistantSuggestion]:
        ...

    @abstractmethod
    async def clear(self, chat_id: str) -> int:
        ...


@dataclass
class AutopilotStores:
    """Everything the core persists, bundled for injection."""
    agents: AgentStore
    configs: ConfigStore
    actions: ActionStore
    activity: ActivityLog
    handoffs: HandoffStore
    suggestions: SuggestionStore
