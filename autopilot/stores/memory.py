"""In-process stores. Used by the test-suite and the ``memory`` storage backend."""

import itertools
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from autopilot.core.models import (
    ActionStatus,
    ActivityEntry,
    Agent,
    AssistantSuggestion,
    ChatAutopilotConfig,
    HandoffSummary,
    ScheduledAction,
)
from autopilot.stores.base import (
    ActionStore,
    ActivityLog,
    AgentStore,
    AutopilotStores,
    ConfigStore,
    HandoffStore,
    SuggestionStore,
)

# Records are copied on the way in and out so callers never share mutable state
# with the store.


class MemoryAgentStore(AgentStore):
    def __init__(self):
        self._agents: Dict[str, Agent] = {}

    async def get(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return replace(agent) if agent else None

    async def list(self) -> List[Agent]:
        return [replace(a) for a in self._agents.values()]

    async def save(self, agent: Agent) -> Agent:
        self._agents[agent.id] = replace(agent)
        return agent

    async def delete(self, agent_id: str) -> bool:
        return self._agents.pop(agent_id, None) is not None


class MemoryConfigStore(ConfigStore):
    def __init__(self):
        self._configs: Dict[str, ChatAutopilotConfig] = {}

    async def get(self, chat_id: str) -> Optional[ChatAutopilotConfig]:
        config = self._configs.get(chat_id)
        return replace(config) if config else None

    async def list(self) -> List[ChatAutopilotConfig]:
        return [replace(c) for c in self._configs.values()]

    async def save(self, config: ChatAutopilotConfig) -> ChatAutopilotConfig:
        self._configs[config.chat_id] = replace(config)
        return config

    async def delete(self, chat_id: str) -> bool:
        return self._configs.pop(chat_id, None) is not None


class MemoryActionStore(ActionStore):
    def __init__(self):
        self._actions: Dict[str, Tuple[int, ScheduledAction]] = {}
        self._seq = itertools.count()

    def _ordered(self, actions) -> List[ScheduledAction]:
        ordered = sorted(actions, key=lambda pair: (pair[1].scheduled_for, pair[0]))
        return [replace(a) for _, a in ordered]

    async def add(self, action: ScheduledAction) -> ScheduledAction:
        self._actions[action.id] = (next(self._seq), replace(action))
        return action

    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        entry = self._actions.get(action_id)
        return replace(entry[1]) if entry else None

    async def save(self, action: ScheduledAction) -> ScheduledAction:
        entry = self._actions.get(action.id)
        seq = entry[0] if entry else next(self._seq)
        self._actions[action.id] = (seq, replace(action))
        return action

    async def list_for_chat(
        self,
        chat_id: str,
        status: Optional[ActionStatus] = None,
    ) -> List[ScheduledAction]:
        return self._ordered(
            pair for pair in self._actions.values()
            if pair[1].chat_id == chat_id and (status is None or pair[1].status == status)
        )

    async def list_by_status(self, status: ActionStatus) -> List[ScheduledAction]:
        return self._ordered(pair for pair in self._actions.values() if pair[1].status == status)

    async def next_due(self, now: datetime) -> Optional[ScheduledAction]:
        due = [
            pair for pair in self._actions.values()
            if pair[1].status == ActionStatus.PENDING and pair[1].scheduled_for <= now
        ]
        if not due:
            return None
        return self._ordered(due)[0]

    async def claim(self, action_id: str) -> Optional[ScheduledAction]:
        entry = self._actions.get(action_id)
        if entry is None or entry[1].status != ActionStatus.PENDING:
            return None
        seq, action = entry
        claimed = replace(action, status=ActionStatus.EXECUTING)
        self._actions[action_id] = (seq, claimed)
        return replace(claimed)

    async def cleanup(self, failed_before: datetime) -> int:
        doomed = [
            action_id for action_id, (_, a) in self._actions.items()
            if a.status in (ActionStatus.COMPLETED, ActionStatus.CANCELLED)
            or (a.status == ActionStatus.FAILED and a.created_at < failed_before)
        ]
        for action_id in doomed:
            del self._actions[action_id]
        return len(doomed)


class MemoryActivityLog(ActivityLog):
    def __init__(self, max_entries: int = 500):
        self._entries: deque = deque(maxlen=max_entries)

    async def append(self, entry: ActivityEntry) -> ActivityEntry:
        self._entries.append(entry)
        return entry

    async def list(self, chat_id: Optional[str] = None, limit: int = 100) -> List[ActivityEntry]:
        entries = [e for e in reversed(self._entries) if chat_id is None or e.chat_id == chat_id]
        return entries[:limit]

    async def clear(self, chat_id: Optional[str] = None) -> int:
        if chat_id is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        kept = [e for e in self._entries if e.chat_id != chat_id]
        count = len(self._entries) - len(kept)
        self._entries = deque(kept, maxlen=self._entries.maxlen)
        return count


class MemoryHandoffStore(HandoffStore):
    def __init__(self):
        self._summaries: Dict[str, HandoffSummary] = {}

    async def save(self, summary: HandoffSummary) -> HandoffSummary:
        self._summaries[summary.chat_id] = summary
        return summary

    async def get(self, chat_id: str) -> Optional[HandoffSummary]:
        return self._summaries.get(chat_id)


class MemorySuggestionStore(SuggestionStore):
    def __init__(self):
        self._suggestions: Dict[str, List[AssistantSuggestion]] = {}

    async def add(self, suggestion: AssistantSuggestion) -> AssistantSuggestion:
        self._suggestions.setdefault(suggestion.chat_id, []).append(suggestion)
        return suggestion

    async def list(self, chat_id: str) -> List[AssistantSuggestion]:
        return list(self._suggestions.get(chat_id, []))

    async def clear(self, chat_id: str) -> int:
        return len(self._suggestions.pop(chat_id, []))


def create_memory_stores(activity_max_entries: int = 500) -> AutopilotStores:
    return AutopilotStores(
        agents=MemoryAgentStore(),
        configs=MemoryConfigStore(),
        actions=MemoryActionStore(),
        activity=MemoryActivityLog(max_entries=activity_max_entries),
        handoffs=MemoryHandoffStore(),
        suggestions=MemorySuggestionStore(),
    )
