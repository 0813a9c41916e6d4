"""
SQLAlchemy-backed stores.

Rows are converted to plain dicts and decoded through the domain records'
``from_dict`` so corrupt persisted values fall back to defaults instead of
raising.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from autopilot.core.models import (
    ActionStatus,
    ActivityEntry,
    ActivityType,
    Agent,
    AssistantSuggestion,
    ChatAutopilotConfig,
    GoalStatus,
    HandoffSummary,
    ScheduledAction,
    coerce_datetime,
    coerce_enum,
    utcnow,
)
from autopilot.db.models import (
    ActivityRow,
    AutopilotAgentRow,
    AutopilotChatConfigRow,
    HandoffSummaryRow,
    ScheduledActionRow,
    SuggestionRow,
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

logger = logging.getLogger(__name__)


def _naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC for storage."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _row_dict(row) -> Dict[str, Any]:
    return {attr.key: getattr(row, attr.key) for attr in row.__mapper__.column_attrs}


class _SqlStore:
    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker


# ── Agents ───────────────────────────────────────────────

class SqlAgentStore(_SqlStore, AgentStore):
    async def get(self, agent_id: str) -> Optional[Agent]:
        async with self._session_maker() as db:
            row = await db.get(AutopilotAgentRow, agent_id)
            return Agent.from_dict(_row_dict(row)) if row else None

    async def list(self) -> List[Agent]:
        async with self._session_maker() as db:
            result = await db.execute(select(AutopilotAgentRow).order_by(AutopilotAgentRow.created_at))
            return [Agent.from_dict(_row_dict(r)) for r in result.scalars()]

    async def save(self, agent: Agent) -> Agent:
        async with self._session_maker() as db:
            row = await db.get(AutopilotAgentRow, agent.id)
            if row is None:
                row = AutopilotAgentRow(id=agent.id)
                db.add(row)
            row.name = agent.name
            row.description = agent.description
            row.goal = agent.goal
            row.system_prompt = agent.system_prompt
            row.goal_completion_behavior = agent.goal_completion_behavior.value
            row.behavior = agent.behavior.to_dict()
            row.created_at = _naive(agent.created_at)
            row.updated_at = _naive(agent.updated_at)
            await db.commit()
        return agent

    async def delete(self, agent_id: str) -> bool:
        async with self._session_maker() as db:
            result = await db.execute(delete(AutopilotAgentRow).where(AutopilotAgentRow.id == agent_id))
            await db.commit()
            return result.rowcount > 0


# ── Chat configs ─────────────────────────────────────────

class SqlConfigStore(_SqlStore, ConfigStore):
    async def get(self, chat_id: str) -> Optional[ChatAutopilotConfig]:
        async with self._session_maker() as db:
            row = await db.get(AutopilotChatConfigRow, chat_id)
            return ChatAutopilotConfig.from_dict(_row_dict(row)) if row else None

    async def list(self) -> List[ChatAutopilotConfig]:
        async with self._session_maker() as db:
            result = await db.execute(select(AutopilotChatConfigRow))
            return [ChatAutopilotConfig.from_dict(_row_dict(r)) for r in result.scalars()]

    async def save(self, config: ChatAutopilotConfig) -> ChatAutopilotConfig:
        override = config.goal_completion_behavior_override
        async with self._session_maker() as db:
            row = await db.get(AutopilotChatConfigRow, config.chat_id)
            if row is None:
                row = AutopilotChatConfigRow(chat_id=config.chat_id)
                db.add(row)
            row.agent_id = config.agent_id
            row.mode = config.mode.value
            row.status = config.status.value
            row.enabled = config.enabled
            row.self_driving_duration_minutes = config.self_driving_duration_minutes
            row.self_driving_started_at = _naive(config.self_driving_started_at)
            row.self_driving_expires_at = _naive(config.self_driving_expires_at)
            row.messages_handled = config.messages_handled
            row.last_activity_at = _naive(config.last_activity_at)
            row.last_error = config.last_error
            row.error_count = config.error_count
            row.goal_completion_behavior_override = override.value if override else None
            row.created_at = _naive(config.created_at)
            row.updated_at = _naive(config.updated_at)
            await db.commit()
        return config

    async def delete(self, chat_id: str) -> bool:
        async with self._session_maker() as db:
            result = await db.execute(
                delete(AutopilotChatConfigRow).where(AutopilotChatConfigRow.chat_id == chat_id)
            )
            await db.commit()
            return result.rowcount > 0


# ── Scheduled actions ────────────────────────────────────

class SqlActionStore(_SqlStore, ActionStore):
    _due_order = (ScheduledActionRow.scheduled_for, ScheduledActionRow.seq)

    @staticmethod
    def _decode(row: ScheduledActionRow) -> ScheduledAction:
        return ScheduledAction.from_dict(_row_dict(row))

    @staticmethod
    def _apply(row: ScheduledActionRow, action: ScheduledAction):
        row.chat_id = action.chat_id
        row.agent_id = action.agent_id
        row.type = action.type.value
        row.scheduled_for = _naive(action.scheduled_for)
        row.message_text = action.message_text
        row.message_id = action.message_id
        row.draft_id = action.draft_id
        row.status = action.status.value
        row.attempts = action.attempts
        row.last_error = action.last_error
        row.approved = action.approved
        row.created_at = _naive(action.created_at)

    @staticmethod
    async def _new_row(db, action_id: str) -> ScheduledActionRow:
        next_seq = await db.scalar(select(func.coalesce(func.max(ScheduledActionRow.seq), 0) + 1))
        row = ScheduledActionRow(id=action_id, seq=next_seq)
        db.add(row)
        return row

    async def add(self, action: ScheduledAction) -> ScheduledAction:
        async with self._session_maker() as db:
            row = await self._new_row(db, action.id)
            self._apply(row, action)
            await db.commit()
        return action

    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        async with self._session_maker() as db:
            row = await db.get(ScheduledActionRow, action_id)
            return self._decode(row) if row else None

    async def save(self, action: ScheduledAction) -> ScheduledAction:
        async with self._session_maker() as db:
            row = await db.get(ScheduledActionRow, action.id)
            if row is None:
                row = await self._new_row(db, action.id)
            self._apply(row, action)
            await db.commit()
        return action

    async def list_for_chat(
        self,
        chat_id: str,
        status: Optional[ActionStatus] = None,
    ) -> List[ScheduledAction]:
        query = select(ScheduledActionRow).where(ScheduledActionRow.chat_id == chat_id)
        if status is not None:
            query = query.where(ScheduledActionRow.status == status.value)
        async with self._session_maker() as db:
            result = await db.execute(query.order_by(*self._due_order))
            return [self._decode(r) for r in result.scalars()]

    async def list_by_status(self, status: ActionStatus) -> List[ScheduledAction]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(ScheduledActionRow)
                .where(ScheduledActionRow.status == status.value)
                .order_by(*self._due_order)
            )
            return [self._decode(r) for r in result.scalars()]

    async def next_due(self, now: datetime) -> Optional[ScheduledAction]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(ScheduledActionRow)
                .where(
                    ScheduledActionRow.status == ActionStatus.PENDING.value,
                    ScheduledActionRow.scheduled_for <= _naive(now),
                )
                .order_by(*self._due_order)
                .limit(1)
            )
            row = result.scalars().first()
            return self._decode(row) if row else None

    async def claim(self, action_id: str) -> Optional[ScheduledAction]:
        async with self._session_maker() as db:
            result = await db.execute(
                update(ScheduledActionRow)
                .where(
                    ScheduledActionRow.id == action_id,
                    ScheduledActionRow.status == ActionStatus.PENDING.value,
                )
                .values(status=ActionStatus.EXECUTING.value)
            )
            await db.commit()
            if result.rowcount != 1:
                return None
            row = await db.get(ScheduledActionRow, action_id, populate_existing=True)
            return self._decode(row) if row else None

    async def update(self, action_id: str, **changes: Any) -> Optional[ScheduledAction]:
        # Column-level write so a stale read never reverts another writer's status
        values = {
            key: _naive(value) if isinstance(value, datetime)
            else value.value if isinstance(value, Enum)
            else value
            for key, value in changes.items()
        }
        async with self._session_maker() as db:
            if values:
                await db.execute(
                    update(ScheduledActionRow)
                    .where(ScheduledActionRow.id == action_id)
                    .values(**values)
                )
                await db.commit()
            row = await db.get(ScheduledActionRow, action_id, populate_existing=True)
            return self._decode(row) if row else None

    async def cancel(self, action_id: str) -> bool:
        async with self._session_maker() as db:
            result = await db.execute(
                update(ScheduledActionRow)
                .where(
                    ScheduledActionRow.id == action_id,
                    ScheduledActionRow.status == ActionStatus.PENDING.value,
                )
                .values(status=ActionStatus.CANCELLED.value)
            )
            await db.commit()
            return result.rowcount == 1

    async def cancel_chat(self, chat_id: str, message_id: Optional[str] = None) -> int:
        query = (
            update(ScheduledActionRow)
            .where(
                ScheduledActionRow.chat_id == chat_id,
                ScheduledActionRow.status == ActionStatus.PENDING.value,
            )
            .values(status=ActionStatus.CANCELLED.value)
        )
        if message_id is not None:
            query = query.where(ScheduledActionRow.message_id == message_id)
        async with self._session_maker() as db:
            result = await db.execute(query)
            await db.commit()
            return result.rowcount

    async def cleanup(self, failed_before: datetime) -> int:
        async with self._session_maker() as db:
            finished = await db.execute(
                delete(ScheduledActionRow).where(
                    ScheduledActionRow.status.in_(
                        [ActionStatus.COMPLETED.value, ActionStatus.CANCELLED.value]
                    )
                )
            )
            stale = await db.execute(
                delete(ScheduledActionRow).where(
                    ScheduledActionRow.status == ActionStatus.FAILED.value,
                    ScheduledActionRow.created_at < _naive(failed_before),
                )
            )
            await db.commit()
            return finished.rowcount + stale.rowcount


# ── Activity log ─────────────────────────────────────────

class SqlActivityLog(_SqlStore, ActivityLog):
    def __init__(self, session_maker: async_sessionmaker, max_entries: int = 500):
        super().__init__(session_maker)
        self._max_entries = max_entries

    @staticmethod
    def _decode(row: ActivityRow) -> ActivityEntry:
        return ActivityEntry(
            id=row.id,
            chat_id=row.chat_id,
            agent_id=row.agent_id,
            type=coerce_enum(row.type, ActivityType, ActivityType.ERROR),
            timestamp=coerce_datetime(row.timestamp) or utcnow(),
            message_text=row.message_text,
            draft_text=row.draft_text,
            error_message=row.error_message,
            metadata=row.extra if isinstance(row.extra, dict) else {},
        )

    async def append(self, entry: ActivityEntry) -> ActivityEntry:
        async with self._session_maker() as db:
            next_seq = await db.scalar(select(func.coalesce(func.max(ActivityRow.seq), 0) + 1))
            db.add(ActivityRow(
                id=entry.id,
                seq=next_seq,
                chat_id=entry.chat_id,
                agent_id=entry.agent_id,
                type=entry.type.value,
                timestamp=_naive(entry.timestamp),
                message_text=entry.message_text,
                draft_text=entry.draft_text,
                error_message=entry.error_message,
                extra=entry.metadata or {},
            ))
            # Prune past the cap, oldest first
            cutoff = next_seq - self._max_entries
            if cutoff > 0:
                await db.execute(delete(ActivityRow).where(ActivityRow.seq <= cutoff))
            await db.commit()
        return entry

    async def list(self, chat_id: Optional[str] = None, limit: int = 100) -> List[ActivityEntry]:
        query = select(ActivityRow)
        if chat_id is not None:
            query = query.where(ActivityRow.chat_id == chat_id)
        async with self._session_maker() as db:
            result = await db.execute(query.order_by(ActivityRow.seq.desc()).limit(limit))
            return [self._decode(r) for r in result.scalars()]

    async def clear(self, chat_id: Optional[str] = None) -> int:
        query = delete(ActivityRow)
        if chat_id is not None:
            query = query.where(ActivityRow.chat_id == chat_id)
        async with self._session_maker() as db:
            result = await db.execute(query)
            await db.commit()
            return result.rowcount


# ── Handoffs and suggestions ─────────────────────────────

class SqlHandoffStore(_SqlStore, HandoffStore):
    async def save(self, summary: HandoffSummary) -> HandoffSummary:
        async with self._session_maker() as db:
            db.add(HandoffSummaryRow(
                chat_id=summary.chat_id,
                agent_id=summary.agent_id,
                summary=summary.summary,
                key_points=list(summary.key_points),
                suggested_next_steps=list(summary.suggested_next_steps),
                goal_status=summary.goal_status.value,
                generated_at=_naive(summary.generated_at),
            ))
            await db.commit()
        return summary

    async def get(self, chat_id: str) -> Optional[HandoffSummary]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(HandoffSummaryRow)
                .where(HandoffSummaryRow.chat_id == chat_id)
                .order_by(HandoffSummaryRow.generated_at.desc())
                .limit(1)
            )
            row = result.scalars().first()
            if row is None:
                return None
            return HandoffSummary(
                chat_id=row.chat_id,
                agent_id=row.agent_id,
                summary=row.summary,
                key_points=list(row.key_points or []),
                suggested_next_steps=list(row.suggested_next_steps or []),
                goal_status=coerce_enum(row.goal_status, GoalStatus, GoalStatus.UNCLEAR),
                generated_at=coerce_datetime(row.generated_at) or utcnow(),
            )


class SqlSuggestionStore(_SqlStore, SuggestionStore):
    async def add(self, suggestion: AssistantSuggestion) -> AssistantSuggestion:
        async with self._session_maker() as db:
            db.add(SuggestionRow(
                id=suggestion.id,
                chat_id=suggestion.chat_id,
                text=suggestion.text,
                message_id=suggestion.message_id,
                created_at=_naive(suggestion.created_at),
            ))
            await db.commit()
        return suggestion

    async def list(self, chat_id: str) -> List[AssistantSuggestion]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(SuggestionRow)
                .where(SuggestionRow.chat_id == chat_id)
                .order_by(SuggestionRow.created_at)
            )
            return [
                AssistantSuggestion(
                    id=r.id,
                    chat_id=r.chat_id,
                    text=r.text,
                    message_id=r.message_id,
                    created_at=coerce_datetime(r.created_at) or utcnow(),
                )
                for r in result.scalars()
            ]

    async def clear(self, chat_id: str) -> int:
        async with self._session_maker() as db:
            result = await db.execute(delete(SuggestionRow).where(SuggestionRow.chat_id == chat_id))
            await db.commit()
            return result.rowcount


def create_sql_stores(session_maker: async_sessionmaker, activity_max_entries: int = 500) -> AutopilotStores:
    return AutopilotStores(
        agents=SqlAgentStore(session_maker),
        configs=SqlConfigStore(session_maker),
        actions=SqlActionStore(session_maker),
        activity=SqlActivityLog(session_maker, max_entries=activity_max_entries),
        handoffs=SqlHandoffStore(session_maker),
        suggestions=SqlSuggestionStore(session_maker),
    )
