"""
Database models for the conversation autopilot.

Enum-valued columns are stored as plain strings and decoded tolerantly by the
domain records (``autopilot.core.models``), so a bad value written by an older
build never breaks loading. Timestamps are naive UTC.
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import String, Text, DateTime, Integer, Boolean, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class AutopilotAgentRow(Base):
    """Reusable behavior template assignable to conversations."""
    __tablename__ = "autopilot_agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")
    goal: Mapped[str] = mapped_column(Text, default="")
    system_prompt: Mapped[str] = mapped_column(Text, default="")
    goal_completion_behavior: Mapped[str] = mapped_column(String(20), default="maintenance")
    behavior: Mapped[dict] = mapped_column(JSON, default=dict)  # AgentBehavior fields

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AutopilotChatConfigRow(Base):
    """Per-conversation automation state."""
    __tablename__ = "autopilot_chat_configs"

    chat_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    agent_id: Mapped[str] = mapped_column(String(36), index=True)
    mode: Mapped[str] = mapped_column(String(20), default="self-driving")
    status: Mapped[str] = mapped_column(String(20), default="inactive")
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    # Self-driving window
    self_driving_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    self_driving_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    self_driving_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Counters
    messages_handled: Mapped[int] = mapped_column(Integer, default=0)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, default=0)

    goal_completion_behavior_override: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ScheduledActionRow(Base):
    """One unit of future work."""
    __tablename__ = "autopilot_scheduled_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    seq: Mapped[int] = mapped_column(Integer, index=True)  # Insertion order, breaks scheduled_for ties
    chat_id: Mapped[str] = mapped_column(String(255), index=True)
    agent_id: Mapped[str] = mapped_column(String(36))
    type: Mapped[str] = mapped_column(String(30), default="send-message")
    scheduled_for: Mapped[datetime] = mapped_column(DateTime)
    message_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    draft_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_autopilot_actions_status_due", "status", "scheduled_for"),
    )


class ActivityRow(Base):
    """Append-only activity history."""
    __tablename__ = "autopilot_activity"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    seq: Mapped[int] = mapped_column(Integer, index=True)
    chat_id: Mapped[str] = mapped_column(String(255), index=True)
    agent_id: Mapped[str] = mapped_column(String(36))
    type: Mapped[str] = mapped_column(String(30))
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    message_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    draft_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra: Mapped[dict] = mapped_column("metadata", JSON, default=dict)


class HandoffSummaryRow(Base):
    """Summary generated when a goal-completed conversation is handed back."""
    __tablename__ = "autopilot_handoffs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    chat_id: Mapped[str] = mapped_column(String(255), index=True)
    agent_id: Mapped[str] = mapped_column(String(36))
    summary: Mapped[str] = mapped_column(Text)
    key_points: Mapped[list] = mapped_column(JSON, default=list)
    suggested_next_steps: Mapped[list] = mapped_column(JSON, default=list)
    goal_status: Mapped[str] = mapped_column(String(20), default="unclear")
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class SuggestionRow(Base):
    """Suggest-mode drafts surfaced to the user."""
    __tablename__ = "autopilot_suggestions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    chat_id: Mapped[str] = mapped_column(String(255), index=True)
    text: Mapped[str] = mapped_column(Text)
    message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
