"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from autopilot.core.models import AutopilotMode, GoalCompletionBehavior


# ============== Agents ==============

class AgentCreate(BaseModel):
    id: Optional[str] = Field(None, min_length=1, max_length=36)  # Generated when omitted
    name: str = Field(min_length=1, max_length=200)
    goal: str = ""
    system_prompt: str = ""
    description: str = ""
    goal_completion_behavior: GoalCompletionBehavior = GoalCompletionBehavior.MAINTENANCE
    behavior: Dict[str, Any] = Field(default_factory=dict)  # Unknown or invalid keys fall back to defaults


class AgentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    goal: Optional[str] = None
    system_prompt: Optional[str] = None
    description: Optional[str] = None
    goal_completion_behavior: Optional[GoalCompletionBehavior] = None
    behavior: Optional[Dict[str, Any]] = None  # Merged over the current behavior


# ============== Chat controls ==============

class EnableRequest(BaseModel):
    agent_id: str
    mode: AutopilotMode = AutopilotMode.SELF_DRIVING
    duration_minutes: Optional[int] = Field(None, ge=1)  # Self-driving only; None = unbounded


class ModeRequest(BaseModel):
    mode: AutopilotMode
    duration_minutes: Optional[int] = Field(None, ge=1)


class AgentAssignRequest(BaseModel):
    agent_id: str


class DurationRequest(BaseModel):
    minutes: int = Field(ge=1)


class GoalOverrideRequest(BaseModel):
    behavior: Optional[GoalCompletionBehavior] = None  # None clears the override


class ChatConfigResponse(BaseModel):
    config: Dict[str, Any]
    time_remaining_seconds: Optional[int] = None


# ============== Messages & drafts ==============

class InboundMessageRequest(BaseModel):
    id: str = Field(min_length=1)
    text: str = ""
    sender_name: str = ""
    timestamp: Optional[datetime] = None  # Defaults to now
    is_from_me: bool = False
    force: bool = False  # Bypass dedup and activity hours


class ScheduledActionsResponse(BaseModel):
    action_ids: List[str] = Field(default_factory=list)


class ApproveDraftRequest(BaseModel):
    """Send ``text`` (possibly edited) in place of the held draft ``action_id``."""
    text: str = Field(min_length=1)
    agent_id: Optional[str] = None  # Defaults to the chat's agent
    action_id: Optional[str] = None


class PendingDraftResponse(BaseModel):
    action_id: str
    chat_id: str
    agent_id: str
    text: str
    message_id: Optional[str] = None
    scheduled_for: datetime
    parts: List[str] = Field(default_factory=list)


class RejectResponse(BaseModel):
    cancelled: int
