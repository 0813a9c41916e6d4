"""
Autopilot domain records.

Agents are reusable behavior templates, chat configs hold the per-conversation
automation state, scheduled actions are units of future work and activity
entries are the append-only history shown to the user.

Every record decodes tolerantly through ``from_dict``: malformed persisted state
falls back to defaults (and is logged) instead of raising.
"""

import logging
import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return str(uuid.uuid4())


# ── Enums ────────────────────────────────────────────────

class GoalCompletionBehavior(str, Enum):
    AUTO_DISABLE = "auto-disable"
    MAINTENANCE = "maintenance"
    HANDOFF = "handoff"


class AutopilotMode(str, Enum):
    OBSERVER = "observer"
    SUGGEST = "suggest"
    MANUAL_APPROVAL = "manual-approval"
    SELF_DRIVING = "self-driving"


class AutopilotStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    GOAL_COMPLETED = "goal-completed"


class ActionType(str, Enum):
    SEND_MESSAGE = "send-message"
    TYPING_INDICATOR = "typing-indicator"
    SEND_READ_RECEIPT = "send-read-receipt"


class ActionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ActivityType(str, Enum):
    MESSAGE_RECEIVED = "message-received"
    DRAFT_GENERATED = "draft-generated"
    DRAFT_REJECTED = "draft-rejected"
    MESSAGE_SENT = "message-sent"
    GOAL_DETECTED = "goal-detected"
    SKIPPED_BUSY = "skipped-busy"
    FATIGUE_REDUCED = "fatigue-reduced"
    ERROR = "error"
    TIME_EXPIRED = "time-expired"
    HANDOFF_TRIGGERED = "handoff-triggered"


class GoalStatus(str, Enum):
    ACHIEVED = "achieved"
    IN_PROGRESS = "in-progress"
    UNCLEAR = "unclear"


# ── Decoding helpers ─────────────────────────────────────

def coerce_enum(value: Any, enum_cls: Type[E], default: E) -> E:
    """Parse an enum value, falling back to ``default`` on garbage."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning(f"Corrupt {enum_cls.__name__} value {value!r}, using {default.value!r}")
        return default


def coerce_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Corrupt timestamp {value!r}, ignoring")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _coerce_number(value: Any, default: float, cast=float):
    if value is None or isinstance(value, bool):
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning(f"Corrupt numeric value {value!r}, using {default!r}")
        return default


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


# ── Agent ────────────────────────────────────────────────

@dataclass(frozen=True)
class AgentBehavior:
    """Human-simulation rules for an agent. Delays are in seconds."""
    reply_delay_min: float = 30.0
    reply_delay_max: float = 120.0
    reply_delay_context_aware: bool = True

    activity_hours_enabled: bool = False
    activity_hours_start: int = 9
    activity_hours_end: int = 21
    activity_hours_timezone: str = "UTC"

    response_rate: float = 100.0
    emoji_only_response_enabled: bool = False
    emoji_only_response_chance: float = 10.0

    conversation_fatigue_enabled: bool = False
    fatigue_trigger_messages: int = 15
    fatigue_response_reduction: float = 5.0

    conversation_closing_enabled: bool = False
    closing_trigger_idle_minutes: float = 30.0

    multi_message_enabled: bool = False
    multi_message_delay_min: float = 2.0
    multi_message_delay_max: float = 8.0

    typing_speed_wpm: float = 40.0

    read_receipt_enabled: bool = False
    read_receipt_delay_min: float = 1.0
    read_receipt_delay_max: float = 10.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AgentBehavior":
        if not isinstance(data, dict):
            if data is not None:
                logger.warning(f"Corrupt agent behavior {data!r}, using defaults")
            return cls()
        defaults = cls()
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            default = getattr(defaults, f.name)
            value = data[f.name]
            if isinstance(default, bool):
                kwargs[f.name] = value if isinstance(value, bool) else default
            elif isinstance(default, int):
                kwargs[f.name] = _coerce_number(value, default, int)
            elif isinstance(default, float):
                kwargs[f.name] = _coerce_number(value, default, float)
            else:
                kwargs[f.name] = value if isinstance(value, str) else default
        return cls(**kwargs)


@dataclass
class Agent:
    id: str
    name: str
    goal: str = ""
    system_prompt: str = ""
    description: str = ""
    goal_completion_behavior: GoalCompletionBehavior = GoalCompletionBehavior.MAINTENANCE
    behavior: AgentBehavior = field(default_factory=AgentBehavior)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "goal": self.goal,
            "system_prompt": self.system_prompt,
            "description": self.description,
            "goal_completion_behavior": self.goal_completion_behavior.value,
            "behavior": self.behavior.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Agent":
        return cls(
            id=str(data.get("id") or generate_id()),
            name=str(data.get("name") or "Unnamed agent"),
            goal=str(data.get("goal") or ""),
            system_prompt=str(data.get("system_prompt") or ""),
            description=str(data.get("description") or ""),
            goal_completion_behavior=coerce_enum(
                data.get("goal_completion_behavior"),
                GoalCompletionBehavior,
                GoalCompletionBehavior.MAINTENANCE,
            ),
            behavior=AgentBehavior.from_dict(data.get("behavior")),
            created_at=coerce_datetime(data.get("created_at")) or utcnow(),
            updated_at=coerce_datetime(data.get("updated_at")) or utcnow(),
        )


# ── Chat config ──────────────────────────────────────────

@dataclass
class ChatAutopilotConfig:
    chat_id: str
    agent_id: str
    mode: AutopilotMode = AutopilotMode.SELF_DRIVING
    status: AutopilotStatus = AutopilotStatus.INACTIVE
    enabled: bool = False
    self_driving_duration_minutes: Optional[int] = None
    self_driving_started_at: Optional[datetime] = None
    self_driving_expires_at: Optional[datetime] = None
    messages_handled: int = 0
    last_activity_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_count: int = 0
    goal_completion_behavior_override: Optional[GoalCompletionBehavior] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.enabled and self.status == AutopilotStatus.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        return (
            self.mode == AutopilotMode.SELF_DRIVING
            and self.self_driving_expires_at is not None
            and now > self.self_driving_expires_at
        )

    def to_dict(self) -> Dict[str, Any]:
        override = self.goal_completion_behavior_override
        return {
            "chat_id": self.chat_id,
            "agent_id": self.agent_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "enabled": self.enabled,
            "self_driving_duration_minutes": self.self_driving_duration_minutes,
            "self_driving_started_at": _iso(self.self_driving_started_at),
            "self_driving_expires_at": _iso(self.self_driving_expires_at),
            "messages_handled": self.messages_handled,
            "last_activity_at": _iso(self.last_activity_at),
            "last_error": self.last_error,
            "error_count": self.error_count,
            "goal_completion_behavior_override": override.value if override else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatAutopilotConfig":
        override = data.get("goal_completion_behavior_override")
        duration = data.get("self_driving_duration_minutes")
        return cls(
            chat_id=str(data.get("chat_id", "")),
            agent_id=str(data.get("agent_id", "")),
            mode=coerce_enum(data.get("mode"), AutopilotMode, AutopilotMode.OBSERVER),
            status=coerce_enum(data.get("status"), AutopilotStatus, AutopilotStatus.INACTIVE),
            enabled=bool(data.get("enabled", False)),
            self_driving_duration_minutes=(
                _coerce_number(duration, None, int) if duration is not None else None
            ),
            self_driving_started_at=coerce_datetime(data.get("self_driving_started_at")),
            self_driving_expires_at=coerce_datetime(data.get("self_driving_expires_at")),
            messages_handled=_coerce_number(data.get("messages_handled"), 0, int),
            last_activity_at=coerce_datetime(data.get("last_activity_at")),
            last_error=data.get("last_error"),
            error_count=_coerce_number(data.get("error_count"), 0, int),
            goal_completion_behavior_override=(
                coerce_enum(override, GoalCompletionBehavior, GoalCompletionBehavior.MAINTENANCE)
                if override else None
            ),
            created_at=coerce_datetime(data.get("created_at")) or utcnow(),
            updated_at=coerce_datetime(data.get("updated_at")) or utcnow(),
        )


# ── Scheduled actions ────────────────────────────────────

@dataclass
class ScheduledAction:
    chat_id: str
    agent_id: str
    scheduled_for: datetime
    type: ActionType = ActionType.SEND_MESSAGE
    message_text: Optional[str] = None
    message_id: Optional[str] = None  # Inbound message that triggered it
    draft_id: Optional[str] = None  # Shared by the parts of one draft
    id: str = field(default_factory=generate_id)
    status: ActionStatus = ActionStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    approved: bool = False  # Created by an explicit approval, already counted

    @property
    def is_pending(self) -> bool:
        return self.status == ActionStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "agent_id": self.agent_id,
            "type": self.type.value,
            "scheduled_for": _iso(self.scheduled_for),
            "message_text": self.message_text,
            "message_id": self.message_id,
            "draft_id": self.draft_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
            "approved": self.approved,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledAction":
        return cls(
            id=str(data.get("id") or generate_id()),
            chat_id=str(data.get("chat_id", "")),
            agent_id=str(data.get("agent_id", "")),
            type=coerce_enum(data.get("type"), ActionType, ActionType.SEND_MESSAGE),
            scheduled_for=coerce_datetime(data.get("scheduled_for")) or utcnow(),
            message_text=data.get("message_text"),
            message_id=data.get("message_id"),
            draft_id=data.get("draft_id"),
            # Unknown status must never look runnable
            status=coerce_enum(data.get("status"), ActionStatus, ActionStatus.CANCELLED),
            attempts=_coerce_number(data.get("attempts"), 0, int),
            last_error=data.get("last_error"),
            created_at=coerce_datetime(data.get("created_at")) or utcnow(),
            approved=bool(data.get("approved", False)),
        )


# ── Activity, handoff, suggestions ───────────────────────

@dataclass
class ActivityEntry:
    chat_id: str
    agent_id: str
    type: ActivityType
    id: str = field(default_factory=generate_id)
    timestamp: datetime = field(default_factory=utcnow)
    message_text: Optional[str] = None
    draft_text: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "agent_id": self.agent_id,
            "type": self.type.value,
            "timestamp": _iso(self.timestamp),
            "message_text": self.message_text,
            "draft_text": self.draft_text,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass
class HandoffSummary:
    chat_id: str
    agent_id: str
    summary: str
    key_points: List[str] = field(default_factory=list)
    suggested_next_steps: List[str] = field(default_factory=list)
    goal_status: GoalStatus = GoalStatus.UNCLEAR
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "agent_id": self.agent_id,
            "summary": self.summary,
            "key_points": list(self.key_points),
            "suggested_next_steps": list(self.suggested_next_steps),
            "goal_status": self.goal_status.value,
            "generated_at": _iso(self.generated_at),
        }


@dataclass
class AssistantSuggestion:
    """A draft surfaced to the user in suggest mode instead of being sent."""
    chat_id: str
    text: str
    message_id: Optional[str] = None
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)


# ── Inbound messages and drafting results ────────────────

@dataclass
class InboundMessage:
    id: str
    chat_id: str
    text: str = ""
    sender_name: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    is_from_me: bool = False


@dataclass
class GoalAnalysis:
    is_goal_achieved: bool = False
    confidence: float = 0
    reasoning: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Optional["GoalAnalysis"]:
        if not isinstance(data, dict):
            return None
        return cls(
            is_goal_achieved=bool(data.get("isGoalAchieved", data.get("is_goal_achieved", False))),
            confidence=_coerce_number(data.get("confidence"), 0.0, float),
            reasoning=str(data.get("reasoning") or ""),
        )


@dataclass
class DraftOptions:
    agent_id: str
    emoji_only_response: bool = False
    suggest_closing: bool = False
    messages_in_conversation: int = 0
    detect_goal_completion: bool = True
    proactive: bool = False  # Open or continue the conversation unprompted


@dataclass
class DraftResult:
    text: str
    suggested_messages: Optional[List[str]] = None
    goal_analysis: Optional[GoalAnalysis] = None


@dataclass
class HandoffSummaryDraft:
    """What the summary service returns; the engine stamps chat/agent/time."""
    summary: str
    key_points: List[str] = field(default_factory=list)
    suggested_next_steps: List[str] = field(default_factory=list)
    goal_status: GoalStatus = GoalStatus.UNCLEAR
