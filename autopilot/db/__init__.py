from autopilot.db.models import (
    Base,
    AutopilotAgentRow,
    AutopilotChatConfigRow,
    ScheduledActionRow,
    ActivityRow,
    HandoffSummaryRow,
    SuggestionRow,
)
from autopilot.db.database import (
    init_db, drop_db, async_session_maker, engine, build_engine, build_session_maker,
)

__all__ = [
    "Base",
    "AutopilotAgentRow",
    "AutopilotChatConfigRow",
    "ScheduledActionRow",
    "ActivityRow",
    "HandoffSummaryRow",
    "SuggestionRow",
    # Database
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
    "build_engine",
    "build_session_maker",
]
