from autopilot.stores.base import (
    AgentStore,
    ConfigStore,
    ActionStore,
    ActivityLog,
    HandoffStore,
    SuggestionStore,
    AutopilotStores,
)
from autopilot.stores.memory import create_memory_stores
from autopilot.stores.sql import create_sql_stores

__all__ = [
    "AgentStore",
    "ConfigStore",
    "ActionStore",
    "ActivityLog",
    "HandoffStore",
    "SuggestionStore",
    "AutopilotStores",
    "create_memory_stores",
    "create_sql_stores",
]
