"""Built-in agents."""

import logging

from autopilot.core.models import Agent, AgentBehavior, GoalCompletionBehavior
from autopilot.stores.base import AgentStore

logger = logging.getLogger(__name__)

DEFAULT_OBSERVER_AGENT_ID = "default-observer"


def default_observer_agent() -> Agent:
    return Agent(
        id=DEFAULT_OBSERVER_AGENT_ID,
        name="Observer",
        description="Default agent that reads conversations and builds knowledge",
        goal="Observe and learn from conversations",
        system_prompt="You are an observer agent. Your role is to read and understand conversations.",
        goal_completion_behavior=GoalCompletionBehavior.MAINTENANCE,
        behavior=AgentBehavior(),
    )


async def ensure_default_observer_agent(agents: AgentStore) -> str:
    """Create the observer agent if it's missing. Returns its id."""
    if await agents.get(DEFAULT_OBSERVER_AGENT_ID) is None:
        await agents.save(default_observer_agent())
        logger.info("[AGENTS] Seeded default observer agent")
    return DEFAULT_OBSERVER_AGENT_ID
