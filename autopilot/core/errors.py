"""Autopilot error taxonomy."""

from typing import Optional


class AutopilotError(Exception):
    """Base class for errors raised by the autopilot core."""

    def __init__(self, message: str, chat_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.chat_id = chat_id


class AgentNotFound(AutopilotError):
    """A chat config references an agent that no longer exists."""

    def __init__(self, agent_id: str, chat_id: Optional[str] = None):
        super().__init__(f"Agent not found: {agent_id}", chat_id=chat_id)
        self.agent_id = agent_id


class ChatConfigNotFound(AutopilotError):
    def __init__(self, chat_id: str):
        super().__init__(f"Autopilot is not configured for chat {chat_id}", chat_id=chat_id)


class ActionNotFound(AutopilotError):
    def __init__(self, action_id: str):
        super().__init__(f"Scheduled action not found: {action_id}")
        self.action_id = action_id


class DraftGenerationFailure(AutopilotError):
    """The drafting collaborator could not produce a reply."""


class SendFailure(AutopilotError):
    """The send transport rejected or failed to deliver a message."""


class ConfigCorruption(AutopilotError):
    """Persisted state could not be decoded; callers fall back to defaults."""


class InvalidTransition(AutopilotError):
    """A user control was applied in a state that does not allow it."""
