"""
Collaborator interfaces consumed by the autopilot core.

The core never talks to an LLM or a messaging network directly; the host wires
in objects satisfying these protocols (see ``autopilot.services`` for the
OpenAI and HTTP defaults).
"""

from typing import Awaitable, Callable, Optional, Protocol

from autopilot.core.models import DraftOptions, DraftResult, HandoffSummaryDraft


class DraftingService(Protocol):
    async def generate_draft(
        self,
        chat_id: str,
        message: str,
        sender_name: str,
        options: DraftOptions,
    ) -> DraftResult:
        """Draft a reply. Raises on failure."""
        ...


class SummaryService(Protocol):
    async def generate_summary(self, chat_id: str, sender_name: str, agent_id: str) -> HandoffSummaryDraft:
        ...


class KnowledgeExtractor(Protocol):
    async def extract_knowledge(self, chat_id: str, sender_name: str) -> None:
        ...


class SendTransport(Protocol):
    async def send(self, chat_id: str, text: str) -> None:
        """Deliver ``text`` to the chat. Raises on failure."""
        ...


# Called once per surfaced error: (chat_id, error)
ErrorCallback = Callable[[str, Exception], Optional[Awaitable[None]]]
