"""
Thread context — recent conversation history per chat, used to build prompts.

Bounded per chat (oldest messages dropped), de-duplicated by message id and
kept in timestamp order.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from autopilot.config import settings
from autopilot.core.models import InboundMessage, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ContextMessage:
    id: str
    text: str
    is_from_me: bool
    sender_name: str
    timestamp: datetime


class ThreadContextStore:
    def __init__(self, max_messages: Optional[int] = None):
        self._max_messages = max_messages or settings.thread_context_max_messages
        self._threads: Dict[str, List[ContextMessage]] = {}
        self._sender_names: Dict[str, str] = {}

    def add(self, chat_id: str, message: ContextMessage) -> bool:
        """Add a message. Returns False if its id is already in the thread."""
        thread = self._threads.setdefault(chat_id, [])
        if any(m.id == message.id for m in thread):
            return False
        thread.append(message)
        thread.sort(key=lambda m: m.timestamp)
        del thread[:-self._max_messages]
        if not message.is_from_me and message.sender_name:
            self._sender_names[chat_id] = message.sender_name
        return True

    def add_inbound(self, message: InboundMessage) -> bool:
        return self.add(message.chat_id, ContextMessage(
            id=message.id,
            text=message.text,
            is_from_me=message.is_from_me,
            sender_name=message.sender_name,
            timestamp=message.timestamp,
        ))

    def add_outbound(self, chat_id: str, message_id: str, text: str, timestamp: Optional[datetime] = None) -> bool:
        return self.add(chat_id, ContextMessage(
            id=message_id,
            text=text,
            is_from_me=True,
            sender_name="Me",
            timestamp=timestamp or utcnow(),
        ))

    def messages(self, chat_id: str) -> List[ContextMessage]:
        return list(self._threads.get(chat_id, []))

    def sender_name(self, chat_id: str) -> Optional[str]:
        return self._sender_names.get(chat_id)

    def clear(self, chat_id: str):
        self._threads.pop(chat_id, None)
        self._sender_names.pop(chat_id, None)

    def format_for_prompt(
        self,
        chat_id: str,
        max_tokens: Optional[int] = None,
        count_tokens: Optional[Callable[[str], int]] = None,
    ) -> str:
        """
        ``"Name: text"`` lines, oldest first. With a token budget the oldest
        lines are dropped until the rest fits.
        """
        lines = [
            f"{'Me' if m.is_from_me else m.sender_name}: {m.text}"
            for m in self._threads.get(chat_id, [])
        ]
        if max_tokens is None or count_tokens is None:
            return "\n".join(lines)

        kept: List[str] = []
        used = 0
        for line in reversed(lines):
            cost = count_tokens(line) + 1
            if used + cost > max_tokens:
                break
            kept.append(line)
            used += cost
        return "\n".join(reversed(kept))
