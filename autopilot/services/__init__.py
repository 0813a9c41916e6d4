from autopilot.services.llm_service import LLMService, LLMResponse, get_llm_service
from autopilot.services.thread_context import ThreadContextStore, ContextMessage
from autopilot.services.drafting_service import (
    OpenAIDraftingService,
    OpenAISummaryService,
    OpenAIKnowledgeExtractor,
    KnowledgeFact,
    parse_draft_reply,
    split_into_messages,
)
from autopilot.services.send_transport import HttpSendTransport

__all__ = [
    "LLMService",
    "LLMResponse",
    "get_llm_service",
    "ThreadContextStore",
    "ContextMessage",
    "OpenAIDraftingService",
    "OpenAISummaryService",
    "OpenAIKnowledgeExtractor",
    "KnowledgeFact",
    "parse_draft_reply",
    "split_into_messages",
    "HttpSendTransport",
]
