"""
Drafting, summary and knowledge services backed by the OpenAI chat API.

These are the default collaborators of the decision engine:

- ``OpenAIDraftingService`` writes the reply in the agent's voice, optionally
  followed by a ``<goal_analysis>`` JSON block, and splits long replies into
  a short message sequence when the agent sends multi-part messages.
- ``OpenAISummaryService`` produces the handoff summary when a goal is reached.
- ``OpenAIKnowledgeExtractor`` distills facts about the contact every few
  handled messages.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from autopilot.config import settings
from autopilot.core.errors import AgentNotFound, DraftGenerationFailure
from autopilot.core.models import (
    DraftOptions,
    DraftResult,
    GoalAnalysis,
    GoalStatus,
    HandoffSummaryDraft,
    utcnow,
)
from autopilot.services.llm_service import LLMService
from autopilot.services.thread_context import ThreadContextStore
from autopilot.stores.base import AgentStore

logger = logging.getLogger(__name__)

GOAL_ANALYSIS_RE = re.compile(r"<goal_analysis>\s*(\{.*?\})\s*</goal_analysis>", re.DOTALL)
GOAL_BLOCK_RE = re.compile(r"<goal_analysis>.*?</goal_analysis>", re.DOTALL)
JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")

DRAFT_SYSTEM_PROMPT = """You are an AI acting as a human in a conversation. Your responses should be completely natural and human-like.

{agent_prompt}
{context}
CRITICAL RULES:
1. Reply in the SAME LANGUAGE as the incoming message
2. Sound exactly like a real human
3. Work towards your goal naturally without being pushy or obvious
4. Match the length of typical chat messages
5. Don't introduce yourself as AI or mention being automated
6. Provide ONLY the reply text (and goal analysis if requested)
{behaviors}{goal_detection}"""

GOAL_DETECTION_PROMPT = """
<goal_detection>
Your goal for this conversation: "{goal}"

After generating your reply, analyze if this goal is achieved or close to being achieved.
Include a goal analysis in this format at the END of your response:

<goal_analysis>
{{"isGoalAchieved": true/false, "confidence": 0-100, "reasoning": "brief explanation"}}
</goal_analysis>
</goal_detection>"""

SUMMARY_SYSTEM_PROMPT = """You are a helpful assistant that summarizes conversations for handoff to a human.

The conversation was managed by an autopilot with this goal: "{goal}"

Respond in JSON format:
{{
  "summary": "2-3 sentence summary of the conversation",
  "keyPoints": ["point 1", "point 2"],
  "suggestedNextSteps": ["step 1", "step 2"],
  "goalStatus": "achieved" | "in-progress" | "unclear"
}}

Be concise and actionable. Focus on what the human needs to continue the conversation."""

KNOWLEDGE_SYSTEM_PROMPT = """You are a knowledge extraction assistant. Extract new, specific, factual information about the people in the conversation.{existing}

Categories: preference, schedule, relationship, topic, sentiment, communication, personal, professional.
Sources: "stated" (they said it), "observed" (clear from behavior), "inferred" (reasonable conclusion).

Respond in JSON format:
{{"facts": [{{"category": "preference", "content": "Prefers morning meetings", "confidence": 85, "source": "stated"}}]}}

Only include facts with confidence >= {min_confidence}."""

FALLBACK_SUMMARY = HandoffSummaryDraft(
    summary="Unable to generate detailed summary. Please review the conversation history.",
    key_points=["Review conversation history manually"],
    suggested_next_steps=["Continue the conversation based on context"],
    goal_status=GoalStatus.UNCLEAR,
)

KNOWLEDGE_CATEGORIES = {
    "preference", "schedule", "relationship", "topic",
    "sentiment", "communication", "personal", "professional",
}
KNOWLEDGE_SOURCES = {"observed", "stated", "inferred"}


# ── Parsing helpers ──────────────────────────────────────

def parse_draft_reply(content: str, detect_goal: bool = True) -> Tuple[str, Optional[GoalAnalysis]]:
    """Split a model reply into the message text and its goal analysis block."""
    reply = content.strip()
    if not detect_goal:
        return reply, None

    match = GOAL_ANALYSIS_RE.search(content)
    if not match:
        return reply, None
    try:
        analysis = GoalAnalysis.from_dict(json.loads(match.group(1)))
    except json.JSONDecodeError:
        logger.warning("Failed to parse goal analysis block")
        return reply, None
    return GOAL_BLOCK_RE.sub("", content).strip(), analysis


def split_into_messages(text: str, max_words: int) -> Optional[List[str]]:
    """
    Break a long reply into 2-3 chat messages on sentence boundaries.

    Returns None when the reply is short enough or can't be split.
    """
    if len(text.split()) <= max_words:
        return None

    sentences = [s.strip() for s in SENTENCE_RE.findall(text) if s.strip()]
    if len(sentences) < 2:
        return None

    count = min(3, math.ceil(len(sentences) / 2))
    per_message = math.ceil(len(sentences) / count)
    messages = [
        " ".join(sentences[i:i + per_message])
        for i in range(0, len(sentences), per_message)
    ]
    return messages if len(messages) > 1 else None


def extract_json_object(content: str) -> Dict[str, Any]:
    match = JSON_OBJECT_RE.search(content)
    if not match:
        raise ValueError("No JSON found in response")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("Expected a JSON object")
    return parsed


# ── Drafting ─────────────────────────────────────────────

class OpenAIDraftingService:
    def __init__(self, llm: LLMService, agents: AgentStore, context: ThreadContextStore):
        self.llm = llm
        self.agents = agents
        self.context = context

    def _behavior_section(self, options: DraftOptions) -> str:
        lines = []
        if options.emoji_only_response:
            lines.append("- Reply with ONLY an emoji or two, no words.")
        if options.suggest_closing:
            lines.append("- The conversation has gone quiet; wrap it up naturally and politely.")
        if options.messages_in_conversation:
            lines.append(f"- You have already sent {options.messages_in_conversation} messages in this conversation.")
        if options.proactive:
            lines.append("- Generate a proactive message to start or continue the conversation. "
                         "Be natural and contextual based on the conversation history.")
        return ("\n" + "\n".join(lines) + "\n") if lines else ""

    async def generate_draft(
        self,
        chat_id: str,
        message: str,
        sender_name: str,
        options: DraftOptions,
    ) -> DraftResult:
        agent = await self.agents.get(options.agent_id)
        if agent is None:
            raise AgentNotFound(options.agent_id, chat_id=chat_id)

        history = self.context.format_for_prompt(
            chat_id,
            max_tokens=settings.thread_context_max_tokens,
            count_tokens=self.llm.count_tokens,
        )
        context = f"\nConversation history:\n<conversation>\n{history}\n</conversation>\n" if history else ""
        detect_goal = options.detect_goal_completion and bool(agent.goal)

        system_prompt = DRAFT_SYSTEM_PROMPT.format(
            agent_prompt=agent.system_prompt,
            context=context,
            behaviors=self._behavior_section(options),
            goal_detection=GOAL_DETECTION_PROMPT.format(goal=agent.goal) if detect_goal else "",
        )
        if options.proactive:
            user_prompt = "Write the next message in this conversation:"
        else:
            user_prompt = f'Message from {sender_name}:\n"{message}"\n\nGenerate a natural reply that works towards your goal:'

        try:
            response = await self.llm.complete(
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                model=settings.draft_model,
                max_tokens=settings.draft_max_tokens,
            )
        except Exception as e:
            logger.error(f"Draft generation failed for {chat_id}: {e}")
            raise DraftGenerationFailure(f"Failed to generate draft: {e}", chat_id=chat_id) from e

        reply, analysis = parse_draft_reply(response.content, detect_goal)
        parts = None
        if agent.behavior.multi_message_enabled:
            parts = split_into_messages(reply, settings.multi_message_split_words)

        logger.info(f"Drafted reply for {chat_id} ({response.tokens_total} tokens)")
        return DraftResult(text=reply, suggested_messages=parts, goal_analysis=analysis)


# ── Handoff summaries ────────────────────────────────────

class OpenAISummaryService:
    def __init__(self, llm: LLMService, agents: AgentStore, context: ThreadContextStore):
        self.llm = llm
        self.agents = agents
        self.context = context

    async def generate_summary(self, chat_id: str, sender_name: str, agent_id: str) -> HandoffSummaryDraft:
        agent = await self.agents.get(agent_id)
        goal = agent.goal if agent else ""
        history = self.context.format_for_prompt(
            chat_id,
            max_tokens=settings.thread_context_max_tokens,
            count_tokens=self.llm.count_tokens,
        )

        response = await self.llm.complete_with_json(
            messages=[
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT.format(goal=goal)},
                {"role": "user", "content": f"Conversation with {sender_name}:\n\n{history}\n\nProvide a handoff summary:"},
            ],
            model=settings.summary_model,
            max_tokens=settings.summary_max_tokens,
        )
        return self.parse(response.content)

    @staticmethod
    def parse(content: str) -> HandoffSummaryDraft:
        """Decode the model's JSON; anything malformed yields the fallback summary."""
        try:
            data = extract_json_object(content)
        except ValueError as e:
            logger.error(f"Failed to parse summary response: {e}")
            return FALLBACK_SUMMARY

        key_points = data.get("keyPoints", data.get("key_points"))
        next_steps = data.get("suggestedNextSteps", data.get("suggested_next_steps"))
        if not data.get("summary") or not isinstance(key_points, list) or not isinstance(next_steps, list):
            logger.error("Summary response has an invalid structure")
            return FALLBACK_SUMMARY

        try:
            goal_status = GoalStatus(data.get("goalStatus", data.get("goal_status")))
        except ValueError:
            goal_status = GoalStatus.UNCLEAR

        return HandoffSummaryDraft(
            summary=str(data["summary"]),
            key_points=[str(p) for p in key_points],
            suggested_next_steps=[str(s) for s in next_steps],
            goal_status=goal_status,
        )


# ── Knowledge extraction ─────────────────────────────────

@dataclass
class KnowledgeFact:
    category: str
    content: str
    confidence: float
    source: str
    extracted_at: Any = field(default_factory=utcnow)


class OpenAIKnowledgeExtractor:
    def __init__(self, llm: LLMService, context: ThreadContextStore):
        self.llm = llm
        self.context = context
        self._facts: Dict[str, List[KnowledgeFact]] = {}

    def facts(self, chat_id: str) -> List[KnowledgeFact]:
        return list(self._facts.get(chat_id, []))

    async def extract_knowledge(self, chat_id: str, sender_name: str) -> None:
        history = self.context.format_for_prompt(
            chat_id,
            max_tokens=settings.thread_context_max_tokens,
            count_tokens=self.llm.count_tokens,
        )
        if not history:
            return

        known = self._facts.get(chat_id, [])
        existing = ""
        if known:
            listed = "\n".join(f"- [{f.category}] {f.content}" for f in known)
            existing = f"\n\nAlready known facts (DO NOT repeat these):\n{listed}"

        response = await self.llm.complete_with_json(
            messages=[
                {"role": "system", "content": KNOWLEDGE_SYSTEM_PROMPT.format(
                    existing=existing,
                    min_confidence=settings.knowledge_min_confidence,
                )},
                {"role": "user", "content": f"Conversation with {sender_name}:\n\n{history}\n\nExtract knowledge:"},
            ],
            model=settings.summary_model,
            max_tokens=settings.summary_max_tokens,
        )
        new_facts = self.parse(response.content)
        self._facts.setdefault(chat_id, []).extend(new_facts)
        logger.info(f"Extracted {len(new_facts)} fact(s) for {chat_id}")

    @staticmethod
    def parse(content: str) -> List[KnowledgeFact]:
        try:
            data = extract_json_object(content)
        except ValueError as e:
            logger.error(f"Failed to parse knowledge response: {e}")
            return []

        facts = []
        for raw in data.get("facts") or []:
            if not isinstance(raw, dict):
                continue
            confidence = raw.get("confidence")
            if (
                raw.get("category") in KNOWLEDGE_CATEGORIES
                and raw.get("source") in KNOWLEDGE_SOURCES
                and isinstance(raw.get("content"), str)
                and isinstance(confidence, (int, float))
                and not isinstance(confidence, bool)
                and confidence >= settings.knowledge_min_confidence
            ):
                facts.append(KnowledgeFact(
                    category=raw["category"],
                    content=raw["content"],
                    confidence=float(confidence),
                    source=raw["source"],
                ))
        return facts
