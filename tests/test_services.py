"""
Service Tests — draft parsing, message splitting, summaries, knowledge,
thread context and the HTTP send transport.
"""

import json
from datetime import timedelta

import httpx
import pytest

from autopilot.core.errors import AgentNotFound, DraftGenerationFailure, SendFailure
from autopilot.core.models import DraftOptions, GoalStatus, InboundMessage
from autopilot.services import (
    HttpSendTransport,
    LLMResponse,
    OpenAIDraftingService,
    OpenAIKnowledgeExtractor,
    OpenAISummaryService,
    ThreadContextStore,
    parse_draft_reply,
    split_into_messages,
)
from autopilot.services.drafting_service import FALLBACK_SUMMARY
from autopilot.stores import create_memory_stores

from tests.fakes import T0, make_agent


class FakeLLM:
    """Returns queued replies and records the prompts it was sent."""

    def __init__(self, *replies: str):
        self.replies = list(replies)
        self.calls = []
        self.error = None

    def count_tokens(self, text: str) -> int:
        return len(text.split())

    async def complete(self, messages, model=None, max_tokens=None, **kwargs):
        self.calls.append(messages)
        if self.error:
            raise self.error
        content = self.replies.pop(0)
        return LLMResponse(
            content=content,
            model=model or "test",
            tokens_prompt=10,
            tokens_completion=5,
            tokens_total=15,
            finish_reason="stop",
        )

    async def complete_with_json(self, messages, model=None, max_tokens=None, **kwargs):
        return await self.complete(messages, model=model, max_tokens=max_tokens)


def _inbound(message_id, text, minutes=0, is_from_me=False):
    return InboundMessage(
        id=message_id,
        chat_id="chat-1",
        text=text,
        sender_name="Alex",
        timestamp=T0 + timedelta(minutes=minutes),
        is_from_me=is_from_me,
    )


class TestParseDraftReply:
    def test_extracts_goal_analysis(self):
        content = (
            "Great, Friday at 3 works!\n"
            '<goal_analysis>{"isGoalAchieved": true, "confidence": 85, "reasoning": "time agreed"}</goal_analysis>'
        )
        text, analysis = parse_draft_reply(content)
        assert text == "Great, Friday at 3 works!"
        assert analysis.is_goal_achieved is True
        assert analysis.confidence == 85
        assert analysis.reasoning == "time agreed"

    def test_malformed_block_keeps_reply(self):
        content = "Sure!\n<goal_analysis>{not json}</goal_analysis>"
        text, analysis = parse_draft_reply(content)
        assert analysis is None
        assert text.startswith("Sure!")

    def test_no_block(self):
        assert parse_draft_reply("  just text  ") == ("just text", None)

    def test_detection_off(self):
        content = 'Hi <goal_analysis>{"isGoalAchieved": true}</goal_analysis>'
        text, analysis = parse_draft_reply(content, detect_goal=False)
        assert analysis is None


class TestSplitIntoMessages:
    def test_short_reply_not_split(self):
        assert split_into_messages("Sounds great. See you then.", 40) is None

    def test_single_long_sentence_not_split(self):
        text = " ".join(["word"] * 60)
        assert split_into_messages(text, 40) is None

    def test_splits_into_at_most_three(self):
        sentences = [f"This is sentence number {i} with a few extra words." for i in range(6)]
        parts = split_into_messages(" ".join(sentences), 40)
        assert len(parts) == 3
        assert parts[0] == f"{sentences[0]} {sentences[1]}"

    def test_keeps_trailing_text_without_punctuation(self):
        text = "First sentence has quite a few words in it. " * 3 + "and a trailing fragment"
        parts = split_into_messages(text, 10)
        assert parts[-1].endswith("and a trailing fragment")


class TestDraftingService:
    @pytest.mark.asyncio
    async def test_generate_draft(self):
        stores = create_memory_stores()
        await stores.agents.save(make_agent())
        context = ThreadContextStore()
        context.add_inbound(_inbound("m1", "hey, free tomorrow?"))
        llm = FakeLLM('How about 3pm?\n<goal_analysis>{"isGoalAchieved": false, "confidence": 40, "reasoning": "no time yet"}</goal_analysis>')

        service = OpenAIDraftingService(llm, stores.agents, context)
        result = await service.generate_draft(
            "chat-1", "hey, free tomorrow?", "Alex", DraftOptions(agent_id="agent-1", emoji_only_response=True),
        )

        assert result.text == "How about 3pm?"
        assert result.goal_analysis.confidence == 40
        assert result.suggested_messages is None

        system, user = llm.calls[0]
        assert "Book a meeting" in system["content"]
        assert "Alex: hey, free tomorrow?" in system["content"]
        assert "ONLY an emoji" in system["content"]
        assert 'Message from Alex:\n"hey, free tomorrow?"' in user["content"]

    @pytest.mark.asyncio
    async def test_multi_message_split(self):
        stores = create_memory_stores()
        await stores.agents.save(make_agent(multi_message_enabled=True))
        reply = " ".join(f"Sentence {i} goes on for a while so it is long." for i in range(6))
        service = OpenAIDraftingService(FakeLLM(reply), stores.agents, ThreadContextStore())

        result = await service.generate_draft(
            "chat-1", "hi", "Alex", DraftOptions(agent_id="agent-1", detect_goal_completion=False),
        )
        assert len(result.suggested_messages) == 3

    @pytest.mark.asyncio
    async def test_proactive_prompt(self):
        stores = create_memory_stores()
        await stores.agents.save(make_agent())
        llm = FakeLLM("Hey, how did it go?")
        service = OpenAIDraftingService(llm, stores.agents, ThreadContextStore())

        await service.generate_draft("chat-1", "", "Alex", DraftOptions(agent_id="agent-1", proactive=True))

        system, user = llm.calls[0]
        assert "proactive message" in system["content"]
        assert user["content"] == "Write the next message in this conversation:"

    @pytest.mark.asyncio
    async def test_errors(self):
        stores = create_memory_stores()
        llm = FakeLLM()
        service = OpenAIDraftingService(llm, stores.agents, ThreadContextStore())
        with pytest.raises(AgentNotFound):
            await service.generate_draft("chat-1", "hi", "Alex", DraftOptions(agent_id="ghost"))

        await stores.agents.save(make_agent())
        llm.error = RuntimeError("rate limited")
        with pytest.raises(DraftGenerationFailure):
            await service.generate_draft("chat-1", "hi", "Alex", DraftOptions(agent_id="agent-1"))


class TestSummaryService:
    def test_parse_camel_case(self):
        summary = OpenAISummaryService.parse(json.dumps({
            "summary": "They agreed to meet.",
            "keyPoints": ["Friday 3pm"],
            "suggestedNextSteps": ["Send invite"],
            "goalStatus": "achieved",
        }))
        assert summary.summary == "They agreed to meet."
        assert summary.key_points == ["Friday 3pm"]
        assert summary.goal_status == GoalStatus.ACHIEVED

    def test_parse_unknown_status(self):
        summary = OpenAISummaryService.parse(
            '{"summary": "s", "key_points": [], "suggested_next_steps": [], "goal_status": "done"}'
        )
        assert summary.goal_status == GoalStatus.UNCLEAR

    @pytest.mark.parametrize("content", ["not json", "[1, 2]", '{"summary": "", "keyPoints": [], "suggestedNextSteps": []}'])
    def test_parse_fallback(self, content):
        assert OpenAISummaryService.parse(content) == FALLBACK_SUMMARY

    @pytest.mark.asyncio
    async def test_generate_summary(self):
        stores = create_memory_stores()
        await stores.agents.save(make_agent())
        llm = FakeLLM('{"summary": "Done.", "keyPoints": ["a"], "suggestedNextSteps": ["b"], "goalStatus": "in-progress"}')
        service = OpenAISummaryService(llm, stores.agents, ThreadContextStore())

        summary = await service.generate_summary("chat-1", "Alex", "agent-1")

        assert summary.goal_status == GoalStatus.IN_PROGRESS
        assert "Book a meeting" in llm.calls[0][0]["content"]


class TestKnowledgeExtractor:
    def test_parse_filters_invalid_facts(self):
        facts = OpenAIKnowledgeExtractor.parse(json.dumps({"facts": [
            {"category": "preference", "content": "Likes mornings", "confidence": 85, "source": "stated"},
            {"category": "preference", "content": "Maybe cats", "confidence": 30, "source": "inferred"},
            {"category": "astrology", "content": "Leo", "confidence": 90, "source": "stated"},
            {"category": "schedule", "content": "Busy Mondays", "confidence": "high", "source": "stated"},
            {"category": "schedule", "content": "Free Fridays", "confidence": 70, "source": "guessed"},
            "garbage",
        ]}))
        assert [f.content for f in facts] == ["Likes mornings"]

    @pytest.mark.asyncio
    async def test_extract_accumulates_and_skips_empty_history(self):
        context = ThreadContextStore()
        llm = FakeLLM(
            '{"facts": [{"category": "schedule", "content": "Free Fridays", "confidence": 80, "source": "stated"}]}'
        )
        extractor = OpenAIKnowledgeExtractor(llm, context)

        await extractor.extract_knowledge("chat-1", "Alex")
        assert llm.calls == []

        context.add_inbound(_inbound("m1", "I'm usually free on Fridays"))
        await extractor.extract_knowledge("chat-1", "Alex")
        assert [f.content for f in extractor.facts("chat-1")] == ["Free Fridays"]

        llm.replies.append('{"facts": []}')
        await extractor.extract_knowledge("chat-1", "Alex")
        assert "Free Fridays" in llm.calls[-1][0]["content"]


class TestThreadContext:
    def test_ordering_dedup_and_cap(self):
        context = ThreadContextStore(max_messages=3)
        assert context.add_inbound(_inbound("m2", "second", minutes=2))
        assert context.add_inbound(_inbound("m1", "first", minutes=1))
        assert not context.add_inbound(_inbound("m1", "first again", minutes=1))
        context.add_outbound("chat-1", "out-1", "reply", timestamp=T0 + timedelta(minutes=3))
        context.add_inbound(_inbound("m4", "fourth", minutes=4))

        assert [m.id for m in context.messages("chat-1")] == ["m2", "out-1", "m4"]
        assert context.sender_name("chat-1") == "Alex"

    def test_format_respects_token_budget(self):
        context = ThreadContextStore()
        context.add_inbound(_inbound("m1", "one two three four", minutes=1))
        context.add_outbound("chat-1", "out-1", "five six", timestamp=T0 + timedelta(minutes=2))

        assert context.format_for_prompt("chat-1") == "Alex: one two three four\nMe: five six"
        trimmed = context.format_for_prompt("chat-1", max_tokens=5, count_tokens=lambda s: len(s.split()))
        assert trimmed == "Me: five six"

        context.clear("chat-1")
        assert context.format_for_prompt("chat-1") == ""


class TestHttpSendTransport:
    @pytest.mark.asyncio
    async def test_posts_message(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpSendTransport(url="http://bridge/send", token="secret", client=client)

        await transport.send("chat-1", "hello")
        await transport.close()

        assert json.loads(seen[0].content) == {"chatId": "chat-1", "text": "hello"}
        assert seen[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_http_error_becomes_send_failure(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(502)))
        transport = HttpSendTransport(url="http://bridge/send", token="", client=client)

        with pytest.raises(SendFailure) as exc:
            await transport.send("chat-1", "hello")
        assert "502" in str(exc.value)
        assert exc.value.chat_id == "chat-1"
        await transport.close()

    @pytest.mark.asyncio
    async def test_connection_error_becomes_send_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpSendTransport(url="http://bridge/send", client=client)
        with pytest.raises(SendFailure):
            await transport.send("chat-1", "hello")
        await transport.close()
