"""
Store Tests — the in-memory and SQLAlchemy backends behave the same.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from autopilot.core.models import (
    ActionStatus,
    ActivityEntry,
    ActivityType,
    AssistantSuggestion,
    AutopilotMode,
    AutopilotStatus,
    ChatAutopilotConfig,
    GoalStatus,
    HandoffSummary,
    ScheduledAction,
)
from autopilot.core.scheduler import Scheduler
from autopilot.db import AutopilotChatConfigRow, build_engine, build_session_maker, init_db
from autopilot.stores import create_memory_stores, create_sql_stores

from tests.fakes import T0, FakeTransport, FixedClock, make_agent


@pytest_asyncio.fixture(params=["memory", "sql"])
async def backend(request):
    if request.param == "memory":
        yield create_memory_stores(activity_max_entries=3), None
        return

    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    session_maker = build_session_maker(engine)
    try:
        yield create_sql_stores(session_maker, activity_max_entries=3), session_maker
    finally:
        await engine.dispose()


@pytest.fixture
def backend_stores(backend):
    return backend[0]


def _action(chat_id="chat-1", offset=0, **fields):
    return ScheduledAction(
        chat_id=chat_id,
        agent_id="agent-1",
        scheduled_for=T0 + timedelta(seconds=offset),
        message_text=fields.pop("message_text", "hi"),
        created_at=fields.pop("created_at", T0),
        **fields,
    )


class TestAgentsAndConfigs:
    @pytest.mark.asyncio
    async def test_agent_round_trip(self, backend_stores):
        agent = make_agent("agent-1", multi_message_enabled=True, typing_speed_wpm=55)
        await backend_stores.agents.save(agent)

        loaded = await backend_stores.agents.get("agent-1")
        assert loaded.name == agent.name
        assert loaded.behavior.multi_message_enabled is True
        assert loaded.behavior.typing_speed_wpm == 55
        assert [a.id for a in await backend_stores.agents.list()] == ["agent-1"]

        assert await backend_stores.agents.delete("agent-1") is True
        assert await backend_stores.agents.get("agent-1") is None
        assert await backend_stores.agents.delete("agent-1") is False

    @pytest.mark.asyncio
    async def test_config_update(self, backend_stores):
        await backend_stores.configs.save(ChatAutopilotConfig(
            chat_id="chat-1",
            agent_id="agent-1",
            status=AutopilotStatus.ACTIVE,
            enabled=True,
            self_driving_expires_at=T0 + timedelta(minutes=30),
        ))

        updated = await backend_stores.configs.update("chat-1", messages_handled=4, mode=AutopilotMode.SUGGEST)
        assert updated.messages_handled == 4

        loaded = await backend_stores.configs.get("chat-1")
        assert loaded.mode == AutopilotMode.SUGGEST
        assert loaded.self_driving_expires_at == T0 + timedelta(minutes=30)
        assert await backend_stores.configs.update("missing", enabled=True) is None

    @pytest.mark.asyncio
    async def test_corrupt_config_row_decodes_to_defaults(self, backend):
        stores, session_maker = backend
        if session_maker is None:
            pytest.skip("only persisted rows can be corrupted")

        await stores.configs.save(ChatAutopilotConfig(chat_id="chat-1", agent_id="agent-1"))
        async with session_maker() as db:
            await db.execute(
                update(AutopilotChatConfigRow)
                .where(AutopilotChatConfigRow.chat_id == "chat-1")
                .values(status="bogus", mode="warp-speed")
            )
            await db.commit()

        loaded = await stores.configs.get("chat-1")
        assert loaded.status == AutopilotStatus.INACTIVE
        assert loaded.mode == AutopilotMode.OBSERVER


class TestActions:
    @pytest.mark.asyncio
    async def test_next_due_orders_by_time_then_insertion(self, backend_stores):
        late = await backend_stores.actions.add(_action("chat-a", offset=20))
        first = await backend_stores.actions.add(_action("chat-b", offset=10))
        tie = await backend_stores.actions.add(_action("chat-c", offset=10))

        assert await backend_stores.actions.next_due(T0) is None
        assert (await backend_stores.actions.next_due(T0 + timedelta(seconds=30))).id == first.id

        await backend_stores.actions.update(first.id, status=ActionStatus.COMPLETED)
        assert (await backend_stores.actions.next_due(T0 + timedelta(seconds=30))).id == tie.id

        pending = await backend_stores.actions.list_pending()
        assert [a.id for a in pending] == [tie.id, late.id]

    @pytest.mark.asyncio
    async def test_cancel_chat(self, backend_stores):
        a = await backend_stores.actions.add(_action(message_id="m1"))
        b = await backend_stores.actions.add(_action(message_id="m2"))
        await backend_stores.actions.add(_action("chat-2", message_id="m1"))

        assert await backend_stores.actions.cancel_chat("chat-1", message_id="m1") == 1
        assert (await backend_stores.actions.get(a.id)).status == ActionStatus.CANCELLED
        assert (await backend_stores.actions.get(b.id)).status == ActionStatus.PENDING

        assert await backend_stores.actions.cancel(b.id) is True
        assert await backend_stores.actions.cancel(b.id) is False
        assert len(await backend_stores.actions.list_for_chat("chat-1", ActionStatus.CANCELLED)) == 2

    @pytest.mark.asyncio
    async def test_cleanup_keeps_recent_failures(self, backend_stores):
        await backend_stores.actions.add(_action(status=ActionStatus.COMPLETED))
        await backend_stores.actions.add(_action(status=ActionStatus.CANCELLED))
        old = await backend_stores.actions.add(_action(status=ActionStatus.FAILED, created_at=T0 - timedelta(days=2)))
        recent = await backend_stores.actions.add(_action(status=ActionStatus.FAILED))
        pending = await backend_stores.actions.add(_action())

        assert await backend_stores.actions.cleanup(T0 - timedelta(hours=24)) == 3
        assert await backend_stores.actions.get(old.id) is None
        assert await backend_stores.actions.get(recent.id) is not None
        assert await backend_stores.actions.get(pending.id) is not None

    @pytest.mark.asyncio
    async def test_claim_only_takes_pending_actions(self, backend_stores):
        pending = await backend_stores.actions.add(_action())
        cancelled = await backend_stores.actions.add(_action())
        await backend_stores.actions.cancel(cancelled.id)

        claimed = await backend_stores.actions.claim(pending.id)
        assert claimed.id == pending.id
        assert claimed.status == ActionStatus.EXECUTING
        assert (await backend_stores.actions.get(pending.id)).status == ActionStatus.EXECUTING

        # Second claim, cancelled and unknown actions all lose
        assert await backend_stores.actions.claim(pending.id) is None
        assert await backend_stores.actions.claim(cancelled.id) is None
        assert await backend_stores.actions.claim("missing") is None

        # An executing action escapes cancellation
        assert await backend_stores.actions.cancel(pending.id) is False

    @pytest.mark.asyncio
    async def test_update_does_not_revert_cancellation(self, backend_stores):
        action = await backend_stores.actions.add(_action())
        await backend_stores.actions.cancel(action.id)

        updated = await backend_stores.actions.update(action.id, scheduled_for=T0 + timedelta(seconds=5))

        assert updated.status == ActionStatus.CANCELLED
        assert updated.scheduled_for == T0 + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_action_cancelled_after_pick_is_not_sent(self, backend_stores):
        transport = FakeTransport()
        scheduler = Scheduler(backend_stores, transport, clock=FixedClock())
        action_id = await scheduler.schedule_message("chat-1", "agent-1", "hi", 0)

        pick = backend_stores.actions.next_due

        async def pick_then_disable(now):
            due = await pick(now)
            if due is not None:
                # The user disables the chat right after the scheduler picked
                await backend_stores.actions.cancel_chat(due.chat_id)
            return due

        backend_stores.actions.next_due = pick_then_disable

        assert await scheduler.tick() is None
        assert transport.sent == []
        assert (await backend_stores.actions.get(action_id)).status == ActionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_draft_id_persists(self, backend_stores):
        action = await backend_stores.actions.add(_action(draft_id="draft-1"))
        assert (await backend_stores.actions.get(action.id)).draft_id == "draft-1"

    @pytest.mark.asyncio
    async def test_scheduled_for_stays_timezone_aware(self, backend_stores):
        action = await backend_stores.actions.add(_action(offset=5))
        loaded = await backend_stores.actions.get(action.id)
        assert loaded.scheduled_for == T0 + timedelta(seconds=5)
        assert loaded.scheduled_for.tzinfo is not None


class TestActivityHandoffsSuggestions:
    @pytest.mark.asyncio
    async def test_activity_is_capped_newest_first(self, backend_stores):
        for i in range(5):
            await backend_stores.activity.append(ActivityEntry(
                chat_id="chat-1" if i % 2 == 0 else "chat-2",
                agent_id="agent-1",
                type=ActivityType.MESSAGE_SENT,
                message_text=f"msg {i}",
            ))

        entries = await backend_stores.activity.list()
        assert [e.message_text for e in entries] == ["msg 4", "msg 3", "msg 2"]
        assert [e.message_text for e in await backend_stores.activity.list("chat-1")] == ["msg 4", "msg 2"]
        assert len(await backend_stores.activity.list(limit=1)) == 1

        assert await backend_stores.activity.clear("chat-2") == 1
        assert await backend_stores.activity.clear() == 2

    @pytest.mark.asyncio
    async def test_latest_handoff(self, backend_stores):
        assert await backend_stores.handoffs.get("chat-1") is None
        await backend_stores.handoffs.save(HandoffSummary(
            chat_id="chat-1", agent_id="agent-1", summary="first", generated_at=T0,
        ))
        await backend_stores.handoffs.save(HandoffSummary(
            chat_id="chat-1",
            agent_id="agent-1",
            summary="second",
            key_points=["met"],
            goal_status=GoalStatus.ACHIEVED,
            generated_at=T0 + timedelta(minutes=1),
        ))

        latest = await backend_stores.handoffs.get("chat-1")
        assert latest.summary == "second"
        assert latest.key_points == ["met"]
        assert latest.goal_status == GoalStatus.ACHIEVED

    @pytest.mark.asyncio
    async def test_suggestions(self, backend_stores):
        await backend_stores.suggestions.add(AssistantSuggestion(chat_id="chat-1", text="one", created_at=T0))
        await backend_stores.suggestions.add(AssistantSuggestion(
            chat_id="chat-1", text="two", message_id="m2", created_at=T0 + timedelta(seconds=1),
        ))

        assert [s.text for s in await backend_stores.suggestions.list("chat-1")] == ["one", "two"]
        assert await backend_stores.suggestions.clear("chat-1") == 2
        assert await backend_stores.suggestions.list("chat-1") == []
