"""
Scheduler Tests — ordering, single-flight execution, failures and cleanup.
"""

import asyncio
from datetime import timedelta

import pytest

from autopilot.core.event_bus import AutopilotEventType
from autopilot.core.models import (
    ActionStatus,
    ActionType,
    ActivityType,
    AutopilotMode,
    AutopilotStatus,
    ChatAutopilotConfig,
)


async def _active_config(stores, chat_id="chat-1", agent_id="agent-1"):
    config = ChatAutopilotConfig(
        chat_id=chat_id,
        agent_id=agent_id,
        mode=AutopilotMode.SELF_DRIVING,
        status=AutopilotStatus.ACTIVE,
        enabled=True,
    )
    await stores.configs.save(config)
    return config


class TestScheduling:
    @pytest.mark.asyncio
    async def test_schedule_message_sets_due_time(self, scheduler, stores, clock, bus):
        action_id = await scheduler.schedule_message("chat-1", "agent-1", "hello", 42)
        action = await stores.actions.get(action_id)
        assert action.status == ActionStatus.PENDING
        assert action.scheduled_for == clock.now + timedelta(seconds=42)
        assert action.attempts == 0
        events = bus.get_history(AutopilotEventType.ACTION_SCHEDULED)
        assert events[-1]["data"]["action_id"] == action_id

    @pytest.mark.asyncio
    async def test_sequence_spacing(self, scheduler, stores, clock):
        ids = await scheduler.schedule_messages("chat-1", "agent-1", ["a", "b", "c"], 10, 5)
        offsets = [
            ((await stores.actions.get(i)).scheduled_for - clock.now).total_seconds()
            for i in ids
        ]
        assert offsets == [10, 15, 20]

    @pytest.mark.asyncio
    async def test_reschedule_pending(self, scheduler, stores, clock):
        action_id = await scheduler.schedule_message("chat-1", "agent-1", "hello", 3600)
        updated = await scheduler.reschedule(action_id, 5)
        assert updated.scheduled_for == clock.now + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_cancel(self, scheduler, stores):
        action_id = await scheduler.schedule_message("chat-1", "agent-1", "hello", 10)
        assert await scheduler.cancel_action(action_id) is True
        assert (await stores.actions.get(action_id)).status == ActionStatus.CANCELLED
        # Already cancelled
        assert await scheduler.cancel_action(action_id) is False
        assert await scheduler.cancel_action("missing") is False

    @pytest.mark.asyncio
    async def test_cancel_chat_by_message(self, scheduler, stores):
        keep = await scheduler.schedule_message("chat-1", "agent-1", "keep", 10, message_id="m1")
        drop = await scheduler.schedule_message("chat-1", "agent-1", "drop", 10, message_id="m2")
        other = await scheduler.schedule_message("chat-2", "agent-1", "other", 10, message_id="m2")

        assert await scheduler.cancel_chat("chat-1", message_id="m2") == 1
        assert (await stores.actions.get(keep)).status == ActionStatus.PENDING
        assert (await stores.actions.get(drop)).status == ActionStatus.CANCELLED
        assert (await stores.actions.get(other)).status == ActionStatus.PENDING

        assert await scheduler.cancel_chat("chat-1") == 1
        assert await scheduler.pending_count() == 1


class TestExecution:
    @pytest.mark.asyncio
    async def test_nothing_due(self, scheduler):
        await scheduler.schedule_message("chat-1", "agent-1", "later", 60)
        assert await scheduler.tick() is None

    @pytest.mark.asyncio
    async def test_executes_due_action(self, scheduler, stores, transport, clock, bus):
        await _active_config(stores)
        action_id = await scheduler.schedule_message("chat-1", "agent-1", "hello there", 5)
        clock.advance(5)

        done = await scheduler.tick()

        assert done.id == action_id
        assert done.status == ActionStatus.COMPLETED
        assert transport.sent == [("chat-1", "hello there")]

        config = await stores.configs.get("chat-1")
        assert config.messages_handled == 1
        assert config.last_activity_at == clock.now

        activity = await stores.activity.list("chat-1")
        assert activity[0].type == ActivityType.MESSAGE_SENT
        types = [e["type"] for e in bus.get_history(chat_id="chat-1")]
        assert types.index("action-executing") < types.index("action-completed")

    @pytest.mark.asyncio
    async def test_earliest_due_across_chats(self, scheduler, transport, clock):
        await scheduler.schedule_message("chat-a", "agent-1", "second", 20)
        await scheduler.schedule_message("chat-b", "agent-1", "first", 10)
        clock.advance(30)

        await scheduler.tick()
        await scheduler.tick()
        assert [text for _, text in transport.sent] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_ties_run_in_insertion_order(self, scheduler, transport, clock):
        for text in ["one", "two", "three"]:
            await scheduler.schedule_message("chat-1", "agent-1", text, 10)
        clock.advance(10)
        for _ in range(3):
            await scheduler.tick()
        assert [text for _, text in transport.sent] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_single_flight(self, scheduler, stores, transport, clock):
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_send(chat_id, text):
            started.set()
            await release.wait()
            transport.sent.append((chat_id, text))

        transport.send = slow_send
        await scheduler.schedule_message("chat-1", "agent-1", "a", 0)
        await scheduler.schedule_message("chat-2", "agent-1", "b", 0)

        first = asyncio.create_task(scheduler.tick())
        await started.wait()

        assert await scheduler.tick() is None
        executing = await stores.actions.list_by_status(ActionStatus.EXECUTING)
        assert len(executing) == 1
        assert scheduler.executing_action_id == executing[0].id

        release.set()
        await first
        assert scheduler.executing_action_id is None
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_failure_is_not_retried(self, scheduler, stores, transport, clock, bus, errors):
        transport.error = RuntimeError("bridge offline")
        action_id = await scheduler.schedule_message("chat-1", "agent-1", "hi", 0)

        failed = await scheduler.tick()

        assert failed.status == ActionStatus.FAILED
        assert failed.attempts == 1
        assert "bridge offline" in failed.last_error
        assert errors and errors[0][0] == "chat-1"

        activity = await stores.activity.list("chat-1")
        assert activity[0].type == ActivityType.ERROR
        failed_events = bus.get_history(AutopilotEventType.ACTION_FAILED)
        assert failed_events[-1]["data"]["action_id"] == action_id
        assert "bridge offline" in failed_events[-1]["data"]["error"]

        transport.error = None
        assert await scheduler.tick() is None

    @pytest.mark.asyncio
    async def test_empty_message_fails(self, scheduler, transport):
        await scheduler.schedule_message("chat-1", "agent-1", "", 0)
        failed = await scheduler.tick()
        assert failed.status == ActionStatus.FAILED
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_unsupported_action_type_fails_loudly(self, scheduler, clock):
        await scheduler.schedule(
            "chat-1", "agent-1", clock.now, action_type=ActionType.TYPING_INDICATOR,
        )
        failed = await scheduler.tick()
        assert failed.status == ActionStatus.FAILED
        assert "not supported" in failed.last_error

    @pytest.mark.asyncio
    async def test_approved_send_not_counted_twice(self, scheduler, stores):
        await _active_config(stores)
        await scheduler.schedule_message("chat-1", "agent-1", "approved text", 0, approved=True)
        await scheduler.tick()
        config = await stores.configs.get("chat-1")
        assert config.messages_handled == 0
        assert config.last_activity_at is not None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cleanup(self, scheduler, stores, transport, clock):
        done = await scheduler.schedule_message("chat-1", "agent-1", "ok", 0)
        await scheduler.tick()
        transport.error = RuntimeError("nope")
        failed = await scheduler.schedule_message("chat-1", "agent-1", "bad", 0)
        await scheduler.tick()
        pending = await scheduler.schedule_message("chat-1", "agent-1", "later", 600)

        # Recent failures are kept for inspection
        assert await scheduler.cleanup() == 1
        assert await stores.actions.get(done) is None
        assert await stores.actions.get(failed) is not None

        clock.advance(25 * 3600)
        assert await scheduler.cleanup() == 1
        assert await stores.actions.get(failed) is None
        assert await stores.actions.get(pending) is not None

    @pytest.mark.asyncio
    async def test_start_stop_and_wake(self, scheduler, transport):
        assert await scheduler.wake() is None

        await scheduler.start()
        try:
            assert scheduler.is_running
            await scheduler.start()  # no-op
            await scheduler.schedule_message("chat-1", "agent-1", "wake me", 0)
            done = await scheduler.wake()
            assert done is not None and done.status == ActionStatus.COMPLETED
        finally:
            await scheduler.stop()
        assert not scheduler.is_running

        # Restartable
        await scheduler.start()
        assert scheduler.is_running
        await scheduler.stop()
