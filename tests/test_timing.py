"""
Timing Tests — reply delays, activity hours, typing and proactive delays.
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from autopilot.core.models import AgentBehavior
from autopilot.core.timing import (
    calculate_multi_message_delay,
    calculate_read_receipt_delay,
    calculate_reply_delay,
    calculate_typing_duration,
    hour_in_window,
    is_within_activity_hours,
    proactive_delay,
)

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class StubRandom:
    def __init__(self, value: float):
        self.value = value

    def random(self):
        return self.value


class TestReplyDelay:
    def test_within_configured_range(self):
        behavior = AgentBehavior(reply_delay_min=30, reply_delay_max=120, reply_delay_context_aware=False)
        rng = random.Random(7)
        delays = [calculate_reply_delay(behavior, now=NOW, rng=rng) for _ in range(200)]
        assert all(30 <= d <= 120 for d in delays)
        assert max(delays) - min(delays) > 50

    def test_recent_message_speeds_up(self):
        behavior = AgentBehavior(reply_delay_min=100, reply_delay_max=100)
        delay = calculate_reply_delay(
            behavior,
            last_message_time=NOW - timedelta(minutes=1),
            conversation_start_time=NOW - timedelta(hours=3),
            now=NOW,
            rng=StubRandom(0.5),
        )
        assert delay == pytest.approx(30.0)

    def test_fresh_conversation_speeds_up(self):
        behavior = AgentBehavior(reply_delay_min=100, reply_delay_max=100)
        delay = calculate_reply_delay(
            behavior,
            last_message_time=NOW - timedelta(minutes=10),
            conversation_start_time=NOW - timedelta(minutes=10),
            now=NOW,
            rng=StubRandom(0.5),
        )
        assert delay == pytest.approx(60.0)

    def test_old_quiet_conversation_uses_base_delay(self):
        behavior = AgentBehavior(reply_delay_min=100, reply_delay_max=100)
        delay = calculate_reply_delay(
            behavior,
            last_message_time=NOW - timedelta(minutes=10),
            conversation_start_time=NOW - timedelta(hours=2),
            now=NOW,
            rng=StubRandom(0.5),
        )
        assert delay == pytest.approx(100.0)

    def test_context_awareness_off(self):
        behavior = AgentBehavior(reply_delay_min=100, reply_delay_max=100, reply_delay_context_aware=False)
        delay = calculate_reply_delay(
            behavior,
            last_message_time=NOW - timedelta(seconds=5),
            now=NOW,
            rng=StubRandom(0.5),
        )
        assert delay == pytest.approx(100.0)

    def test_never_below_five_seconds(self):
        behavior = AgentBehavior(reply_delay_min=1, reply_delay_max=2)
        delay = calculate_reply_delay(
            behavior,
            last_message_time=NOW - timedelta(seconds=10),
            now=NOW,
            rng=StubRandom(0.9),
        )
        assert delay == 5.0


class TestActivityHours:
    def test_plain_window(self):
        assert hour_in_window(9, 9, 17)
        assert hour_in_window(16, 9, 17)
        assert not hour_in_window(17, 9, 17)
        assert not hour_in_window(8, 9, 17)

    def test_window_wraps_midnight(self):
        assert hour_in_window(22, 22, 6)
        assert hour_in_window(23, 22, 6)
        assert hour_in_window(2, 22, 6)
        assert not hour_in_window(6, 22, 6)
        assert not hour_in_window(12, 22, 6)

    def test_disabled_always_active(self):
        behavior = AgentBehavior(activity_hours_enabled=False, activity_hours_start=1, activity_hours_end=2)
        assert is_within_activity_hours(behavior, now=NOW)

    def test_uses_agent_timezone(self):
        # 12:00 UTC is 07:00 in New York in March before DST
        day = AgentBehavior(
            activity_hours_enabled=True,
            activity_hours_start=9,
            activity_hours_end=21,
            activity_hours_timezone="America/New_York",
        )
        night = AgentBehavior(
            activity_hours_enabled=True,
            activity_hours_start=22,
            activity_hours_end=8,
            activity_hours_timezone="America/New_York",
        )
        assert not is_within_activity_hours(day, now=NOW)
        assert is_within_activity_hours(night, now=NOW)

    def test_unknown_timezone_fails_open(self):
        behavior = AgentBehavior(
            activity_hours_enabled=True,
            activity_hours_start=1,
            activity_hours_end=2,
            activity_hours_timezone="Not/AZone",
        )
        assert is_within_activity_hours(behavior, now=NOW)


class TestTypingAndMisc:
    def test_typing_clamped_to_thirty_seconds(self):
        text = " ".join(["word"] * 100)
        assert calculate_typing_duration(text, 40, rng=random.Random(1)) == 30.0

    def test_typing_jitter_bounds(self):
        rng = random.Random(3)
        text = " ".join(["word"] * 10)
        for _ in range(100):
            seconds = calculate_typing_duration(text, 60, rng=rng)
            assert 8.0 <= seconds <= 12.0

    def test_typing_minimum_one_second(self):
        assert calculate_typing_duration("hi", 600, rng=random.Random(2)) == 1.0

    def test_proactive_delay_range(self):
        rng = random.Random(11)
        seen = {proactive_delay(rng=rng) for _ in range(500)}
        assert seen == {3, 4, 5, 6, 7}

    def test_multi_message_delay(self):
        assert calculate_multi_message_delay(AgentBehavior(multi_message_enabled=False)) == 0.0
        behavior = AgentBehavior(multi_message_enabled=True, multi_message_delay_min=2, multi_message_delay_max=8)
        rng = random.Random(5)
        assert all(2 <= calculate_multi_message_delay(behavior, rng=rng) <= 8 for _ in range(50))

    def test_read_receipt_delay(self):
        assert calculate_read_receipt_delay(AgentBehavior(read_receipt_enabled=False)) == 0.0
        behavior = AgentBehavior(read_receipt_enabled=True, read_receipt_delay_min=1, read_receipt_delay_max=10)
        assert 1 <= calculate_read_receipt_delay(behavior, rng=random.Random(5)) <= 10
