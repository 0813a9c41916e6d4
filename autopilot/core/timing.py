"""
Human-timing helpers for the autopilot scheduler.

All functions are pure: the current time and the random source are passed in
(or default to the wall clock and the module RNG), so every result can be
reproduced exactly in tests.
"""

import logging
import random
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from autopilot.core.models import AgentBehavior

logger = logging.getLogger(__name__)

MIN_REPLY_DELAY_SECONDS = 5.0
RECENT_MESSAGE_WINDOW_SECONDS = 5 * 60
FRESH_CONVERSATION_WINDOW_SECONDS = 30 * 60
RECENT_MESSAGE_FACTOR = 0.3
FRESH_CONVERSATION_FACTOR = 0.6

MIN_TYPING_SECONDS = 1.0
MAX_TYPING_SECONDS = 30.0
TYPING_JITTER = 0.2


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _uniform(low: float, high: float, rng: Optional[random.Random]) -> float:
    source = rng or random
    return low + source.random() * (high - low)


def calculate_reply_delay(
    behavior: AgentBehavior,
    last_message_time: Optional[datetime] = None,
    conversation_start_time: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Seconds to wait before replying.

    Uniform in ``[reply_delay_min, reply_delay_max]``; context-aware agents
    answer faster when the last message is recent (x0.3) or, failing that,
    when the conversation is young (x0.6). Never below five seconds.
    """
    delay = _uniform(behavior.reply_delay_min, behavior.reply_delay_max, rng)

    if behavior.reply_delay_context_aware and last_message_time is not None:
        current = _now(now)
        since_last = (current - last_message_time).total_seconds()
        if conversation_start_time is not None:
            conversation_age = (current - conversation_start_time).total_seconds()
        else:
            conversation_age = float("inf")

        if since_last < RECENT_MESSAGE_WINDOW_SECONDS:
            delay *= RECENT_MESSAGE_FACTOR
        elif conversation_age < FRESH_CONVERSATION_WINDOW_SECONDS:
            delay *= FRESH_CONVERSATION_FACTOR

    return max(MIN_REPLY_DELAY_SECONDS, delay)


def hour_in_window(hour: int, start: int, end: int) -> bool:
    """Whether ``hour`` falls in ``[start, end)``, wrapping past midnight when start > end."""
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


def is_within_activity_hours(behavior: AgentBehavior, *, now: Optional[datetime] = None) -> bool:
    if not behavior.activity_hours_enabled:
        return True

    try:
        tz = ZoneInfo(behavior.activity_hours_timezone)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        logger.warning(f"Unknown timezone {behavior.activity_hours_timezone!r}, allowing activity")
        return True

    current_hour = _now(now).astimezone(tz).hour
    return hour_in_window(current_hour, behavior.activity_hours_start, behavior.activity_hours_end)


def calculate_typing_duration(
    text: str,
    typing_speed_wpm: float,
    *,
    rng: Optional[random.Random] = None,
) -> float:
    word_count = len(text.split()) or 1
    seconds = word_count / typing_speed_wpm * 60

    variance = seconds * TYPING_JITTER
    seconds += _uniform(-variance, variance, rng)

    return max(MIN_TYPING_SECONDS, min(MAX_TYPING_SECONDS, seconds))


def calculate_read_receipt_delay(
    behavior: AgentBehavior,
    *,
    rng: Optional[random.Random] = None,
) -> float:
    if not behavior.read_receipt_enabled:
        return 0.0
    return _uniform(behavior.read_receipt_delay_min, behavior.read_receipt_delay_max, rng)


def calculate_multi_message_delay(
    behavior: AgentBehavior,
    *,
    rng: Optional[random.Random] = None,
) -> float:
    if not behavior.multi_message_enabled:
        return 0.0
    return _uniform(behavior.multi_message_delay_min, behavior.multi_message_delay_max, rng)


def proactive_delay(*, rng: Optional[random.Random] = None) -> int:
    """Short fixed-range delay (3-7 s) for conversation openers."""
    source = rng or random
    return source.randint(3, 7)
