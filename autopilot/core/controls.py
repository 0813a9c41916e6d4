"""
User controls for a chat's autopilot: enable, disable, pause, resume, reset and
the per-chat settings. Every change is announced as ``config-changed``.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from autopilot.core.errors import AgentNotFound, ChatConfigNotFound, InvalidTransition
from autopilot.core.event_bus import AutopilotEventBus, AutopilotEventType
from autopilot.core.models import (
    AutopilotMode,
    AutopilotStatus,
    ChatAutopilotConfig,
    GoalCompletionBehavior,
    utcnow,
)
from autopilot.core.scheduler import Scheduler
from autopilot.stores.base import AutopilotStores

logger = logging.getLogger(__name__)


def time_remaining(config: ChatAutopilotConfig, now: datetime) -> Optional[int]:
    """Whole seconds left in the self-driving window, or None when unbounded."""
    if config.self_driving_expires_at is None:
        return None
    remaining = (config.self_driving_expires_at - now).total_seconds()
    return max(0, int(remaining))


class ChatAutopilotControls:
    def __init__(
        self,
        stores: AutopilotStores,
        scheduler: Scheduler,
        bus: Optional[AutopilotEventBus] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._stores = stores
        self._scheduler = scheduler
        self._bus = bus
        self._clock = clock

    async def get(self, chat_id: str) -> Optional[ChatAutopilotConfig]:
        return await self._stores.configs.get(chat_id)

    async def enable(
        self,
        chat_id: str,
        agent_id: str,
        mode: AutopilotMode,
        duration_minutes: Optional[int] = None,
    ) -> ChatAutopilotConfig:
        if await self._stores.agents.get(agent_id) is None:
            raise AgentNotFound(agent_id, chat_id=chat_id)

        now = self._clock()
        config = ChatAutopilotConfig(
            chat_id=chat_id,
            agent_id=agent_id,
            mode=mode,
            status=AutopilotStatus.ACTIVE,
            enabled=True,
            messages_handled=0,
            error_count=0,
            created_at=now,
            updated_at=now,
        )
        self._apply_window(config, mode, duration_minutes, now)
        await self._stores.configs.save(config)
        logger.info(f"[CONTROLS] Autopilot enabled for {chat_id} ({mode.value}, agent {agent_id})")
        await self._changed(config)
        return config

    async def disable(self, chat_id: str) -> ChatAutopilotConfig:
        await self._require(chat_id)
        await self._scheduler.cancel_chat(chat_id)
        config = await self._stores.configs.update(
            chat_id,
            enabled=False,
            status=AutopilotStatus.INACTIVE,
            updated_at=self._clock(),
        )
        logger.info(f"[CONTROLS] Autopilot disabled for {chat_id}")
        await self._changed(config)
        return config

    async def pause(self, chat_id: str) -> ChatAutopilotConfig:
        await self._require(chat_id)
        return await self._set(chat_id, status=AutopilotStatus.PAUSED)

    async def resume(self, chat_id: str) -> ChatAutopilotConfig:
        config = await self._require(chat_id)
        if config.is_expired(self._clock()):
            raise InvalidTransition("Self-driving window has expired; extend it before resuming", chat_id=chat_id)
        return await self._set(chat_id, status=AutopilotStatus.ACTIVE)

    async def reset(self, chat_id: str) -> ChatAutopilotConfig:
        """Bring a chat out of ``error`` or ``goal-completed`` back to ``active``."""
        config = await self._require(chat_id)
        if config.status not in (AutopilotStatus.ERROR, AutopilotStatus.GOAL_COMPLETED):
            raise InvalidTransition(
                f"Cannot reset autopilot in status '{config.status.value}'", chat_id=chat_id
            )
        return await self._set(chat_id, status=AutopilotStatus.ACTIVE, enabled=True, last_error=None)

    async def set_mode(
        self,
        chat_id: str,
        mode: AutopilotMode,
        duration_minutes: Optional[int] = None,
    ) -> ChatAutopilotConfig:
        config = await self._require(chat_id)
        config.mode = mode
        self._apply_window(config, mode, duration_minutes, self._clock())
        return await self._set(
            chat_id,
            mode=mode,
            self_driving_duration_minutes=config.self_driving_duration_minutes,
            self_driving_started_at=config.self_driving_started_at,
            self_driving_expires_at=config.self_driving_expires_at,
        )

    async def set_agent(self, chat_id: str, agent_id: str) -> ChatAutopilotConfig:
        await self._require(chat_id)
        if await self._stores.agents.get(agent_id) is None:
            raise AgentNotFound(agent_id, chat_id=chat_id)
        return await self._set(chat_id, agent_id=agent_id)

    async def set_self_driving_duration(self, chat_id: str, minutes: int) -> ChatAutopilotConfig:
        """Restart the self-driving window at ``minutes`` from now."""
        config = await self._require(chat_id)
        if config.mode != AutopilotMode.SELF_DRIVING:
            raise InvalidTransition("Duration only applies to self-driving mode", chat_id=chat_id)
        now = self._clock()
        return await self._set(
            chat_id,
            self_driving_duration_minutes=minutes,
            self_driving_started_at=now,
            self_driving_expires_at=now + timedelta(minutes=minutes),
        )

    async def extend_self_driving(self, chat_id: str, minutes: int) -> ChatAutopilotConfig:
        config = await self._require(chat_id)
        if config.mode != AutopilotMode.SELF_DRIVING:
            raise InvalidTransition("Only self-driving mode has a window to extend", chat_id=chat_id)
        now = self._clock()
        base = max(config.self_driving_expires_at or now, now)
        return await self._set(
            chat_id,
            self_driving_duration_minutes=(config.self_driving_duration_minutes or 0) + minutes,
            self_driving_expires_at=base + timedelta(minutes=minutes),
        )

    async def set_goal_completion_override(
        self,
        chat_id: str,
        behavior: Optional[GoalCompletionBehavior],
    ) -> ChatAutopilotConfig:
        await self._require(chat_id)
        return await self._set(chat_id, goal_completion_behavior_override=behavior)

    async def remove(self, chat_id: str) -> bool:
        await self._scheduler.cancel_chat(chat_id)
        removed = await self._stores.configs.delete(chat_id)
        if removed and self._bus is not None:
            await self._bus.emit(AutopilotEventType.CONFIG_CHANGED, chat_id, removed=True)
        return removed

    async def time_remaining(self, chat_id: str) -> Optional[int]:
        config = await self._require(chat_id)
        return time_remaining(config, self._clock())

    async def is_expired(self, chat_id: str) -> bool:
        config = await self._require(chat_id)
        return config.is_expired(self._clock())

    # ------------------------------------------------------------------

    @staticmethod
    def _apply_window(
        config: ChatAutopilotConfig,
        mode: AutopilotMode,
        duration_minutes: Optional[int],
        now: datetime,
    ):
        config.self_driving_duration_minutes = duration_minutes
        if mode == AutopilotMode.SELF_DRIVING:
            config.self_driving_started_at = now
            config.self_driving_expires_at = (
                now + timedelta(minutes=duration_minutes) if duration_minutes else None
            )
        else:
            config.self_driving_started_at = None
            config.self_driving_expires_at = None

    async def _require(self, chat_id: str) -> ChatAutopilotConfig:
        config = await self._stores.configs.get(chat_id)
        if config is None:
            raise ChatConfigNotFound(chat_id)
        return config

    async def _set(self, chat_id: str, **changes) -> ChatAutopilotConfig:
        config = await self._stores.configs.update(chat_id, updated_at=self._clock(), **changes)
        await self._changed(config)
        return config

    async def _changed(self, config: ChatAutopilotConfig):
        if self._bus is not None:
            await self._bus.emit(
                AutopilotEventType.CONFIG_CHANGED,
                config.chat_id,
                status=config.status.value,
                mode=config.mode.value,
                enabled=config.enabled,
            )
