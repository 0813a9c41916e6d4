"""
Autopilot Scheduler — executes due actions one at a time.

A recurring APScheduler job calls ``tick()`` every poll interval. Each tick
picks the single globally-earliest due pending action (across all chats),
executes it and records the outcome. Execution is serialized by one lock per
scheduler instance: at most one action is ever ``executing``.

Failed actions are not retried; ``attempts`` is informational.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from autopilot.config import settings
from autopilot.core.activity import record_activity
from autopilot.core.collaborators import ErrorCallback, SendTransport
from autopilot.core.errors import AutopilotError, SendFailure
from autopilot.core.event_bus import AutopilotEventBus, AutopilotEventType
from autopilot.core.models import (
    ActionStatus,
    ActionType,
    ActivityType,
    ScheduledAction,
    utcnow,
)
from autopilot.stores.base import AutopilotStores

logger = logging.getLogger(__name__)

TICK_JOB_ID = "autopilot-scheduler-tick"
CLEANUP_JOB_ID = "autopilot-scheduler-cleanup"


class Scheduler:
    def __init__(
        self,
        stores: AutopilotStores,
        transport: SendTransport,
        bus: Optional[AutopilotEventBus] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        poll_interval_seconds: Optional[float] = None,
        cleanup_interval_minutes: Optional[int] = None,
        retention_hours: Optional[int] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        self._stores = stores
        self._transport = transport
        self._bus = bus
        self._clock = clock
        self._poll_interval = poll_interval_seconds or settings.scheduler_poll_interval_seconds
        self._cleanup_interval = cleanup_interval_minutes or settings.scheduler_cleanup_interval_minutes
        self._retention = timedelta(hours=retention_hours or settings.action_retention_hours)
        self._on_error = on_error

        self._lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._executing_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    @property
    def executing_action_id(self) -> Optional[str]:
        return self._executing_id

    async def start(self):
        """Start the tick loop. No-op if already running."""
        if self.is_running:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self._poll_interval),
            id=TICK_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.cleanup,
            IntervalTrigger(minutes=self._cleanup_interval),
            id=CLEANUP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        await self.cleanup()
        logger.info(f"[SCHEDULER] Started (poll every {self._poll_interval}s)")

    async def stop(self):
        """Stop the tick loop. An action already executing runs to completion."""
        if not self.is_running:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("[SCHEDULER] Stopped")

    async def wake(self) -> Optional[ScheduledAction]:
        """Run one tick right away, e.g. when the host becomes visible again."""
        if not self.is_running:
            return None
        return await self.tick()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule(
        self,
        chat_id: str,
        agent_id: str,
        scheduled_for: datetime,
        *,
        action_type: ActionType = ActionType.SEND_MESSAGE,
        message_text: Optional[str] = None,
        message_id: Optional[str] = None,
        draft_id: Optional[str] = None,
        approved: bool = False,
    ) -> str:
        action = ScheduledAction(
            chat_id=chat_id,
            agent_id=agent_id,
            scheduled_for=scheduled_for,
            type=action_type,
            message_text=message_text,
            message_id=message_id,
            draft_id=draft_id,
            status=ActionStatus.PENDING,
            attempts=0,
            created_at=self._clock(),
            approved=approved,
        )
        await self._stores.actions.add(action)
        await self._emit(AutopilotEventType.ACTION_SCHEDULED, action)
        return action.id

    async def schedule_message(
        self,
        chat_id: str,
        agent_id: str,
        text: str,
        delay_seconds: float,
        message_id: Optional[str] = None,
        *,
        draft_id: Optional[str] = None,
        approved: bool = False,
    ) -> str:
        scheduled_for = self._clock() + timedelta(seconds=delay_seconds)
        logger.info(f"[SCHEDULER] Scheduling message for {chat_id} in {delay_seconds:.1f}s")
        return await self.schedule(
            chat_id,
            agent_id,
            scheduled_for,
            message_text=text,
            message_id=message_id,
            draft_id=draft_id,
            approved=approved,
        )

    async def schedule_messages(
        self,
        chat_id: str,
        agent_id: str,
        texts: List[str],
        initial_delay_seconds: float,
        delay_between_seconds: float,
        message_id: Optional[str] = None,
        *,
        draft_id: Optional[str] = None,
    ) -> List[str]:
        """Schedule a sequence, each part ``delay_between_seconds`` after the previous one."""
        ids = []
        delay = initial_delay_seconds
        for text in texts:
            ids.append(await self.schedule_message(
                chat_id, agent_id, text, delay, message_id, draft_id=draft_id,
            ))
            delay += delay_between_seconds
        return ids

    async def cancel_action(self, action_id: str) -> bool:
        cancelled = await self._stores.actions.cancel(action_id)
        if cancelled:
            logger.info(f"[SCHEDULER] Cancelled action {action_id}")
        return cancelled

    async def cancel_chat(self, chat_id: str, message_id: Optional[str] = None) -> int:
        count = await self._stores.actions.cancel_chat(chat_id, message_id=message_id)
        if count:
            logger.info(f"[SCHEDULER] Cancelled {count} pending action(s) for {chat_id}")
        return count

    async def reschedule(self, action_id: str, delay_seconds: float) -> Optional[ScheduledAction]:
        """Move a pending action to ``now + delay_seconds``."""
        action = await self._stores.actions.get(action_id)
        if action is None or not action.is_pending:
            return None
        updated = await self._stores.actions.update(
            action_id,
            scheduled_for=self._clock() + timedelta(seconds=delay_seconds),
        )
        await self._emit(AutopilotEventType.ACTION_SCHEDULED, updated)
        return updated

    async def pending_count(self) -> int:
        return len(await self._stores.actions.list_pending())

    async def actions_for_chat(self, chat_id: str) -> List[ScheduledAction]:
        return await self._stores.actions.list_for_chat(chat_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def tick(self) -> Optional[ScheduledAction]:
        """
        Execute the earliest due action, if any.

        Returns the action in its final state, or None if nothing ran (nothing
        due, or another execution is still in flight).
        """
        if self._lock.locked():
            return None

        async with self._lock:
            action = None
            while action is None:
                due = await self._stores.actions.next_due(self._clock())
                if due is None:
                    return None
                # A cancel can land between the pick and the claim
                action = await self._stores.actions.claim(due.id)
                if action is None:
                    logger.info(f"[SCHEDULER] Action {due.id} was no longer pending, skipping")

            logger.info(f"[SCHEDULER] Executing {action.type.value} {action.id} for {action.chat_id}")
            self._executing_id = action.id
            await self._emit(AutopilotEventType.ACTION_EXECUTING, action)

            try:
                await self._execute(action)
            except Exception as e:
                return await self._fail(action, e)
            finally:
                self._executing_id = None

            completed = await self._stores.actions.update(action.id, status=ActionStatus.COMPLETED)
            await self._complete(completed)
            return completed

    async def _execute(self, action: ScheduledAction):
        if action.type == ActionType.SEND_MESSAGE:
            if not action.message_text:
                raise SendFailure("Scheduled message has no text", chat_id=action.chat_id)
            try:
                await self._transport.send(action.chat_id, action.message_text)
            except AutopilotError:
                raise
            except Exception as e:
                raise SendFailure(str(e) or type(e).__name__, chat_id=action.chat_id) from e
        elif action.type in (ActionType.TYPING_INDICATOR, ActionType.SEND_READ_RECEIPT):
            raise NotImplementedError(f"Action type '{action.type.value}' is not supported by the transport")
        else:
            raise ValueError(f"Unknown action type: {action.type!r}")

    async def _complete(self, action: ScheduledAction):
        now = self._clock()
        if action.type == ActionType.SEND_MESSAGE:
            config = await self._stores.configs.get(action.chat_id)
            if config is not None:
                changes = {"last_activity_at": now}
                if not action.approved:
                    # Approved sends were counted when the user approved them
                    changes["messages_handled"] = config.messages_handled + 1
                await self._stores.configs.update(action.chat_id, **changes)

            await record_activity(
                self._stores.activity,
                self._bus,
                action.chat_id,
                action.agent_id,
                ActivityType.MESSAGE_SENT,
                timestamp=now,
                message_text=action.message_text,
                action_id=action.id,
            )

        logger.info(f"[SCHEDULER] Completed {action.id}")
        await self._emit(AutopilotEventType.ACTION_COMPLETED, action)

    async def _fail(self, action: ScheduledAction, error: Exception) -> ScheduledAction:
        message = str(error) or type(error).__name__
        logger.error(f"[SCHEDULER] Action {action.id} for {action.chat_id} failed: {message}")

        failed = await self._stores.actions.update(
            action.id,
            status=ActionStatus.FAILED,
            attempts=action.attempts + 1,
            last_error=message,
        )
        await record_activity(
            self._stores.activity,
            self._bus,
            action.chat_id,
            action.agent_id,
            ActivityType.ERROR,
            timestamp=self._clock(),
            error_message=message,
            action_id=action.id,
        )
        await self._emit(AutopilotEventType.ACTION_FAILED, failed, error=message)
        await self._notify_error(action.chat_id, error)
        return failed

    async def _notify_error(self, chat_id: str, error: Exception):
        if self._on_error is None:
            return
        result = self._on_error(chat_id, error)
        if inspect.isawaitable(result):
            await result

    async def cleanup(self) -> int:
        """Drop finished actions and failed ones past the retention window."""
        removed = await self._stores.actions.cleanup(self._clock() - self._retention)
        if removed:
            logger.info(f"[SCHEDULER] Cleaned up {removed} finished action(s)")
        return removed

    async def _emit(self, event_type: AutopilotEventType, action: ScheduledAction, **extra):
        if self._bus is None:
            return
        await self._bus.emit(event_type, action.chat_id, action_id=action.id, **extra)
