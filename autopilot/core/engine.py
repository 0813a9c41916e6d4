"""
Autopilot Decision Engine — decides whether, when and what to send.

For every inbound message on a chat under automation the engine checks the
chat's state and the agent's behavior rules, asks the drafting service for a
reply, handles goal completion, and finally hands zero or more send actions to
the scheduler. Proactive openers and manual approvals go through the same
drafting and dispatch path.

Per-chat state machine (``ChatAutopilotConfig.status``)::

    inactive --enable--> active --pause--> paused --resume--> active
    active --self-driving window expired--> inactive    (time-expired)
    active --error while deciding--------> error        (error, error_count+1)
    active --goal reached (auto-disable/handoff)--> goal-completed

``error`` and ``goal-completed`` only return to ``active`` through an explicit
user reset.
"""

import asyncio
import inspect
import logging
import random
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set, Tuple

from autopilot.config import settings
from autopilot.core.activity import record_activity
from autopilot.core.collaborators import (
    DraftingService,
    ErrorCallback,
    KnowledgeExtractor,
    SummaryService,
)
from autopilot.core.dedup import RecentMessageSet
from autopilot.core.errors import (
    ActionNotFound,
    AgentNotFound,
    AutopilotError,
    ChatConfigNotFound,
    DraftGenerationFailure,
    InvalidTransition,
)
from autopilot.core.event_bus import AutopilotEventBus, AutopilotEventType
from autopilot.core.models import (
    ActionStatus,
    ActivityType,
    Agent,
    AgentBehavior,
    AssistantSuggestion,
    AutopilotMode,
    AutopilotStatus,
    ChatAutopilotConfig,
    DraftOptions,
    DraftResult,
    GoalCompletionBehavior,
    HandoffSummary,
    InboundMessage,
    ScheduledAction,
    generate_id,
    utcnow,
)
from autopilot.core.scheduler import Scheduler
from autopilot.core.structured_logging import BEST_EFFORT_LOGGER, set_chat_context
from autopilot.core.timing import (
    calculate_multi_message_delay,
    calculate_reply_delay,
    is_within_activity_hours,
    proactive_delay,
)
from autopilot.stores.base import AutopilotStores

logger = logging.getLogger(__name__)
best_effort_logger = logging.getLogger(BEST_EFFORT_LOGGER)

PROACTIVE_SENDER_NAME = "Chat"


def effective_response_rate(
    behavior: AgentBehavior,
    messages_handled: int,
    *,
    max_reduction: float = 50.0,
    min_rate: float = 30.0,
) -> Tuple[float, float]:
    """
    Response rate after conversation fatigue.

    Returns ``(rate, reduction)``. Once ``messages_handled`` reaches the
    trigger, every further message costs ``fatigue_response_reduction``
    percentage points, capped at ``max_reduction`` and never below ``min_rate``.
    """
    rate = behavior.response_rate if behavior.response_rate is not None else 100.0
    if not behavior.conversation_fatigue_enabled:
        return rate, 0.0
    if messages_handled < behavior.fatigue_trigger_messages:
        return rate, 0.0

    excess = messages_handled - behavior.fatigue_trigger_messages
    reduction = min(excess * behavior.fatigue_response_reduction, max_reduction)
    return max(min_rate, rate - reduction), reduction


class DecisionEngine:
    def __init__(
        self,
        stores: AutopilotStores,
        scheduler: Scheduler,
        drafting: DraftingService,
        *,
        summary: Optional[SummaryService] = None,
        knowledge: Optional[KnowledgeExtractor] = None,
        bus: Optional[AutopilotEventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        on_error: Optional[ErrorCallback] = None,
        dedup_capacity: Optional[int] = None,
    ):
        self._stores = stores
        self._scheduler = scheduler
        self._drafting = drafting
        self._summary = summary
        self._knowledge = knowledge
        self._bus = bus
        self._clock = clock
        self._rng = rng or random.Random()
        self._on_error = on_error

        capacity = dedup_capacity or settings.dedup_capacity
        self._seen = RecentMessageSet(capacity)
        # Inbound messages kept for regenerate_draft, same bound as the dedup set
        self._messages: "OrderedDict[str, InboundMessage]" = OrderedDict()
        self._message_capacity = capacity
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def handle_incoming_message(
        self,
        message: InboundMessage,
        force_process: bool = False,
    ) -> List[str]:
        """
        Run the decision pipeline for one inbound message.

        Returns the ids of the actions scheduled (empty when the engine
        skipped, suggested, or ended the automation).
        """
        chat_id = message.chat_id
        set_chat_context(chat_id)

        is_new = self._seen.acquire(message.id)
        if not is_new and not force_process:
            logger.debug(f"[ENGINE] Message {message.id} already handled, skipping")
            return []
        self._remember(message)

        config = None
        try:
            config = await self._stores.configs.get(chat_id)
            if config is None or not config.is_active:
                logger.debug(f"[ENGINE] Autopilot not active for {chat_id}, skipping")
                return []

            if config.mode == AutopilotMode.OBSERVER:
                return []

            now = self._clock()
            if config.is_expired(now):
                await self._expire(config, now)
                return []

            agent = await self._stores.agents.get(config.agent_id)
            if agent is None:
                await self._agent_missing(config)
                return []

            behavior = agent.behavior
            if not force_process and not is_within_activity_hours(behavior, now=now):
                logger.info(f"[ENGINE] Outside activity hours for {chat_id}, skipping")
                return []

            await self._record(config, ActivityType.MESSAGE_RECEIVED, message_text=message.text)

            rate, reduction = effective_response_rate(
                behavior,
                config.messages_handled,
                max_reduction=settings.fatigue_max_reduction,
                min_rate=settings.fatigue_min_response_rate,
            )
            if reduction > 0:
                logger.info(f"[ENGINE] Fatigue on {chat_id}: -{reduction:.0f}% -> {rate:.0f}%")
                await self._record(
                    config,
                    ActivityType.FATIGUE_REDUCED,
                    reduction=reduction,
                    effective_response_rate=rate,
                    messages_handled=config.messages_handled,
                )

            roll = self._rng.random() * 100
            if roll > rate:
                logger.info(f"[ENGINE] Busy simulation skipped {chat_id} (roll {roll:.1f} > {rate:.1f})")
                await self._record(
                    config,
                    ActivityType.SKIPPED_BUSY,
                    message_text=message.text,
                    response_roll=roll,
                    effective_response_rate=rate,
                )
                return []

            emoji_only = (
                behavior.emoji_only_response_enabled
                and self._rng.random() * 100 < behavior.emoji_only_response_chance
            )
            suggest_closing = bool(
                behavior.conversation_closing_enabled
                and config.last_activity_at is not None
                and now - config.last_activity_at > timedelta(minutes=behavior.closing_trigger_idle_minutes)
            )
            options = DraftOptions(
                agent_id=agent.id,
                emoji_only_response=emoji_only,
                suggest_closing=suggest_closing,
                messages_in_conversation=config.messages_handled,
                detect_goal_completion=True,
            )

            def reply_delay() -> float:
                return calculate_reply_delay(
                    behavior,
                    message.timestamp,
                    config.created_at,
                    now=self._clock(),
                    rng=self._rng,
                )

            return await self._draft_and_dispatch(
                config, agent, message.text, message.sender_name, options,
                message_id=message.id,
                reply_delay=reply_delay,
            )
        except Exception as e:
            await self._fail_chat(chat_id, config, e)
            return []

    # ------------------------------------------------------------------
    # Proactive messages
    # ------------------------------------------------------------------

    async def generate_proactive_message(self, chat_id: str) -> List[str]:
        """Draft and schedule a conversation opener with no inbound message."""
        set_chat_context(chat_id)

        config = None
        try:
            config = await self._stores.configs.get(chat_id)
            if config is None or not config.is_active:
                logger.debug(f"[ENGINE] Autopilot not active for {chat_id}, no proactive message")
                return []
            if config.mode == AutopilotMode.OBSERVER:
                return []

            now = self._clock()
            if config.is_expired(now):
                await self._expire(config, now)
                return []

            agent = await self._stores.agents.get(config.agent_id)
            if agent is None:
                await self._agent_missing(config)
                return []

            options = DraftOptions(
                agent_id=agent.id,
                messages_in_conversation=config.messages_handled,
                detect_goal_completion=False,
                proactive=True,
            )
            return await self._draft_and_dispatch(
                config, agent, "", PROACTIVE_SENDER_NAME, options,
                message_id=None,
                reply_delay=lambda: proactive_delay(rng=self._rng),
            )
        except Exception as e:
            await self._fail_chat(chat_id, config, e)
            return []

    # ------------------------------------------------------------------
    # Manual approval
    # ------------------------------------------------------------------

    async def approve_and_send(
        self,
        chat_id: str,
        text: str,
        agent_id: str,
        action_id: Optional[str] = None,
    ) -> str:
        """
        Send an approved (possibly edited) draft after a short delay.

        Counts the message as handled right away. When ``action_id`` names
        the held draft, all of its parts are cancelled so none fires on its own.
        """
        config = await self._stores.configs.get(chat_id)
        if config is None:
            raise ChatConfigNotFound(chat_id)
        if config.mode != AutopilotMode.MANUAL_APPROVAL:
            raise InvalidTransition(
                f"Drafts are only approved in manual-approval mode (chat is {config.mode.value})",
                chat_id=chat_id,
            )
        if await self._stores.agents.get(agent_id) is None:
            raise AgentNotFound(agent_id, chat_id=chat_id)

        message_id = None
        if action_id is not None:
            held = await self._stores.actions.get(action_id)
            if held is not None and held.is_pending:
                message_id = held.message_id
                # The edited text replaces every part of the held draft
                for part in await self._held_group(action_id):
                    await self._scheduler.cancel_action(part.id)

        new_id = await self._scheduler.schedule_message(
            chat_id,
            agent_id,
            text,
            settings.approval_send_delay_seconds,
            message_id,
            approved=True,
        )
        await self._count_handled(config)
        logger.info(f"[ENGINE] Draft approved for {chat_id}, sending in {settings.approval_send_delay_seconds}s")
        return new_id

    async def approve_pending_draft(self, action_id: str) -> List[str]:
        """Release a held draft (and its sibling parts) to send shortly."""
        group = await self._held_group(action_id)
        config = await self._stores.configs.get(group[0].chat_id)
        if config is None:
            raise ChatConfigNotFound(group[0].chat_id)

        delay = settings.approval_send_delay_seconds
        released = []
        for action in group:
            await self._stores.actions.update(action.id, approved=True)
            await self._scheduler.reschedule(action.id, delay)
            released.append(action.id)
            delay += settings.manual_multi_message_gap_seconds

        await self._count_handled(config)
        return released

    async def reject_pending_draft(self, action_id: str) -> int:
        """Discard a held draft (and its sibling parts)."""
        group = await self._held_group(action_id)
        for action in group:
            await self._scheduler.cancel_action(action.id)

        first = group[0]
        await record_activity(
            self._stores.activity,
            self._bus,
            first.chat_id,
            first.agent_id,
            ActivityType.DRAFT_REJECTED,
            timestamp=self._clock(),
            draft_text="\n".join(a.message_text or "" for a in group),
        )
        return len(group)

    async def regenerate_draft(self, message_id: str) -> List[str]:
        """Drop the drafts made for a cached message and run it through the pipeline again."""
        message = self._messages.get(message_id)
        if message is None:
            error = AutopilotError(f"Could not find message {message_id} to regenerate draft")
            logger.error(f"[ENGINE] {error.message}")
            await self._notify_error("", error)
            return []

        await self._scheduler.cancel_chat(message.chat_id, message_id=message_id)
        self._seen.remove(message_id)
        return await self.handle_incoming_message(message)

    def cached_message(self, message_id: str) -> Optional[InboundMessage]:
        return self._messages.get(message_id)

    async def drain_background(self):
        """Wait for best-effort background work (knowledge extraction) to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline internals
    # ------------------------------------------------------------------

    async def _draft_and_dispatch(
        self,
        config: ChatAutopilotConfig,
        agent: Agent,
        text: str,
        sender_name: str,
        options: DraftOptions,
        *,
        message_id: Optional[str],
        reply_delay: Callable[[], float],
    ) -> List[str]:
        chat_id = config.chat_id
        try:
            draft = await self._drafting.generate_draft(chat_id, text, sender_name, options)
        except AutopilotError:
            raise
        except Exception as e:
            raise DraftGenerationFailure(f"Failed to generate draft: {e}", chat_id=chat_id) from e

        await self._record(config, ActivityType.DRAFT_GENERATED, draft_text=draft.text)
        self._maybe_extract_knowledge(config, sender_name)

        analysis = draft.goal_analysis
        if (
            analysis is not None
            and analysis.is_goal_achieved
            and analysis.confidence >= settings.goal_confidence_threshold
        ):
            if await self._complete_goal(config, agent, sender_name, draft):
                return []

        return await self._dispatch(config, agent, draft, message_id, reply_delay)

    async def _complete_goal(
        self,
        config: ChatAutopilotConfig,
        agent: Agent,
        sender_name: str,
        draft: DraftResult,
    ) -> bool:
        """Apply the goal-completion behavior. Returns True when the reply must be suppressed."""
        analysis = draft.goal_analysis
        await self._record(
            config,
            ActivityType.GOAL_DETECTED,
            confidence=analysis.confidence,
            reasoning=analysis.reasoning,
        )

        behavior = config.goal_completion_behavior_override or agent.goal_completion_behavior
        logger.info(f"[ENGINE] Goal reached on {config.chat_id} ({analysis.confidence:.0f}%), behavior={behavior.value}")

        if behavior == GoalCompletionBehavior.MAINTENANCE:
            return False

        if behavior == GoalCompletionBehavior.HANDOFF:
            await self._handoff(config, agent, sender_name)

        await self._stores.configs.update(
            config.chat_id,
            enabled=False,
            status=AutopilotStatus.GOAL_COMPLETED,
        )
        await self._emit_config_changed(config.chat_id, status=AutopilotStatus.GOAL_COMPLETED.value)
        return True

    async def _handoff(self, config: ChatAutopilotConfig, agent: Agent, sender_name: str):
        chat_id = config.chat_id
        if self._summary is None:
            logger.warning(f"[ENGINE] No summary service configured, handoff for {chat_id} has no summary")
            await self._record(config, ActivityType.ERROR, error_message="Handoff summary unavailable")
            return

        try:
            result = await self._summary.generate_summary(chat_id, sender_name, agent.id)
        except Exception as e:
            logger.error(f"[ENGINE] Handoff summary failed for {chat_id}: {e}")
            await self._record(config, ActivityType.ERROR, error_message=f"Handoff summary failed: {e}")
            return

        summary = HandoffSummary(
            chat_id=chat_id,
            agent_id=agent.id,
            summary=result.summary,
            key_points=list(result.key_points),
            suggested_next_steps=list(result.suggested_next_steps),
            goal_status=result.goal_status,
            generated_at=self._clock(),
        )
        await self._stores.handoffs.save(summary)
        await self._record(config, ActivityType.HANDOFF_TRIGGERED, summary=summary.summary)

    async def _dispatch(
        self,
        config: ChatAutopilotConfig,
        agent: Agent,
        draft: DraftResult,
        message_id: Optional[str],
        reply_delay: Callable[[], float],
    ) -> List[str]:
        chat_id = config.chat_id
        parts = draft.suggested_messages if draft.suggested_messages and len(draft.suggested_messages) > 1 else None

        if config.mode == AutopilotMode.SUGGEST:
            if draft.text and draft.text.strip():
                await self._stores.suggestions.add(AssistantSuggestion(
                    chat_id=chat_id,
                    text=draft.text,
                    message_id=message_id,
                    created_at=self._clock(),
                ))
            return []

        if not parts and not (draft.text and draft.text.strip()):
            raise DraftGenerationFailure("Drafting service returned an empty reply", chat_id=chat_id)

        draft_id = generate_id()

        if config.mode == AutopilotMode.MANUAL_APPROVAL:
            hold = settings.pending_approval_delay_seconds
            if parts:
                return await self._scheduler.schedule_messages(
                    chat_id, agent.id, parts, hold, settings.manual_multi_message_gap_seconds, message_id,
                    draft_id=draft_id,
                )
            return [await self._scheduler.schedule_message(
                chat_id, agent.id, draft.text, hold, message_id, draft_id=draft_id,
            )]

        # Self-driving
        delay = reply_delay()
        if parts:
            between = calculate_multi_message_delay(agent.behavior, rng=self._rng)
            ids = await self._scheduler.schedule_messages(
                chat_id, agent.id, parts, delay, between, message_id, draft_id=draft_id,
            )
        else:
            ids = [await self._scheduler.schedule_message(
                chat_id, agent.id, draft.text, delay, message_id, draft_id=draft_id,
            )]
        logger.info(f"[ENGINE] Scheduled {len(ids)} message(s) for {chat_id} in {delay:.1f}s")
        return ids

    def _maybe_extract_knowledge(self, config: ChatAutopilotConfig, sender_name: str):
        every = settings.knowledge_extraction_every
        handled = config.messages_handled
        if self._knowledge is None or handled <= 0 or handled % every != 0:
            return

        task = asyncio.create_task(self._knowledge.extract_knowledge(config.chat_id, sender_name))
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            best_effort_logger.warning(f"Knowledge extraction failed: {error}")

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def _expire(self, config: ChatAutopilotConfig, now: datetime):
        logger.info(f"[ENGINE] Self-driving window expired for {config.chat_id}")
        await self._stores.configs.update(
            config.chat_id,
            enabled=False,
            status=AutopilotStatus.INACTIVE,
        )
        await self._record(config, ActivityType.TIME_EXPIRED, timestamp=now)
        await self._emit_config_changed(config.chat_id, status=AutopilotStatus.INACTIVE.value)

    async def _agent_missing(self, config: ChatAutopilotConfig):
        error = AgentNotFound(config.agent_id, chat_id=config.chat_id)
        logger.warning(f"[ENGINE] {error.message} (chat {config.chat_id})")
        await self._record(config, ActivityType.ERROR, error_message=error.message)
        await self._notify_error(config.chat_id, error)

    async def _fail_chat(self, chat_id: str, config: Optional[ChatAutopilotConfig], error: Exception):
        if config is None:
            # Config could not be loaded, nothing to mark as errored
            logger.error(f"[ENGINE] Autopilot error on {chat_id}: {error}")
            await self._notify_error(chat_id, error)
            return
        await self._fail(config, config.agent_id, error)

    async def _fail(self, config: ChatAutopilotConfig, agent_id: str, error: Exception):
        message = str(error) or type(error).__name__
        logger.error(f"[ENGINE] Autopilot error on {config.chat_id}: {message}")

        current = await self._stores.configs.get(config.chat_id) or config
        await self._stores.configs.update(
            config.chat_id,
            status=AutopilotStatus.ERROR,
            last_error=message,
            error_count=current.error_count + 1,
        )
        await record_activity(
            self._stores.activity,
            self._bus,
            config.chat_id,
            agent_id,
            ActivityType.ERROR,
            timestamp=self._clock(),
            error_message=message,
        )
        await self._emit_config_changed(config.chat_id, status=AutopilotStatus.ERROR.value)
        await self._notify_error(config.chat_id, error)

    async def _count_handled(self, config: ChatAutopilotConfig):
        current = await self._stores.configs.get(config.chat_id) or config
        await self._stores.configs.update(
            config.chat_id,
            messages_handled=current.messages_handled + 1,
            last_activity_at=self._clock(),
        )

    async def _held_group(self, action_id: str) -> List[ScheduledAction]:
        action = await self._stores.actions.get(action_id)
        if action is None or not action.is_pending:
            raise ActionNotFound(action_id)
        if action.draft_id is None:
            return [action]
        pending = await self._stores.actions.list_for_chat(action.chat_id, ActionStatus.PENDING)
        return [a for a in pending if a.draft_id == action.draft_id]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _remember(self, message: InboundMessage):
        self._messages[message.id] = message
        self._messages.move_to_end(message.id)
        while len(self._messages) > self._message_capacity:
            self._messages.popitem(last=False)

    async def _record(self, config: ChatAutopilotConfig, activity_type: ActivityType, **fields):
        fields.setdefault("timestamp", self._clock())
        return await record_activity(
            self._stores.activity,
            self._bus,
            config.chat_id,
            config.agent_id,
            activity_type,
            **fields,
        )

    async def _emit_config_changed(self, chat_id: str, **data):
        if self._bus is not None:
            await self._bus.emit(AutopilotEventType.CONFIG_CHANGED, chat_id, **data)

    async def _notify_error(self, chat_id: str, error: Exception):
        if self._on_error is None:
            return
        result = self._on_error(chat_id, error)
        if inspect.isawaitable(result):
            await result
