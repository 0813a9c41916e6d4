"""
Autopilot runtime — wires stores, event bus, scheduler, decision engine,
controls and status projection into one object the host (HTTP app, tests)
holds on to.
"""

import logging
import random
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional

from autopilot.config import settings
from autopilot.core.agents import ensure_default_observer_agent
from autopilot.core.collaborators import (
    DraftingService,
    KnowledgeExtractor,
    SendTransport,
    SummaryService,
)
from autopilot.core.controls import ChatAutopilotControls
from autopilot.core.engine import DecisionEngine
from autopilot.core.event_bus import AutopilotEvent, AutopilotEventBus, AutopilotEventType
from autopilot.core.models import InboundMessage, utcnow
from autopilot.core.scheduler import Scheduler
from autopilot.core.status import StatusProjection
from autopilot.services.thread_context import ThreadContextStore
from autopilot.stores.base import AutopilotStores

logger = logging.getLogger(__name__)


class AutopilotRuntime:
    def __init__(
        self,
        stores: AutopilotStores,
        transport: SendTransport,
        drafting: DraftingService,
        *,
        summary: Optional[SummaryService] = None,
        knowledge: Optional[KnowledgeExtractor] = None,
        context: Optional[ThreadContextStore] = None,
        bus: Optional[AutopilotEventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.stores = stores
        self.transport = transport
        self.bus = bus or AutopilotEventBus()
        self.context = context or ThreadContextStore()
        self.clock = clock
        self.errors: Deque[Dict[str, str]] = deque(maxlen=100)

        self.scheduler = Scheduler(stores, transport, self.bus, clock=clock, on_error=self._on_error)
        self.engine = DecisionEngine(
            stores,
            self.scheduler,
            drafting,
            summary=summary,
            knowledge=knowledge,
            bus=self.bus,
            clock=clock,
            rng=rng,
            on_error=self._on_error,
        )
        self.controls = ChatAutopilotControls(stores, self.scheduler, self.bus, clock=clock)
        self.status = StatusProjection(stores.actions, clock=clock)
        self.status.attach(self.bus)
        self.bus.subscribe(
            AutopilotEventType.ACTION_COMPLETED,
            self._on_action_completed,
            subscriber_id="thread-context",
        )

    @classmethod
    def from_settings(cls, stores: AutopilotStores) -> "AutopilotRuntime":
        """Runtime with the OpenAI collaborators and the HTTP send transport."""
        from autopilot.services.drafting_service import (
            OpenAIDraftingService,
            OpenAIKnowledgeExtractor,
            OpenAISummaryService,
        )
        from autopilot.services.llm_service import get_llm_service
        from autopilot.services.send_transport import HttpSendTransport

        llm = get_llm_service()
        context = ThreadContextStore(settings.thread_context_max_messages)
        return cls(
            stores,
            HttpSendTransport(),
            OpenAIDraftingService(llm, stores.agents, context),
            summary=OpenAISummaryService(llm, stores.agents, context),
            knowledge=OpenAIKnowledgeExtractor(llm, context),
            context=context,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        await ensure_default_observer_agent(self.stores.agents)
        await self.scheduler.start()
        logger.info("[RUNTIME] Autopilot runtime started")

    async def stop(self):
        await self.scheduler.stop()
        await self.engine.drain_background()
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
        logger.info("[RUNTIME] Autopilot runtime stopped")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_incoming_message(self, message: InboundMessage, force_process: bool = False) -> List[str]:
        """Record the message in the thread context, then let the engine decide."""
        self.context.add_inbound(message)
        if message.is_from_me:
            # Sent by the user from another device, nothing to answer
            return []
        return await self.engine.handle_incoming_message(message, force_process=force_process)

    def recent_errors(self, chat_id: Optional[str] = None) -> List[Dict[str, str]]:
        return [e for e in self.errors if chat_id is None or e["chat_id"] == chat_id]

    async def _on_error(self, chat_id: str, error: Exception):
        self.errors.append({
            "chat_id": chat_id,
            "error": str(error) or type(error).__name__,
            "type": type(error).__name__,
            "timestamp": self.clock().isoformat(),
        })

    async def _on_action_completed(self, event: AutopilotEvent):
        action = await self.stores.actions.get(event.action_id) if event.action_id else None
        if action is None or not action.message_text:
            return
        self.context.add_outbound(action.chat_id, action.id, action.message_text, self.clock())
