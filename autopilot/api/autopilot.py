"""
Autopilot API — agents, per-chat controls, the inbound message webhook,
manual approval, status and activity.
"""
import dataclasses
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from autopilot.core.errors import (
    ActionNotFound,
    AgentNotFound,
    AutopilotError,
    ChatConfigNotFound,
)
from autopilot.core.models import (
    Agent,
    AgentBehavior,
    InboundMessage,
    coerce_datetime,
    generate_id,
    utcnow,
)
from autopilot.runtime import AutopilotRuntime
from autopilot.schemas import (
    AgentAssignRequest,
    AgentCreate,
    AgentUpdate,
    ApproveDraftRequest,
    ChatConfigResponse,
    DurationRequest,
    EnableRequest,
    GoalOverrideRequest,
    InboundMessageRequest,
    ModeRequest,
    PendingDraftResponse,
    RejectResponse,
    ScheduledActionsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/autopilot", tags=["autopilot"])

_runtime: Optional[AutopilotRuntime] = None


def set_runtime(runtime: Optional[AutopilotRuntime]):
    """Called from main.py lifespan (and tests) to inject the runtime."""
    global _runtime
    _runtime = runtime


def get_runtime() -> AutopilotRuntime:
    if _runtime is None:
        raise HTTPException(status_code=503, detail="Autopilot runtime not available")
    return _runtime


async def _autopilot_error_handler(request: Request, exc: AutopilotError):
    if isinstance(exc, (AgentNotFound, ChatConfigNotFound, ActionNotFound)):
        status_code = 404
    else:
        status_code = 400
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__, "chat_id": exc.chat_id},
    )


def install_error_handlers(app: FastAPI):
    app.add_exception_handler(AutopilotError, _autopilot_error_handler)


async def _config_response(runtime: AutopilotRuntime, chat_id: str) -> ChatConfigResponse:
    config = await runtime.controls.get(chat_id)
    if config is None:
        raise ChatConfigNotFound(chat_id)
    return ChatConfigResponse(
        config=config.to_dict(),
        time_remaining_seconds=await runtime.controls.time_remaining(chat_id),
    )


# ============== Agents ==============

@router.get("/agents")
async def list_agents(runtime: AutopilotRuntime = Depends(get_runtime)) -> List[Dict[str, Any]]:
    return [a.to_dict() for a in await runtime.stores.agents.list()]


@router.post("/agents", status_code=201)
async def create_agent(body: AgentCreate, runtime: AutopilotRuntime = Depends(get_runtime)):
    agent_id = body.id or generate_id()
    if await runtime.stores.agents.get(agent_id) is not None:
        raise HTTPException(status_code=409, detail=f"Agent {agent_id} already exists")

    agent = Agent(
        id=agent_id,
        name=body.name,
        goal=body.goal,
        system_prompt=body.system_prompt,
        description=body.description,
        goal_completion_behavior=body.goal_completion_behavior,
        behavior=AgentBehavior.from_dict(body.behavior),
    )
    await runtime.stores.agents.save(agent)
    logger.info(f"[API] Created agent {agent.id} ({agent.name})")
    return agent.to_dict()


@router.get("/agents/{agent_id}")
async def get_agent(agent_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    agent = await runtime.stores.agents.get(agent_id)
    if agent is None:
        raise AgentNotFound(agent_id)
    return agent.to_dict()


@router.put("/agents/{agent_id}")
async def update_agent(agent_id: str, body: AgentUpdate, runtime: AutopilotRuntime = Depends(get_runtime)):
    agent = await runtime.stores.agents.get(agent_id)
    if agent is None:
        raise AgentNotFound(agent_id)

    changes = body.model_dump(exclude_unset=True, exclude={"behavior"})
    if body.behavior is not None:
        changes["behavior"] = AgentBehavior.from_dict({**agent.behavior.to_dict(), **body.behavior})
    updated = dataclasses.replace(agent, updated_at=utcnow(), **changes)
    await runtime.stores.agents.save(updated)
    return updated.to_dict()


@router.delete("/agents/{agent_id}")
async def delete_agent(agent_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    if not await runtime.stores.agents.delete(agent_id):
        raise AgentNotFound(agent_id)
    return {"deleted": True, "agent_id": agent_id}


# ============== Chat controls ==============

@router.get("/chats")
async def list_chats(runtime: AutopilotRuntime = Depends(get_runtime)) -> List[Dict[str, Any]]:
    return [c.to_dict() for c in await runtime.stores.configs.list()]


@router.get("/chats/{chat_id}", response_model=ChatConfigResponse)
async def get_chat(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    return await _config_response(runtime, chat_id)


@router.post("/chats/{chat_id}/enable", response_model=ChatConfigResponse)
async def enable_chat(chat_id: str, body: EnableRequest, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.enable(chat_id, body.agent_id, body.mode, body.duration_minutes)
    return await _config_response(runtime, chat_id)


@router.post("/chats/{chat_id}/disable", response_model=ChatConfigResponse)
async def disable_chat(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.disable(chat_id)
    return await _config_response(runtime, chat_id)


@router.post("/chats/{chat_id}/pause", response_model=ChatConfigResponse)
async def pause_chat(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.pause(chat_id)
    return await _config_response(runtime, chat_id)


@router.post("/chats/{chat_id}/resume", response_model=ChatConfigResponse)
async def resume_chat(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.resume(chat_id)
    return await _config_response(runtime, chat_id)


@router.post("/chats/{chat_id}/reset", response_model=ChatConfigResponse)
async def reset_chat(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.reset(chat_id)
    return await _config_response(runtime, chat_id)


@router.put("/chats/{chat_id}/mode", response_model=ChatConfigResponse)
async def set_mode(chat_id: str, body: ModeRequest, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.set_mode(chat_id, body.mode, body.duration_minutes)
    return await _config_response(runtime, chat_id)


@router.put("/chats/{chat_id}/agent", response_model=ChatConfigResponse)
async def set_agent(chat_id: str, body: AgentAssignRequest, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.set_agent(chat_id, body.agent_id)
    return await _config_response(runtime, chat_id)


@router.put("/chats/{chat_id}/duration", response_model=ChatConfigResponse)
async def set_duration(chat_id: str, body: DurationRequest, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.set_self_driving_duration(chat_id, body.minutes)
    return await _config_response(runtime, chat_id)


@router.post("/chats/{chat_id}/extend", response_model=ChatConfigResponse)
async def extend_duration(chat_id: str, body: DurationRequest, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.extend_self_driving(chat_id, body.minutes)
    return await _config_response(runtime, chat_id)


@router.put("/chats/{chat_id}/goal-override", response_model=ChatConfigResponse)
async def set_goal_override(chat_id: str, body: GoalOverrideRequest, runtime: AutopilotRuntime = Depends(get_runtime)):
    await runtime.controls.set_goal_completion_override(chat_id, body.behavior)
    return await _config_response(runtime, chat_id)


@router.delete("/chats/{chat_id}")
async def remove_chat(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    if not await runtime.controls.remove(chat_id):
        raise ChatConfigNotFound(chat_id)
    return {"deleted": True, "chat_id": chat_id}


# ============== Messages & drafts ==============

@router.post("/chats/{chat_id}/messages", response_model=ScheduledActionsResponse)
async def receive_message(chat_id: str, body: InboundMessageRequest, runtime: AutopilotRuntime = Depends(get_runtime)):
    """
    Inbound message webhook.

    POST /api/autopilot/chats/{chat_id}/messages
    {"id": "msg-1", "text": "hey, are you free tomorrow?", "sender_name": "Alex"}
    """
    message = InboundMessage(
        id=body.id,
        chat_id=chat_id,
        text=body.text,
        sender_name=body.sender_name,
        timestamp=coerce_datetime(body.timestamp) or utcnow(),
        is_from_me=body.is_from_me,
    )
    action_ids = await runtime.handle_incoming_message(message, force_process=body.force)
    return ScheduledActionsResponse(action_ids=action_ids)


@router.post("/chats/{chat_id}/proactive", response_model=ScheduledActionsResponse)
async def start_proactive(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    return ScheduledActionsResponse(action_ids=await runtime.engine.generate_proactive_message(chat_id))


@router.get("/chats/{chat_id}/pending-draft", response_model=Optional[PendingDraftResponse])
async def get_pending_draft(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    draft = await runtime.status.pending_draft(chat_id)
    if draft is None:
        return None
    return PendingDraftResponse(**dataclasses.asdict(draft))


@router.post("/chats/{chat_id}/approve", response_model=ScheduledActionsResponse)
async def approve_and_send(chat_id: str, body: ApproveDraftRequest, runtime: AutopilotRuntime = Depends(get_runtime)):
    """Send an edited draft. Replaces the held draft when ``action_id`` is given."""
    agent_id = body.agent_id
    if agent_id is None:
        config = await runtime.controls.get(chat_id)
        if config is None:
            raise ChatConfigNotFound(chat_id)
        agent_id = config.agent_id
    action_id = await runtime.engine.approve_and_send(chat_id, body.text, agent_id, action_id=body.action_id)
    return ScheduledActionsResponse(action_ids=[action_id])


@router.post("/actions/{action_id}/approve", response_model=ScheduledActionsResponse)
async def approve_pending(action_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    return ScheduledActionsResponse(action_ids=await runtime.engine.approve_pending_draft(action_id))


@router.post("/actions/{action_id}/reject", response_model=RejectResponse)
async def reject_pending(action_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    return RejectResponse(cancelled=await runtime.engine.reject_pending_draft(action_id))


@router.post("/messages/{message_id}/regenerate", response_model=ScheduledActionsResponse)
async def regenerate(message_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    if runtime.engine.cached_message(message_id) is None:
        raise HTTPException(status_code=404, detail=f"Message {message_id} is not cached")
    return ScheduledActionsResponse(action_ids=await runtime.engine.regenerate_draft(message_id))


# ============== Status & activity ==============

@router.get("/status")
async def scheduler_status(chat_id: Optional[str] = None, runtime: AutopilotRuntime = Depends(get_runtime)):
    status = await runtime.status.compute(chat_id)
    return {**status.to_dict(), "running": runtime.scheduler.is_running}


@router.post("/scheduler/wake")
async def wake_scheduler(runtime: AutopilotRuntime = Depends(get_runtime)):
    """Run a tick now, e.g. after the host comes back to the foreground."""
    action = await runtime.scheduler.wake()
    return {"executed": action.to_dict() if action else None}


@router.get("/activity")
async def list_activity(
    chat_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    runtime: AutopilotRuntime = Depends(get_runtime),
):
    return [e.to_dict() for e in await runtime.stores.activity.list(chat_id=chat_id, limit=limit)]


@router.delete("/activity")
async def clear_activity(chat_id: Optional[str] = None, runtime: AutopilotRuntime = Depends(get_runtime)):
    return {"cleared": await runtime.stores.activity.clear(chat_id)}


@router.get("/chats/{chat_id}/handoff")
async def get_handoff(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    summary = await runtime.stores.handoffs.get(chat_id)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"No handoff summary for chat {chat_id}")
    return summary.to_dict()


@router.get("/chats/{chat_id}/suggestions")
async def list_suggestions(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    return [dataclasses.asdict(s) for s in await runtime.stores.suggestions.list(chat_id)]


@router.delete("/chats/{chat_id}/suggestions")
async def clear_suggestions(chat_id: str, runtime: AutopilotRuntime = Depends(get_runtime)):
    return {"cleared": await runtime.stores.suggestions.clear(chat_id)}


@router.get("/events")
async def recent_events(
    chat_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    runtime: AutopilotRuntime = Depends(get_runtime),
):
    return {
        "events": runtime.bus.get_history(chat_id=chat_id, limit=limit),
        "errors": runtime.recent_errors(chat_id),
        "stats": runtime.bus.get_stats(),
    }
