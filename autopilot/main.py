"""
Conversation Autopilot - Main Application Entry Point
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException

from autopilot.config import settings
from autopilot.core.structured_logging import setup_logging
from autopilot.api import autopilot_router, get_runtime, install_error_handlers, set_runtime
from autopilot.runtime import AutopilotRuntime
from autopilot.stores import create_memory_stores, create_sql_stores

logger = logging.getLogger(__name__)


async def build_stores():
    if settings.storage_backend == "memory":
        logger.info("[MAIN] Using in-memory stores")
        return create_memory_stores(settings.activity_log_max_entries)

    from autopilot.db import async_session_maker, init_db
    await init_db()
    logger.info("[MAIN] Database initialized")
    return create_sql_stores(async_session_maker, settings.activity_log_max_entries)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    setup_logging(settings.log_level, json_output=settings.log_json)
    logger.info(f"[MAIN] {settings.app_name} starting up...")

    runtime = AutopilotRuntime.from_settings(await build_stores())
    await runtime.start()
    set_runtime(runtime)

    yield

    # Shutdown
    set_runtime(None)
    try:
        await runtime.stop()
    except Exception as e:
        logger.warning(f"[MAIN] Runtime shutdown error: {e}")
    logger.info(f"[MAIN] {settings.app_name} shutdown complete.")


app = FastAPI(
    title=settings.app_name,
    description="Per-chat conversation autopilot: decides whether, when and what to reply",
    version="1.0.0",
    lifespan=lifespan,
)

install_error_handlers(app)
app.include_router(autopilot_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "name": settings.app_name,
        "status": "healthy",
        "version": "1.0.0",
    }


@app.get("/health")
async def health():
    try:
        runtime = get_runtime()
    except HTTPException:
        return {"status": "starting", "scheduler": "stopped"}
    return {
        "status": "healthy",
        "storage": settings.storage_backend,
        "scheduler": "running" if runtime.scheduler.is_running else "stopped",
        "pending_actions": await runtime.scheduler.pending_count(),
    }
