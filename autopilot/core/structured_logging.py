"""
Structured Logging — JSON or plain log output for the autopilot service.

Adds a subsystem tag and the chat being processed (via a context variable)
to every record, so scheduler and engine logs can be grepped per conversation.
"""

import json
import logging
import sys
from contextvars import ContextVar
from enum import Enum
from typing import Any, Dict

chat_id_var: ContextVar[str] = ContextVar("chat_id", default="")

ROOT_LOGGER = "autopilot"
BEST_EFFORT_LOGGER = "autopilot.best_effort"


class Subsystem(str, Enum):
    SCHEDULER = "scheduler"
    ENGINE = "engine"
    CONTROLS = "controls"
    STORE = "store"
    DB = "db"
    LLM = "llm"
    TRANSPORT = "transport"
    API = "api"
    EVENT_BUS = "event_bus"


_SUBSYSTEM_BY_MODULE: Dict[str, Subsystem] = {
    "autopilot.core.scheduler": Subsystem.SCHEDULER,
    "autopilot.core.engine": Subsystem.ENGINE,
    "autopilot.core.controls": Subsystem.CONTROLS,
    "autopilot.core.event_bus": Subsystem.EVENT_BUS,
    "autopilot.stores": Subsystem.STORE,
    "autopilot.db": Subsystem.DB,
    "autopilot.services.send_transport": Subsystem.TRANSPORT,
    "autopilot.services": Subsystem.LLM,
    "autopilot.api": Subsystem.API,
}


def subsystem_for(logger_name: str) -> str:
    for prefix, subsystem in _SUBSYSTEM_BY_MODULE.items():
        if logger_name == prefix or logger_name.startswith(prefix + "."):
            return subsystem.value
    return "general"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "subsystem": getattr(record, "subsystem", None) or subsystem_for(record.name),
            "message": record.getMessage(),
            "logger": record.name,
        }

        chat_id = chat_id_var.get("")
        if chat_id:
            log_entry["chat_id"] = chat_id

        extra = getattr(record, "extra_data", None)
        if extra:
            log_entry["data"] = extra

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


_configured = False


def setup_logging(level: str = "INFO", json_output: bool = False):
    """Install a stdout handler on the ``autopilot`` logger. Safe to call twice."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger(ROOT_LOGGER)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    _configured = True


def set_chat_context(chat_id: str):
    """Tag log records emitted by the current task with ``chat_id``."""
    chat_id_var.set(chat_id or "")
