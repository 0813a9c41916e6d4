from autopilot.api.autopilot import (
    router as autopilot_router,
    set_runtime,
    get_runtime,
    install_error_handlers,
)

__all__ = [
    "autopilot_router",
    "set_runtime",
    "get_runtime",
    "install_error_handlers",
]
