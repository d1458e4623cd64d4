"""Run lifecycle events and structured logging."""

from stagegate.observability.events import (
    DispatchError,
    RunEvent,
    RunEventBus,
    RunEventType,
    Subscriber,
)
from stagegate.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "LoggingConfig",
    "RunEvent",
    "RunEventBus",
    "RunEventType",
    "StructuredLoggingHandle",
    "Subscriber",
    "configure_structlog",
    "correlation_scope",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_structured_logging",
    "shutdown_logging",
]
