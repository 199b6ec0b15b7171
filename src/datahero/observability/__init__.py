"""Public observability primitives: queue-backed JSON-lines logging with structlog on top."""

from datahero.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    flush_logging,
    get_active_logging_handle,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "flush_logging",
    "get_active_logging_handle",
    "setup_logging",
    "shutdown_logging",
]
