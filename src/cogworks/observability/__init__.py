"""Observability: structured JSON logging with correlation fields."""

from __future__ import annotations

from cogworks.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    configure_logging,
    correlation_scope,
    get_correlation_context,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "LoggingHandle",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "shutdown_logging",
]
