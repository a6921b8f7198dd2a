"""Observability module for EventFlow.

Provides structured logging for the engine, stores and CLI.
"""

from eventflow.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
    storyline_context,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_logger",
    "storyline_context",
]
