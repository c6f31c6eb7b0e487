"""Observability - structured logging and Prometheus metrics."""

from talkai.observability.logging import (
    AvatarLogger,
    SessionLogger,
    configure_logging,
    get_logger,
    init_logging,
)

__all__ = [
    "AvatarLogger",
    "SessionLogger",
    "configure_logging",
    "get_logger",
    "init_logging",
]
