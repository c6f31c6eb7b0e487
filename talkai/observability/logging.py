"""Structured Logging - JSON logs with correlation.

Provides structured logging for:
- Session lifecycle (start, end, status changes, degraded mode)
- Avatar connection stages and transport state
- Audio relay and expression send failures
- Error tracking

All session logs include session_id for correlation.
"""

import logging
import sys
from typing import Any

import structlog


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
) -> None:
    """Configure structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; else human-readable
    """
    level = "WARNING" if level.upper() == "WARN" else level.upper()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Also configure standard logging (uvicorn, aiortc)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level),
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a structured logger.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Bound structlog logger
    """
    return structlog.get_logger(name)


# -----------------------------------------------------------------------------
# Event-specific logging functions
# -----------------------------------------------------------------------------


class SessionLogger:
    """Logger for orchestrated session events."""

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._log = get_logger("session").bind(session_id=session_id)

    def session_started(self, metadata: dict[str, Any] | None = None) -> None:
        """Log session start (voice connected)."""
        self._log.info(
            "session_started",
            event_type="session.started",
            **(metadata or {}),
        )

    def session_ended(self, reason: str, duration_s: int) -> None:
        """Log session end."""
        self._log.info(
            "session_ended",
            event_type="session.ended",
            reason=reason,
            duration_s=duration_s,
        )

    def status_change(self, old_status: str, new_status: str, reason: str) -> None:
        """Log composed session status transition."""
        self._log.info(
            "status_change",
            event_type="session.status_change",
            old_status=old_status,
            new_status=new_status,
            reason=reason,
        )

    def degraded(self, error: str) -> None:
        """Log fallback to voice-only presentation."""
        self._log.warning(
            "session_degraded",
            event_type="session.degraded",
            error=error,
        )

    def fatal_error(self, stage: str, error: str) -> None:
        """Log a fatal initialization error."""
        self._log.error(
            "session_failed",
            event_type="session.failed",
            stage=stage,
            error=error,
        )


class AvatarLogger:
    """Logger for avatar client events."""

    def __init__(self, session_id: str | None = None) -> None:
        self._log = get_logger("avatar")
        if session_id:
            self._log = self._log.bind(session_id=session_id)

    def bind(self, avatar_session_id: str) -> None:
        """Attach the remote avatar session id once allocated."""
        self._log = self._log.bind(avatar_session_id=avatar_session_id)

    def state_change(self, old_state: str, new_state: str) -> None:
        """Log client lifecycle transition."""
        self._log.info(
            "avatar_state_change",
            event_type="avatar.state_change",
            old_state=old_state,
            new_state=new_state,
        )

    def transport_state(self, state: str) -> None:
        """Log peer connection state change."""
        self._log.info(
            "avatar_transport_state",
            event_type="avatar.transport_state",
            state=state,
        )

    def connect_failed(self, stage: str, error: str) -> None:
        """Log connection failure."""
        self._log.error(
            "avatar_connect_failed",
            event_type="avatar.connect_failed",
            stage=stage,
            error=error,
        )

    def send_failed(self, kind: str, transport: str, error: str) -> None:
        """Log a dropped audio/expression send."""
        self._log.warning(
            "avatar_send_failed",
            event_type="avatar.send_failed",
            kind=kind,
            transport=transport,
            error=error,
        )

    def audio_dropped(self, policy: str, queued: int) -> None:
        """Log a frame dropped by the bounded queue."""
        self._log.debug(
            "audio_frame_dropped",
            event_type="avatar.audio_dropped",
            policy=policy,
            queued=queued,
        )


# Initialize default logging configuration
def init_logging(json_format: bool = True, level: str = "INFO") -> None:
    """Initialize logging with defaults.

    Call this once at application startup.
    """
    configure_logging(level=level, json_format=json_format)
